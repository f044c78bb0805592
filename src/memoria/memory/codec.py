"""Human-readable markdown encoding for conversations and the index.

Files start with a frontmatter header of ``key: value`` lines between ``---``
delimiters. Lists are written as ``[a, b, c]``; scalars the bare form would
alter are written as JSON strings. Every file carries a
``schema_version`` so the grammar can change without touching callers; use
get_codec() to obtain the codec for a version.

Decoding never raises on malformed content. Sections and lines that do not
match the expected grammar are skipped.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any
from urllib.parse import quote, unquote

from memoria.memory.models import (
    Conversation,
    Exchange,
    MemoryIndex,
    RecentEntry,
    SessionEntry,
    TopicEntry,
)

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 1

_FRONTMATTER = re.compile(r"\A---\n(.*?)\n---\n(.*)\Z", re.DOTALL)
_QUESTION_HEADING = re.compile(r"^## Question \d+[ \t]*\n", re.MULTILINE)
_EXCHANGE = re.compile(
    r"\A\*\*Timestamp:\*\* ([^\n]+)\n\n(.*?)\n\n### Answer[ \t]*(?:\n(.*))?\Z",
    re.DOTALL,
)
_TRAILING_RULE = re.compile(r"\n-{3,}\Z")
_TOPIC_HEADING = re.compile(r"^### (\S+)[ \t]*$", re.MULTILINE)
_TOPIC_ENTRY = re.compile(r"^- \[([^\]]+)\]\(([^)]+)\)(?: - (.*))?$")
_RECENT_ENTRY = re.compile(
    r"^\d+\. \[([^\]]+)\] (\S+) - (.*) \(keywords: ([^)]*)\) - path: (\S+)$"
)


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split a document into its header metadata and body.

    Args:
        content: Full file content

    Returns:
        Tuple of (metadata, body). Content without a header yields
        ({}, content). Bracketed values become lists, double-quoted values
        are unquoted, empty values become None.
    """
    match = _FRONTMATTER.match(content.replace("\r\n", "\n"))
    if not match:
        return {}, content

    metadata: dict[str, Any] = {}
    for line in match.group(1).split("\n"):
        key, sep, raw = line.partition(":")
        key = key.strip()
        if not sep or not key:
            continue
        value = raw.strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            metadata[key] = _unquote(value)
        elif value.startswith("[") and value.endswith("]"):
            inner = value[1:-1]
            metadata[key] = [item.strip() for item in inner.split(",") if item.strip()]
        elif value == "":
            metadata[key] = None
        else:
            metadata[key] = value

    return metadata, match.group(2)


def generate_frontmatter(metadata: dict[str, Any]) -> str:
    """Render metadata as a frontmatter header (inverse of parse_frontmatter).

    Scalars that would not survive the bare ``key: value`` form (surrounding
    whitespace, line breaks, a leading ``[`` or ``"``) are written as JSON
    strings.
    """
    lines = ["---"]
    for key, value in metadata.items():
        if isinstance(value, (list, tuple)):
            lines.append(f"{key}: [{', '.join(_single_line(str(v)) for v in value)}]")
        elif value is None:
            lines.append(f"{key}:")
        else:
            lines.append(f"{key}: {_scalar(str(value))}")
    lines.append("---\n")
    return "\n".join(lines)


def read_schema_version(metadata: dict[str, Any]) -> int:
    """Schema version declared by a header; files that predate it are version 1."""
    try:
        return int(metadata.get("schema_version") or 1)
    except (TypeError, ValueError):
        return 1


def _single_line(text: str) -> str:
    return " ".join(text.splitlines()).strip()


def _scalar(text: str) -> str:
    if not text or text != text.strip() or text[0] in '["' or "\n" in text or "\r" in text:
        return json.dumps(text, ensure_ascii=False)
    return text


def _unquote(value: str) -> str:
    try:
        unquoted = json.loads(value)
    except ValueError:
        return value
    return unquoted if isinstance(unquoted, str) else value


def _section(body: str, title: str) -> str | None:
    """Text under a ``## title`` heading, up to the next level-2 heading."""
    match = re.search(
        rf"^## {re.escape(title)}[ \t]*\n(.*?)(?=^## |\Z)", body, re.MULTILINE | re.DOTALL
    )
    return match.group(1) if match else None


def _table_rows(section: str) -> list[list[str]]:
    """Data rows of a markdown table, skipping the header and divider."""
    rows: list[list[str]] = []
    lines = [line.strip() for line in section.split("\n") if line.strip().startswith("|")]
    for line in lines[2:]:
        cells = [cell.strip() for cell in line.strip("|").split("|")]
        rows.append(cells)
    return rows


def _split_ids(cell: str) -> list[str]:
    return [item.strip() for item in cell.split(",") if item.strip()]


class MarkdownCodec:
    """Version 1 of the on-disk markdown format."""

    version = 1

    # ===== Conversations =====

    def encode_conversation(self, conversation: Conversation) -> str:
        """Render a conversation as a markdown document.

        Each exchange is a numbered ``## Question N`` section holding a
        timestamp line, the question text and an ``### Answer`` subsection.
        Sections are separated by a horizontal rule, except after the last.
        """
        metadata = {
            "schema_version": self.version,
            "id": conversation.id,
            "session_id": conversation.session_id,
            "created": conversation.created,
            "updated": conversation.updated,
            "keywords": conversation.keywords,
            "topics": conversation.topics,
        }

        parts: list[str] = []
        last = len(conversation.exchanges) - 1
        for i, exchange in enumerate(conversation.exchanges):
            parts.append(f"## Question {i + 1}\n")
            parts.append(f"**Timestamp:** {_single_line(exchange.timestamp)}\n\n")
            parts.append(f"{exchange.question}\n\n")
            parts.append("### Answer\n\n")
            parts.append(f"{exchange.answer}\n\n")
            if i < last:
                parts.append("---\n\n")

        return generate_frontmatter(metadata) + "".join(parts)

    def decode_conversation(self, content: str) -> Conversation | None:
        """Parse a conversation document.

        Returns:
            The conversation, or None when the header has no id
        """
        metadata, body = parse_frontmatter(content)
        conversation_id = metadata.get("id")
        if not conversation_id or isinstance(conversation_id, list):
            return None

        sections = _QUESTION_HEADING.split(body.replace("\r\n", "\n"))[1:]
        exchanges: list[Exchange] = []
        for i, section in enumerate(sections):
            text = section.rstrip()
            if i < len(sections) - 1:
                text = _TRAILING_RULE.sub("", text)
            match = _EXCHANGE.match(text)
            if not match:
                logger.debug(f"Dropping malformed exchange section {i + 1} in conversation {conversation_id}")
                continue
            exchanges.append(
                Exchange(
                    timestamp=match.group(1).strip(),
                    question=match.group(2).strip(),
                    answer=(match.group(3) or "").strip(),
                )
            )

        return Conversation(
            id=str(conversation_id),
            session_id=_as_optional_str(metadata.get("session_id")),
            created=_as_optional_str(metadata.get("created")) or "",
            updated=_as_optional_str(metadata.get("updated")) or "",
            keywords=_as_list(metadata.get("keywords")),
            topics=_as_list(metadata.get("topics")),
            exchanges=exchanges,
        )

    # ===== Index =====

    def encode_index(self, index: MemoryIndex) -> str:
        """Render the index as a markdown document."""
        metadata = {
            "schema_version": self.version,
            "instance": index.instance,
            "last_updated": index.last_updated,
            "total_conversations": index.total_conversations,
        }

        lines = ["# Conversation Memory Index", ""]

        lines += ["## By Topic", ""]
        for topic, entries in index.topics.items():
            lines.append(f"### {topic}")
            for entry in entries:
                lines.append(f"- [{entry.id}]({entry.path}) - {_single_line(entry.summary)}")
            lines.append("")

        lines += ["## By Keyword", "", "| Keyword | Conversations |", "|---------|---------------|"]
        for keyword, ids in index.keywords.items():
            lines.append(f"| {keyword} | {', '.join(ids)} |")
        lines.append("")

        lines += ["## Sessions", "", "| Session | Conversation | Path |", "|---------|--------------|------|"]
        for session_id, session in index.sessions.items():
            lines.append(f"| {quote(session_id, safe='')} | {session.conversation_id} | {session.path} |")
        lines.append("")

        lines += ["## Recent Conversations", ""]
        for i, item in enumerate(index.recent, start=1):
            lines.append(
                f"{i}. [{item.date}] {item.id} - {_single_line(item.summary)} "
                f"(keywords: {', '.join(item.keywords)}) - path: {item.path}"
            )

        return generate_frontmatter(metadata) + "\n".join(lines) + "\n"

    def decode_index(self, content: str, instance: str) -> MemoryIndex:
        """Parse an index document.

        Args:
            content: File content
            instance: Instance name to use when the header lacks one

        Returns:
            The parsed index; unparseable parts are left empty
        """
        metadata, body = parse_frontmatter(content)
        body = body.replace("\r\n", "\n")

        try:
            total = int(metadata.get("total_conversations") or 0)
        except (TypeError, ValueError):
            logger.warning(f"Invalid total_conversations in index for {instance}, using 0")
            total = 0

        return MemoryIndex(
            instance=_as_optional_str(metadata.get("instance")) or instance,
            last_updated=_as_optional_str(metadata.get("last_updated")) or "",
            total_conversations=total,
            topics=self._decode_topics(_section(body, "By Topic") or ""),
            keywords=self._decode_keywords(_section(body, "By Keyword") or ""),
            recent=self._decode_recent(_section(body, "Recent Conversations") or ""),
            sessions=self._decode_sessions(_section(body, "Sessions") or ""),
        )

    def _decode_topics(self, section: str) -> dict[str, list[TopicEntry]]:
        topics: dict[str, list[TopicEntry]] = {}
        headings = list(_TOPIC_HEADING.finditer(section))
        for i, heading in enumerate(headings):
            end = headings[i + 1].start() if i + 1 < len(headings) else len(section)
            entries: list[TopicEntry] = []
            for line in section[heading.end():end].split("\n"):
                match = _TOPIC_ENTRY.match(line.strip())
                if match:
                    entries.append(
                        TopicEntry(id=match.group(1), path=match.group(2), summary=(match.group(3) or "").strip())
                    )
            topics[heading.group(1)] = entries
        return topics

    def _decode_keywords(self, section: str) -> dict[str, list[str]]:
        keywords: dict[str, list[str]] = {}
        for cells in _table_rows(section):
            if len(cells) >= 2 and cells[0]:
                keywords[cells[0]] = _split_ids(cells[1])
        return keywords

    def _decode_sessions(self, section: str) -> dict[str, SessionEntry]:
        sessions: dict[str, SessionEntry] = {}
        for cells in _table_rows(section):
            if len(cells) >= 3 and cells[0] and cells[1]:
                sessions[unquote(cells[0])] = SessionEntry(conversation_id=cells[1], path=cells[2])
        return sessions

    def _decode_recent(self, section: str) -> list[RecentEntry]:
        recent: list[RecentEntry] = []
        for line in section.strip().split("\n"):
            match = _RECENT_ENTRY.match(line.strip())
            if match:
                recent.append(
                    RecentEntry(
                        date=match.group(1),
                        id=match.group(2),
                        summary=match.group(3).strip(),
                        keywords=_split_ids(match.group(4)),
                        path=match.group(5),
                    )
                )
        return recent


def _as_optional_str(value: Any) -> str | None:
    if value is None or isinstance(value, list):
        return None
    return str(value)


def _as_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return value
    if value is None:
        return []
    return [str(value)]


_CODECS: dict[int, MarkdownCodec] = {MarkdownCodec.version: MarkdownCodec()}


def get_codec(version: int | None = None) -> MarkdownCodec:
    """Return the codec for a schema version (latest when None).

    Raises:
        ValueError: If the version is not supported
    """
    version = CURRENT_SCHEMA_VERSION if version is None else version
    try:
        return _CODECS[version]
    except KeyError:
        raise ValueError(f"Unsupported memory schema version: {version}") from None

"""Durable markdown storage for conversations and the memory index.

Layout, per instance::

    {base}/{instance}/index.md
    {base}/{instance}/conversations/{YYYY-MM-DD}/conv-{id}.md

Every write goes to a temporary file in the target directory and is then
renamed over the final path, so readers never observe a partial file.
Reads that fail for any reason are treated as "not found".
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from memoria.memory.codec import MarkdownCodec, get_codec, parse_frontmatter, read_schema_version
from memoria.memory.errors import StoragePermissionError, StorageWriteError
from memoria.memory.indexer import generate_summary
from memoria.memory.models import (
    RECENT_LIMIT,
    Conversation,
    Exchange,
    MemoryIndex,
    RecentEntry,
    SessionEntry,
    TopicEntry,
    merge_unique,
    utc_now,
)

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.md"
CONVERSATIONS_DIRNAME = "conversations"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class ConversationStorage:
    """Markdown file storage for one memory instance.

    Example:
        >>> storage = ConversationStorage("./memory", "default")
        >>> await storage.ensure_layout()
        >>> conversation = storage.create_conversation(None, "Q?", "A.")
        >>> path = await storage.save_conversation(conversation)
    """

    def __init__(
        self,
        base_path: str | Path,
        instance: str,
        codec: MarkdownCodec | None = None,
    ) -> None:
        """Initialize storage for an instance.

        Args:
            base_path: Directory holding all instances
            instance: Instance name; its files live in base_path/instance
            codec: Codec used for writing. Defaults to the latest schema.
        """
        self._base_path = Path(base_path)
        self._instance = instance
        self._codec = codec or get_codec()

    @property
    def instance(self) -> str:
        return self._instance

    @property
    def instance_path(self) -> Path:
        return self._base_path / self._instance

    @property
    def conversations_path(self) -> Path:
        return self.instance_path / CONVERSATIONS_DIRNAME

    @property
    def index_path(self) -> Path:
        return self.instance_path / INDEX_FILENAME

    async def ensure_layout(self) -> dict[str, Path]:
        """Create the instance directory tree and an empty index if missing.

        Safe to call repeatedly.

        Returns:
            Dict with instance_path, conversations_path and index_path
        """
        await aiofiles.os.makedirs(self.conversations_path, exist_ok=True)

        if not await aiofiles.os.path.exists(self.index_path):
            logger.info(f"Creating empty memory index at {self.index_path}")
            await self.save_index(MemoryIndex.empty(self._instance))

        return {
            "instance_path": self.instance_path,
            "conversations_path": self.conversations_path,
            "index_path": self.index_path,
        }

    # ===== Conversations =====

    def create_conversation(
        self,
        session_id: str | None,
        question: str,
        answer: str,
        keywords: list[str] | None = None,
        topics: list[str] | None = None,
    ) -> Conversation:
        """Build a new conversation holding a single exchange (not yet saved)."""
        now = utc_now()
        return Conversation(
            id=uuid.uuid4().hex[:8],
            session_id=session_id,
            created=now,
            updated=now,
            keywords=merge_unique([], keywords or []),
            topics=merge_unique([], topics or []),
            exchanges=[Exchange(timestamp=now, question=question, answer=answer)],
        )

    def append_exchange(
        self,
        conversation: Conversation,
        question: str,
        answer: str,
        keywords: list[str] | None = None,
        topics: list[str] | None = None,
    ) -> Conversation:
        """Return a copy of the conversation with one more exchange (not yet saved)."""
        now = utc_now()
        return Conversation(
            id=conversation.id,
            session_id=conversation.session_id,
            created=conversation.created,
            updated=now,
            keywords=merge_unique(conversation.keywords, keywords or []),
            topics=merge_unique(conversation.topics, topics or []),
            exchanges=[*conversation.exchanges, Exchange(timestamp=now, question=question, answer=answer)],
        )

    def conversation_relative_path(self, conversation: Conversation) -> str:
        """Path of a conversation file relative to the instance directory."""
        return f"{CONVERSATIONS_DIRNAME}/{conversation.date_dir}/conv-{conversation.id}.md"

    async def save_conversation(self, conversation: Conversation) -> str:
        """Write a conversation atomically.

        Args:
            conversation: Conversation to persist

        Returns:
            Path of the file relative to the instance directory

        Raises:
            ValueError: If the conversation id is not a safe file name
            StoragePermissionError: If the rename into place is refused
            StorageWriteError: If the file cannot be written
        """
        if not _SAFE_ID.match(conversation.id):
            raise ValueError(f"Invalid conversation id: {conversation.id!r}")

        relative_path = self.conversation_relative_path(conversation)
        await self._atomic_write(self.instance_path / relative_path, self._codec.encode_conversation(conversation))
        logger.debug(f"Saved conversation {conversation.id} ({len(conversation.exchanges)} exchanges)")
        return relative_path

    async def load_conversation(
        self,
        conversation_id: str,
        path: str | None = None,
        index: MemoryIndex | None = None,
    ) -> Conversation | None:
        """Load a conversation by id.

        The file is located from ``path`` if given, otherwise from the index,
        otherwise by searching the date directories.

        Args:
            conversation_id: Conversation ID
            path: Known path relative to the instance directory
            index: Index to look the path up in. Loaded from disk if None.

        Returns:
            The conversation, or None if it cannot be found or read
        """
        if not _SAFE_ID.match(conversation_id):
            return None

        if path is None:
            if index is None:
                index = await self.load_index()
            path = index.find_path(conversation_id)

        full_path = self._resolve(path) if path else None
        if full_path is None:
            full_path = await self._search_conversation_file(conversation_id)
        if full_path is None:
            logger.debug(f"Conversation {conversation_id} not found")
            return None

        conversation = await self._read_conversation(full_path)
        if conversation is not None and conversation.id != conversation_id:
            logger.warning(f"Conversation file {full_path} holds id {conversation.id}, expected {conversation_id}")
            return None
        return conversation

    async def find_conversation_by_session_id(
        self,
        session_id: str,
        index: MemoryIndex | None = None,
        scan: bool = False,
    ) -> Conversation | None:
        """Find the conversation recorded under a session id.

        Uses the index's session map. With ``scan=True`` it also walks the
        recent list and loads each conversation until one matches, which
        costs one file read per recent conversation.

        Args:
            session_id: Session ID to find
            index: Index to search. Loaded from disk if None.
            scan: Fall back to scanning recent conversations

        Returns:
            The conversation, or None if not found
        """
        if index is None:
            index = await self.load_index()

        entry = index.sessions.get(session_id)
        if entry is not None:
            conversation = await self.load_conversation(entry.conversation_id, path=entry.path, index=index)
            if conversation is not None and conversation.session_id == session_id:
                return conversation
            logger.warning(f"Session map entry for {session_id!r} is stale")

        if not scan:
            return None

        for item in index.recent:
            conversation = await self.load_conversation(item.id, path=item.path, index=index)
            if conversation is not None and conversation.session_id == session_id:
                return conversation

        return None

    async def rebuild_session_map(self, index: MemoryIndex) -> int:
        """Fill the session map from the conversations in the recent list.

        Indexes written before the session map existed have none; this reads
        each recent conversation once to recover it.

        Returns:
            Number of session entries added
        """
        added = 0
        for item in index.recent:
            conversation = await self.load_conversation(item.id, path=item.path, index=index)
            if conversation is None or not conversation.session_id:
                continue
            if conversation.session_id not in index.sessions:
                index.sessions[conversation.session_id] = SessionEntry(
                    conversation_id=conversation.id, path=item.path
                )
                added += 1
        return added

    # ===== Index =====

    async def load_index(self) -> MemoryIndex:
        """Load the index, or an empty one if it is missing or unreadable."""
        try:
            async with aiofiles.open(self.index_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            logger.debug(f"No index at {self.index_path}")
            return MemoryIndex.empty(self._instance)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read index {self.index_path}: {e}")
            return MemoryIndex.empty(self._instance)

        try:
            metadata, _ = parse_frontmatter(content)
            codec = get_codec(read_schema_version(metadata))
            return codec.decode_index(content, self._instance)
        except ValueError as e:
            logger.warning(f"Failed to parse index {self.index_path}: {e}")
            return MemoryIndex.empty(self._instance)

    async def save_index(self, index: MemoryIndex) -> None:
        """Write the index atomically, stamping last_updated.

        Raises:
            StoragePermissionError: If the rename into place is refused
            StorageWriteError: If the file cannot be written
        """
        index.last_updated = utc_now()
        await self._atomic_write(self.index_path, self._codec.encode_index(index))
        logger.debug(f"Saved index for {self._instance} ({len(index.recent)} recent)")

    def update_index(
        self,
        index: MemoryIndex,
        conversation: Conversation,
        relative_path: str,
        recent_limit: int = RECENT_LIMIT,
    ) -> MemoryIndex:
        """Merge a new or updated conversation into a copy of the index.

        Args:
            index: Current index (left unmodified)
            conversation: Conversation that was just saved
            relative_path: Where it was saved
            recent_limit: Maximum length of the recent list

        Returns:
            The updated index
        """
        updated = index.copy()
        conversation_id = conversation.id
        is_new = not index.knows(conversation_id)
        summary = generate_summary(conversation.first_question) or "No summary"

        for topic in conversation.topics:
            entries = updated.topics.setdefault(topic, [])
            if not any(e.id == conversation_id for e in entries):
                entries.append(TopicEntry(id=conversation_id, path=relative_path, summary=summary))

        for keyword in conversation.keywords:
            ids = updated.keywords.setdefault(keyword, [])
            if conversation_id not in ids:
                ids.append(conversation_id)

        if conversation.session_id:
            updated.sessions[conversation.session_id] = SessionEntry(
                conversation_id=conversation_id, path=relative_path
            )

        recent = [r for r in updated.recent if r.id != conversation_id]
        recent.insert(
            0,
            RecentEntry(
                date=conversation.date_dir,
                id=conversation_id,
                summary=summary,
                keywords=list(conversation.keywords),
                path=relative_path,
            ),
        )
        updated.recent = recent[:recent_limit]

        if is_new:
            updated.total_conversations += 1
        updated.last_updated = utc_now()
        return updated

    async def get_stats(self, index: MemoryIndex | None = None) -> dict[str, Any]:
        """Counts derived from the index.

        Returns:
            Dict with total_conversations, total_topics, total_keywords
            and last_updated
        """
        if index is None:
            index = await self.load_index()
        return {
            "total_conversations": index.total_conversations,
            "total_topics": len(index.topics),
            "total_keywords": len(index.keywords),
            "last_updated": index.last_updated,
        }

    # ===== File helpers =====

    def _resolve(self, relative_path: str) -> Path | None:
        """Resolve a stored path, refusing anything outside the instance directory."""
        root = self.instance_path.resolve()
        full_path = (root / relative_path).resolve()
        if not full_path.is_relative_to(root):
            logger.warning(f"Ignoring path outside instance directory: {relative_path}")
            return None
        return full_path

    async def _search_conversation_file(self, conversation_id: str) -> Path | None:
        def _glob() -> list[Path]:
            return sorted(self.conversations_path.glob(f"*/conv-{conversation_id}.md"))

        matches = await asyncio.to_thread(_glob)
        return matches[0] if matches else None

    async def _read_conversation(self, full_path: Path) -> Conversation | None:
        try:
            async with aiofiles.open(full_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            logger.debug(f"Conversation file missing: {full_path}")
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read conversation {full_path}: {e}")
            return None

        try:
            metadata, _ = parse_frontmatter(content)
            codec = get_codec(read_schema_version(metadata))
            conversation = codec.decode_conversation(content)
        except ValueError as e:
            logger.warning(f"Failed to parse conversation {full_path}: {e}")
            return None

        if conversation is None:
            logger.warning(f"Conversation file {full_path} has no id")
        return conversation

    async def _atomic_write(self, path: Path, content: str) -> None:
        """Write to a temp file beside ``path``, then rename it into place."""
        temp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")

        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(content)
        except OSError as e:
            await self._discard(temp_path)
            raise StorageWriteError(path, str(e)) from e

        try:
            await aiofiles.os.replace(temp_path, path)
        except PermissionError as e:
            await self._discard(temp_path)
            raise StoragePermissionError(path, str(e)) from e
        except OSError as e:
            await self._discard(temp_path)
            raise StorageWriteError(path, str(e)) from e

    async def _discard(self, temp_path: Path) -> None:
        try:
            await aiofiles.os.remove(temp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove temp file {temp_path}: {e}")

"""Data model for conversation memory.

Exchanges, conversations and the per-instance index. These are plain
containers; persistence lives in storage.py and codec.py.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Self

RECENT_LIMIT = 50


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def merge_unique(existing: list[str], new: list[str]) -> list[str]:
    """Merge two lists, dropping duplicates and keeping first-seen order."""
    return list(dict.fromkeys([*existing, *new]))


@dataclass(frozen=True)
class Exchange:
    """A single question/answer pair.

    Attributes:
        timestamp: ISO-8601 UTC time the exchange was recorded
        question: The question text
        answer: The answer text
    """

    timestamp: str
    question: str
    answer: str

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary representation."""
        return {"timestamp": self.timestamp, "question": self.question, "answer": self.answer}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create Exchange from dictionary."""
        return cls(
            timestamp=str(data["timestamp"]),
            question=str(data["question"]),
            answer=str(data["answer"]),
        )


@dataclass
class Conversation:
    """All exchanges that share a session id.

    Attributes:
        id: Short unique token, assigned at creation and never changed
        session_id: Optional correlation key supplied by the caller
        created: ISO-8601 UTC creation time
        updated: ISO-8601 UTC time of the last appended exchange
        keywords: Keywords accumulated over all exchanges
        topics: Topics accumulated over all exchanges
        exchanges: Exchanges in the order they were recorded
    """

    id: str
    session_id: str | None
    created: str
    updated: str
    keywords: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    exchanges: list[Exchange] = field(default_factory=list)

    @property
    def date_dir(self) -> str:
        """UTC creation date (YYYY-MM-DD), used to shard conversation files."""
        try:
            created = datetime.fromisoformat(self.created)
        except ValueError:
            return self.created[:10]
        if created.tzinfo is not None:
            created = created.astimezone(timezone.utc)
        return created.date().isoformat()

    @property
    def first_question(self) -> str:
        return self.exchanges[0].question if self.exchanges else ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "created": self.created,
            "updated": self.updated,
            "keywords": list(self.keywords),
            "topics": list(self.topics),
            "exchanges": [e.to_dict() for e in self.exchanges],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create Conversation from dictionary."""
        return cls(
            id=str(data["id"]),
            session_id=data.get("session_id"),
            created=str(data.get("created", "")),
            updated=str(data.get("updated", "")),
            keywords=list(data.get("keywords", [])),
            topics=list(data.get("topics", [])),
            exchanges=[Exchange.from_dict(e) for e in data.get("exchanges", [])],
        )


@dataclass
class TopicEntry:
    """A conversation link under a topic heading in the index."""

    id: str
    path: str
    summary: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "path": self.path, "summary": self.summary}


@dataclass
class RecentEntry:
    """One line of the index's recent-conversations list."""

    date: str
    id: str
    summary: str
    keywords: list[str]
    path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "id": self.id,
            "summary": self.summary,
            "keywords": list(self.keywords),
            "path": self.path,
        }


@dataclass
class SessionEntry:
    """Where the conversation for a session id lives."""

    conversation_id: str
    path: str


@dataclass
class MemoryIndex:
    """Per-instance aggregate mapping keywords and topics to conversations.

    Attributes:
        instance: Name of the owning instance
        last_updated: ISO-8601 UTC time the index was last saved
        total_conversations: Number of distinct conversations ever indexed
        topics: Topic name -> conversation links
        keywords: Keyword -> conversation ids
        recent: Most-recent-first list, capped at RECENT_LIMIT entries
        sessions: Session id -> conversation location
    """

    instance: str
    last_updated: str = ""
    total_conversations: int = 0
    topics: dict[str, list[TopicEntry]] = field(default_factory=dict)
    keywords: dict[str, list[str]] = field(default_factory=dict)
    recent: list[RecentEntry] = field(default_factory=list)
    sessions: dict[str, SessionEntry] = field(default_factory=dict)

    @classmethod
    def empty(cls, instance: str) -> Self:
        """Create a fresh index with no conversations."""
        return cls(instance=instance, last_updated=utc_now())

    def copy(self) -> "MemoryIndex":
        """Deep copy, so a mutated index never aliases a cached one."""
        return copy.deepcopy(self)

    def knows(self, conversation_id: str) -> bool:
        """Check whether a conversation id is referenced anywhere in the index."""
        if any(r.id == conversation_id for r in self.recent):
            return True
        if any(s.conversation_id == conversation_id for s in self.sessions.values()):
            return True
        if any(conversation_id in ids for ids in self.keywords.values()):
            return True
        return any(e.id == conversation_id for entries in self.topics.values() for e in entries)

    def find_path(self, conversation_id: str) -> str | None:
        """Look up the stored relative path of a conversation, if indexed."""
        for entry in self.recent:
            if entry.id == conversation_id:
                return entry.path
        for session in self.sessions.values():
            if session.conversation_id == conversation_id:
                return session.path
        for entries in self.topics.values():
            for topic_entry in entries:
                if topic_entry.id == conversation_id:
                    return topic_entry.path
        return None

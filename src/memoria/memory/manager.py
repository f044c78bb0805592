"""Conversation memory manager for one instance.

Composes the indexer, retriever and storage into the operations the host
service calls: record an exchange, fetch relevant context for a question,
search, and inspect stored conversations.

Every public operation degrades to a "not available" result instead of
raising, with one exception: a StoragePermissionError while recording means
the write could not be committed and is raised to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import weakref
from pathlib import Path
from typing import Any

from memoria.config import MemoryConfig
from memoria.memory.errors import StoragePermissionError
from memoria.memory.indexer import extract_keywords_from_exchange, extract_topics_from_exchange
from memoria.memory.models import Conversation, MemoryIndex
from memoria.memory.retriever import (
    RetrievalMatch,
    create_context_summary,
    find_relevant_conversations,
    format_context_for_injection,
    rank_by_relevance,
    search_conversations,
    should_retrieve_context,
)
from memoria.memory.storage import ConversationStorage

logger = logging.getLogger(__name__)


class MemoryManager:
    """Owns the configuration, storage and cached index of one memory instance.

    The cached index is refreshed lazily once it is older than
    ``cache_ttl_seconds`` and replaced immediately after every successful
    write, so a writer always sees its own updates.

    Index updates are serialized through a lock held by this manager, and
    exchanges recorded under the same session id are applied one at a time.
    Two managers (or processes) pointed at the same instance directory can
    still overwrite each other's index updates; give each instance its own
    manager.

    Example:
        >>> from memoria.config import MemoryConfig
        >>> memory = MemoryManager(MemoryConfig(storage_path="./memory", instance_name="docs"))
        >>> await memory.initialize()
        >>> await memory.record_conversation("How do I rotate JWT keys?", "Publish a JWKS...")
        >>> result = await memory.get_relevant_context("JWT key rotation schedule?")
    """

    def __init__(self, config: MemoryConfig | None = None) -> None:
        """Initialize MemoryManager.

        Args:
            config: Memory configuration. Uses defaults if None.
        """
        self._config = config or MemoryConfig()
        self._storage: ConversationStorage | None = None

        self._index_cache: MemoryIndex | None = None
        self._index_cache_time = 0.0
        self._cache_generation = 0
        self._index_lock = asyncio.Lock()
        self._session_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

        self._enabled = False
        self._initialized = False

    async def initialize(
        self,
        instance_id: str | None = None,
        base_path: str | Path | None = None,
        enabled: bool | None = None,
        max_context_items: int | None = None,
        max_context_tokens: int | None = None,
    ) -> None:
        """Prepare storage and load the index into the cache.

        Arguments override the corresponding config values. Any failure
        leaves the manager disabled instead of raising. Calling this again
        after a successful initialization does nothing.

        Args:
            instance_id: Instance name (directory under base_path)
            base_path: Storage root; relative paths resolve against the cwd
            enabled: Set False to turn memory off for this instance
            max_context_items: Default maximum conversations per context
            max_context_tokens: Default token budget per context
        """
        if self._initialized:
            return

        overrides = {
            "instance_name": instance_id,
            "storage_path": str(base_path) if base_path is not None else None,
            "enabled": enabled,
            "max_context_items": max_context_items,
            "max_context_tokens": max_context_tokens,
        }
        overrides = {k: v for k, v in overrides.items() if v is not None}

        try:
            if overrides:
                self._config = MemoryConfig.model_validate({**self._config.model_dump(), **overrides})

            if not self._config.enabled:
                logger.info("Memory system disabled")
                return

            base = Path(self._config.storage_path).expanduser().resolve()
            self._config = self._config.model_copy(update={"storage_path": str(base)})
            self._storage = ConversationStorage(base, self._config.instance_name)

            await self._storage.ensure_layout()
            index = await self._storage.load_index()

            if index.recent and not index.sessions:
                added = await self._storage.rebuild_session_map(index)
                if added:
                    await self._storage.save_index(index)
                    logger.info(f"Rebuilt {added} session map entries for {self._config.instance_name}")

            self._set_cache(index)
            self._enabled = True
            self._initialized = True

            logger.info(f"Memory initialized for instance: {self._config.instance_name}")
            logger.info(f"Memory storage path: {base}")
            logger.info(f"Total conversations: {index.total_conversations}")

        except Exception as e:
            logger.error(f"Failed to initialize memory: {e}")
            self._enabled = False
            self._storage = None

    # ===== Cache =====

    def _set_cache(self, index: MemoryIndex) -> None:
        self._index_cache = index
        self._index_cache_time = time.monotonic()
        self._cache_generation += 1

    async def _get_cached_index(self) -> MemoryIndex:
        """Return the cached index, reloading it once the TTL has passed.

        A reload that finishes after a write has replaced the cache is
        returned to its caller but not installed.
        """
        if self._storage is None:
            raise RuntimeError("Memory storage not initialized")

        age = time.monotonic() - self._index_cache_time
        if self._index_cache is None or age > self._config.cache_ttl_seconds:
            generation = self._cache_generation
            index = await self._storage.load_index()
            if generation != self._cache_generation:
                return self._index_cache or index
            self._set_cache(index)
            logger.debug(f"Refreshed index cache for {self._config.instance_name}")

        return self._index_cache

    def invalidate_cache(self) -> None:
        """Force the next read to reload the index from disk."""
        self._index_cache = None
        self._index_cache_time = 0.0
        self._cache_generation += 1

    def _session_lock(self, session_id: str | None) -> contextlib.AbstractAsyncContextManager:
        if not session_id:
            return contextlib.nullcontext()
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    # ===== Recording =====

    async def record_conversation(
        self,
        question: str,
        answer: str,
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Record a question/answer exchange.

        Exchanges with a session id already seen are appended to that
        session's conversation; anything else starts a new conversation.

        Args:
            question: The question asked
            answer: The answer given
            session_id: Optional key grouping exchanges into one conversation
            metadata: Caller context, logged with the record

        Returns:
            Dict with:
                - recorded: Whether the exchange was stored
                - conversation_id: Conversation the exchange belongs to
                - is_new_conversation: True if a new conversation was started
                - keywords: Keywords extracted from this exchange
                - topics: Topics extracted from this exchange
            or {"recorded": False, "reason" | "error": str} on failure.

        Raises:
            StoragePermissionError: If the filesystem refused to commit a write
        """
        if not self._enabled or self._storage is None:
            return {"recorded": False, "reason": "Memory disabled"}

        try:
            keywords = extract_keywords_from_exchange(question, answer, self._config.max_keywords)
            topics = extract_topics_from_exchange(question, answer)

            async with self._session_lock(session_id):
                conversation: Conversation | None = None
                if session_id:
                    conversation = await self._storage.find_conversation_by_session_id(
                        session_id, index=await self._get_cached_index(), scan=True
                    )

                is_new = conversation is None
                if conversation is None:
                    conversation = self._storage.create_conversation(session_id, question, answer, keywords, topics)
                else:
                    conversation = self._storage.append_exchange(conversation, question, answer, keywords, topics)

                relative_path = await self._storage.save_conversation(conversation)

                async with self._index_lock:
                    index = await self._get_cached_index()
                    updated = self._storage.update_index(
                        index, conversation, relative_path, recent_limit=self._config.recent_limit
                    )
                    await self._storage.save_index(updated)
                    self._set_cache(updated)

        except StoragePermissionError as e:
            logger.error(f"Permission denied committing memory write to {e.path}: {e}")
            raise
        except Exception as e:
            logger.error(f"Failed to record conversation: {e}")
            return {"recorded": False, "error": str(e)}

        logger.info(
            f"Recorded exchange in conversation {conversation.id} "
            f"({'new' if is_new else 'appended'}, {len(conversation.exchanges)} exchanges)"
        )
        if metadata:
            logger.debug(f"Record metadata for {conversation.id}: {metadata}")

        return {
            "recorded": True,
            "conversation_id": conversation.id,
            "is_new_conversation": is_new,
            "keywords": keywords,
            "topics": topics,
        }

    # ===== Retrieval =====

    async def get_relevant_context(
        self,
        question: str,
        max_items: int | None = None,
        max_tokens: int | None = None,
        min_score: float | None = None,
    ) -> dict[str, Any]:
        """Find past conversations relevant to a question and format them.

        Args:
            question: The question about to be asked
            max_items: Maximum conversations to include (config default if None)
            max_tokens: Token budget for the context (config default if None)
            min_score: Minimum relevance score (config default if None)

        Returns:
            Dict with:
                - context_used: Whether any context was produced
                - context: Formatted context text
                - summary: One-line description of the context
                - sources: IDs of the conversations used
                - match_count: Number of conversations used
            or {"context_used": False, "reason" | "error": str}.
        """
        if not self._enabled or self._storage is None:
            return {"context_used": False, "reason": "Memory disabled"}

        if not should_retrieve_context(question):
            return {"context_used": False, "reason": "Question type does not need context"}

        try:
            index = await self._get_cached_index()

            matches = find_relevant_conversations(
                question,
                index,
                max_results=max_items or self._config.max_context_items,
                min_score=self._config.min_score if min_score is None else min_score,
            )
            if not matches:
                return {"context_used": False, "reason": "No relevant conversations found"}

            loaded: list[RetrievalMatch] = []
            conversations: list[Conversation] = []
            for match in matches:
                conversation = await self._storage.load_conversation(match.id, path=match.path or None, index=index)
                if conversation is not None:
                    loaded.append(match.with_conversation(conversation))
                    conversations.append(conversation)

            if not loaded:
                return {"context_used": False, "reason": "No relevant conversations found"}

            loaded = rank_by_relevance(loaded, question, conversations)
            context = format_context_for_injection(loaded, max_tokens or self._config.max_context_tokens)
            summary = create_context_summary(loaded)

        except Exception as e:
            logger.error(f"Failed to get context: {e}")
            return {"context_used": False, "error": str(e)}

        logger.debug(f"Memory context for {self._config.instance_name}: {summary}")
        return {
            "context_used": True,
            "context": context,
            "summary": summary,
            "sources": [m.id for m in loaded],
            "match_count": len(loaded),
        }

    async def search(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        """Search conversations by keyword.

        Returns:
            Conversation summaries, best match first
        """
        if not self._enabled:
            return []

        try:
            return search_conversations(query, await self._get_cached_index(), limit)
        except Exception as e:
            logger.error(f"Memory search failed: {e}")
            return []

    async def get_recent(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most recently updated conversations, newest first."""
        if not self._enabled:
            return []

        try:
            index = await self._get_cached_index()
            return [entry.to_dict() for entry in index.recent[:limit]]
        except Exception as e:
            logger.error(f"Failed to get recent conversations: {e}")
            return []

    async def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        """Full conversation by ID, or None if unknown."""
        if not self._enabled or self._storage is None:
            return None

        try:
            conversation = await self._storage.load_conversation(
                conversation_id, index=await self._get_cached_index()
            )
        except Exception as e:
            logger.error(f"Failed to get conversation {conversation_id}: {e}")
            return None

        return conversation.to_dict() if conversation else None

    async def get_stats(self) -> dict[str, Any]:
        """Memory statistics.

        Returns:
            {"enabled": False} when disabled, otherwise enabled plus
            total_conversations, total_topics, total_keywords, last_updated
        """
        if not self._enabled or self._storage is None:
            return {"enabled": False}

        try:
            stats = await self._storage.get_stats(await self._get_cached_index())
        except Exception as e:
            logger.error(f"Failed to get memory stats: {e}")
            return {"enabled": True, "error": str(e)}

        return {"enabled": True, **stats}

    def get_config(self) -> dict[str, Any]:
        """Effective configuration, for debugging."""
        return self._config.model_dump()

    # ===== Properties =====

    @property
    def is_enabled(self) -> bool:
        """Check if memory is enabled and ready for this instance."""
        return self._enabled

    @property
    def is_initialized(self) -> bool:
        """Check if MemoryManager is initialized."""
        return self._initialized

    @property
    def instance_name(self) -> str:
        return self._config.instance_name

    @property
    def storage(self) -> ConversationStorage | None:
        return self._storage

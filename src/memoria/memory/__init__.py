"""Memoria Memory System - durable conversation memory.

Records question/answer exchanges as human-readable markdown files, keeps a
keyword/topic index over them, and retrieves relevant past exchanges as
context for new questions.

Components:

1. **indexer:** Tokenization, keyword extraction and topic classification
2. **retriever:** Relevance scoring and bounded context formatting
3. **ConversationStorage:** Atomic markdown persistence of conversations and the index
4. **MemoryManager:** Cached index and public operations for one instance

Example:
    >>> from memoria.config import MemoriaConfig
    >>> from memoria.memory import create_memory_manager
    >>>
    >>> config = MemoriaConfig.load()
    >>> memory = await create_memory_manager(config, instance_name="docs")
    >>>
    >>> await memory.record_conversation("How do I use JWT auth?", "Sign a token...", session_id="s1")
    >>> result = await memory.get_relevant_context("JWT token expiry handling?")
    >>> if result["context_used"]:
    ...     prompt = result["context"] + "JWT token expiry handling?"
"""

from __future__ import annotations

from memoria.memory.errors import MemoriaError, StorageError, StoragePermissionError, StorageWriteError
from memoria.memory.factory import create_memory_manager, create_memory_manager_sync
from memoria.memory.manager import MemoryManager
from memoria.memory.models import Conversation, Exchange, MemoryIndex
from memoria.memory.storage import ConversationStorage

__all__ = [
    "MemoryManager",
    "ConversationStorage",
    "Conversation",
    "Exchange",
    "MemoryIndex",
    "create_memory_manager",
    "create_memory_manager_sync",
    "MemoriaError",
    "StorageError",
    "StorageWriteError",
    "StoragePermissionError",
]

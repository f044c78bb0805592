"""Shared pytest fixtures for Memoria tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from memoria.config import MemoryConfig
from memoria.memory.manager import MemoryManager
from memoria.memory.models import Conversation, Exchange
from memoria.memory.storage import ConversationStorage


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for test data."""
    return tmp_path


@pytest.fixture
def memory_config(temp_dir: Path) -> MemoryConfig:
    """Return memory configuration rooted in a temporary directory."""
    return MemoryConfig(
        storage_path=str(temp_dir / "memory"),
        instance_name="test-instance",
        max_context_items=3,
        max_context_tokens=2000,
    )


@pytest.fixture
async def storage(temp_dir: Path) -> ConversationStorage:
    """Create ConversationStorage with its layout in place."""
    storage = ConversationStorage(temp_dir / "memory", "test-instance")
    await storage.ensure_layout()
    return storage


@pytest.fixture
async def memory_manager(memory_config: MemoryConfig) -> MemoryManager:
    """Create initialized MemoryManager."""
    manager = MemoryManager(config=memory_config)
    await manager.initialize()
    return manager


@pytest.fixture
def sample_conversation() -> Conversation:
    """Return a conversation with two exchanges."""
    return Conversation(
        id="a1b2c3d4",
        session_id="session-42",
        created="2026-03-14T09:26:53.589793+00:00",
        updated="2026-03-14T09:31:00.000000+00:00",
        keywords=["jwt", "authentication", "token"],
        topics=["security"],
        exchanges=[
            Exchange(
                timestamp="2026-03-14T09:26:53.589793+00:00",
                question="How do I use JWT authentication?",
                answer="Use a signed token and verify on each request.",
            ),
            Exchange(
                timestamp="2026-03-14T09:31:00.000000+00:00",
                question="How long should the token live?",
                answer="Keep access tokens short-lived:\n\n- 15 minutes is common\n- refresh with a separate token",
            ),
        ],
    )

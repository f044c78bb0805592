"""Integration tests for the memory flow.

Tests the complete path from the factory through recording, restart,
retrieval and search, against real files in a temporary directory.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from memoria.config import MemoriaConfig, MemoryConfig
from memoria.memory import create_memory_manager, create_memory_manager_sync
from memoria.memory.storage import ConversationStorage


@pytest.fixture
def config(temp_dir: Path) -> MemoriaConfig:
    """Create MemoriaConfig with storage in a temporary directory."""
    return MemoriaConfig(memory=MemoryConfig(storage_path=str(temp_dir / "memory"), instance_name="default"))


class TestFactory:
    """Tests for manager creation."""

    @pytest.mark.asyncio
    async def test_create_initializes(self, config: MemoriaConfig) -> None:
        """Test the async factory returns a ready manager."""
        memory = await create_memory_manager(config, instance_name="support-bot")

        assert memory.is_initialized
        assert memory.is_enabled
        assert memory.instance_name == "support-bot"
        assert config.memory.instance_name == "default"

    @pytest.mark.asyncio
    async def test_create_from_memory_section(self, config: MemoriaConfig) -> None:
        """Test the factory accepts the memory section alone."""
        memory = await create_memory_manager(config.memory)
        assert memory.instance_name == "default"

    @pytest.mark.asyncio
    async def test_create_sync(self, config: MemoriaConfig) -> None:
        """Test the sync factory leaves initialization to the caller."""
        memory = create_memory_manager_sync(config, instance_name="later")
        assert not memory.is_initialized

        await memory.initialize()
        assert memory.is_enabled

    @pytest.mark.asyncio
    async def test_invalid_instance_name(self, config: MemoriaConfig) -> None:
        """Test path-like instance names are rejected."""
        with pytest.raises(ValidationError):
            await create_memory_manager(config, instance_name="../other")

    @pytest.mark.asyncio
    async def test_disabled_by_config(self, temp_dir: Path) -> None:
        """Test a disabled config produces a disabled manager."""
        config = MemoriaConfig(memory=MemoryConfig(enabled=False, storage_path=str(temp_dir / "memory")))
        memory = await create_memory_manager(config)

        assert not memory.is_enabled
        assert (await memory.record_conversation("Question text here", "Answer"))["recorded"] is False


class TestMemoryFlow:
    """End-to-end memory scenarios."""

    @pytest.mark.asyncio
    async def test_record_then_retrieve(self, config: MemoriaConfig) -> None:
        """Test a recorded exchange is injected as context for a related question."""
        memory = await create_memory_manager(config)

        await memory.record_conversation(
            "How do I configure OAuth2 refresh tokens?",
            "Issue a long-lived refresh token and rotate it on every use.",
            session_id="chat-1",
        )
        await memory.record_conversation("Which redis eviction policy fits a cache?", "allkeys-lru usually.")

        result = await memory.get_relevant_context("Should OAuth2 refresh tokens be rotated?")

        assert result["context_used"] is True
        assert result["match_count"] >= 1
        assert "OAuth2 refresh tokens" in result["context"]
        assert "redis" not in result["context"]

    @pytest.mark.asyncio
    async def test_instances_are_isolated(self, config: MemoriaConfig, temp_dir: Path) -> None:
        """Test two instances under one root never see each other's conversations."""
        alpha = await create_memory_manager(config, instance_name="alpha")
        beta = await create_memory_manager(config, instance_name="beta")

        await alpha.record_conversation("How do I use JWT authentication?", "Sign tokens.")

        assert (await alpha.get_stats())["total_conversations"] == 1
        assert (await beta.get_stats())["total_conversations"] == 0
        assert await beta.search("jwt") == []
        assert list((temp_dir / "memory" / "beta" / "conversations").rglob("*.md")) == []

    @pytest.mark.asyncio
    async def test_session_survives_restart(self, config: MemoriaConfig) -> None:
        """Test a new manager appends to a session recorded by an earlier one."""
        first = await create_memory_manager(config)
        recorded = await first.record_conversation("Plan the database migration", "Step one.", session_id="ops-7")

        second = await create_memory_manager(config)
        result = await second.record_conversation("What comes after step one?", "Step two.", session_id="ops-7")

        assert result["is_new_conversation"] is False
        assert result["conversation_id"] == recorded["conversation_id"]

        conversation = await second.get_conversation(recorded["conversation_id"])
        assert conversation is not None
        assert len(conversation["exchanges"]) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("session_id", ["user|42", " padded "])
    async def test_unusual_session_id_survives_restart(self, config: MemoriaConfig, session_id: str) -> None:
        """Test session ids with table characters or padding resume after a restart."""
        first = await create_memory_manager(config)
        recorded = await first.record_conversation("Plan the database migration", "Step one.", session_id=session_id)

        second = await create_memory_manager(config)
        result = await second.record_conversation("What comes after step one?", "Step two.", session_id=session_id)

        assert result["is_new_conversation"] is False
        assert result["conversation_id"] == recorded["conversation_id"]
        assert (await second.get_stats())["total_conversations"] == 1

    @pytest.mark.asyncio
    async def test_unmapped_session_found_by_scan(self, config: MemoriaConfig) -> None:
        """Test a session missing from the session map is still resumed."""
        first = await create_memory_manager(config)
        recorded = await first.record_conversation("Plan the database migration", "Step one.", session_id="ops-9")

        storage = ConversationStorage(Path(config.memory.storage_path), "default")
        index = await storage.load_index()
        index.sessions.clear()
        await storage.save_index(index)
        first.invalidate_cache()

        result = await first.record_conversation("What comes after step one?", "Step two.", session_id="ops-9")

        assert result["is_new_conversation"] is False
        assert result["conversation_id"] == recorded["conversation_id"]

    @pytest.mark.asyncio
    async def test_legacy_index_session_map_rebuilt(self, config: MemoriaConfig) -> None:
        """Test an index without a session map is repaired on startup."""
        first = await create_memory_manager(config)
        recorded = await first.record_conversation("Plan the database migration", "Step one.", session_id="ops-7")

        storage = ConversationStorage(Path(config.memory.storage_path), "default")
        index = await storage.load_index()
        index.sessions.clear()
        await storage.save_index(index)

        second = await create_memory_manager(config)
        result = await second.record_conversation("What comes after step one?", "Step two.", session_id="ops-7")

        assert result["conversation_id"] == recorded["conversation_id"]
        assert "ops-7" in (await storage.load_index()).sessions

    @pytest.mark.asyncio
    async def test_recent_list_is_bounded(self, config: MemoriaConfig) -> None:
        """Test the recent list stays capped while the total keeps counting."""
        memory = await create_memory_manager(config)

        ids = []
        for i in range(55):
            result = await memory.record_conversation(f"Question {i} about kubernetes scheduling", "Answer.")
            ids.append(result["conversation_id"])

        recent = await memory.get_recent(limit=100)
        assert len(recent) == 50
        assert recent[0]["id"] == ids[-1]

        stats = await memory.get_stats()
        assert stats["total_conversations"] == 55

        # Dropped from recent, still loadable by id
        assert await memory.get_conversation(ids[0]) is not None

    @pytest.mark.asyncio
    async def test_index_file_is_readable_markdown(self, config: MemoriaConfig, temp_dir: Path) -> None:
        """Test the index on disk is the documented markdown layout."""
        memory = await create_memory_manager(config)
        recorded = await memory.record_conversation("How do I use JWT authentication?", "Sign tokens.", session_id="s")

        content = (temp_dir / "memory" / "default" / "index.md").read_text(encoding="utf-8")

        assert content.startswith("---\n")
        assert "# Conversation Memory Index" in content
        assert "## By Topic" in content
        assert "## By Keyword" in content
        assert "## Sessions" in content
        assert "## Recent Conversations" in content
        assert f"] {recorded['conversation_id']} - How do I use JWT authentication?" in content

"""Factory functions for creating MemoryManager instances.

Each call builds an independent manager with its own cache and storage, so
every profile of the host service gets an isolated memory instance.
"""

from __future__ import annotations

import logging

from memoria.config import MemoriaConfig, MemoryConfig
from memoria.memory.manager import MemoryManager

logger = logging.getLogger(__name__)


def _memory_config(
    config: MemoriaConfig | MemoryConfig,
    instance_name: str | None,
) -> MemoryConfig:
    memory_config = config.memory if isinstance(config, MemoriaConfig) else config
    if instance_name is not None:
        memory_config = MemoryConfig.model_validate({**memory_config.model_dump(), "instance_name": instance_name})
    return memory_config


async def create_memory_manager(
    config: MemoriaConfig | MemoryConfig,
    instance_name: str | None = None,
) -> MemoryManager:
    """
    Create and initialize a MemoryManager for one instance.

    Args:
        config: Memoria configuration, or just its memory section.
        instance_name: Overrides the configured instance name.

    Returns:
        Initialized MemoryManager. Check ``is_enabled``: initialization
        failures disable the manager rather than raising.

    Raises:
        pydantic.ValidationError: If instance_name is not a valid name.

    Example:
        >>> from memoria.config import MemoriaConfig
        >>> config = MemoriaConfig.load()
        >>> memory = await create_memory_manager(config, instance_name="support-bot")
    """
    memory = MemoryManager(config=_memory_config(config, instance_name))
    logger.debug(f"Created memory manager for instance: {memory.instance_name}")

    await memory.initialize()

    return memory


def create_memory_manager_sync(
    config: MemoriaConfig | MemoryConfig,
    instance_name: str | None = None,
) -> MemoryManager:
    """
    Synchronous version of create_memory_manager for non-async contexts.

    The returned manager must have initialize() awaited before use.

    Example:
        >>> memory = create_memory_manager_sync(config, instance_name="support-bot")
        >>> await memory.initialize()
    """
    return MemoryManager(config=_memory_config(config, instance_name))

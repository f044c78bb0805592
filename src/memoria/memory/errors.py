"""Exceptions raised by the memory subsystem.

Most failures never leave the subsystem: reads degrade to "absent" and public
MemoryManager operations return structured results. Write failures are the
exception, since a failed rename means the data on disk is not what the caller
believes it is.
"""

from __future__ import annotations

from pathlib import Path


class MemoriaError(Exception):
    """Base class for memoria errors."""


class StorageError(MemoriaError):
    """A storage operation failed."""


class StorageWriteError(StorageError):
    """Writing a file to the storage directory failed.

    Attributes:
        path: Final path that was being written
    """

    def __init__(self, path: str | Path, reason: str = "") -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Failed to write {self.path}: {reason}")


class StoragePermissionError(StorageWriteError):
    """The atomic rename into place was refused by the filesystem."""

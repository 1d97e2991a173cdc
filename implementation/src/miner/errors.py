from __future__ import annotations


class MinerError(Exception):
    """Base class for all errors raised inside the miner package."""


class StorageError(MinerError):
    """A storage backend could not read, write or delete a key."""


class SaveVerificationError(MinerError):
    """Read-back after a write did not return the bytes that were written."""

    def __init__(self, key: str) -> None:
        super().__init__(f"save verification failed for '{key}'")
        self.key = key


class SaveValidationError(MinerError):
    """A persisted record failed the strict decoder."""


class ImportFormatError(MinerError):
    """An exported save string could not be decoded in any supported format."""

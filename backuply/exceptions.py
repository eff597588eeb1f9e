"""Error hierarchy for backup, restore and record store failures."""


class BackuplyError(Exception):
    """Base exception for all backuply failures."""


class DiscoveryError(BackuplyError):
    """Raised when walking a source tree or fingerprinting a file fails."""


class BackupIOError(BackuplyError):
    """Raised when creating a directory or copying a file fails."""


class RecordNotFound(BackuplyError):
    """Raised when no backup record matches the requested id or name."""

    def __init__(self, ref: str, message: str = None):
        self.ref = ref
        super().__init__(message or f"Could not find a backup record with ID, {ref}")


class InvalidReference(BackuplyError):
    """Raised when a differential backup references a missing or non-FULL record."""


class RestoreMergeError(BackuplyError):
    """Raised when a differential record cannot be reconciled with its full record."""


class StoreError(BackuplyError):
    """Raised when the record store document cannot be read or written."""


class ConfigError(BackuplyError):
    """Raised when the application configuration is unreadable or invalid."""


__all__ = [
    "BackuplyError",
    "DiscoveryError",
    "BackupIOError",
    "RecordNotFound",
    "InvalidReference",
    "RestoreMergeError",
    "StoreError",
    "ConfigError",
]

"""
Backuply - full and differential backups of directory trees.

A full backup copies a whole source tree into a fresh directory. A
differential backup stores only what was added, modified or deleted since a
chosen full backup, and a restore merges the two back into a complete tree.
Backup metadata lives in a JSON record store.
"""

__version__ = "0.1.0"

# Export public API
from .backup import BackupEngine
from .database import RecordStore
from .models import BackupRecord, BackupType, DirectoryEntry, FileEntry, OperationResult
from .operations import BackupOperations
from .restore import RestoreEngine, merge_records

__all__ = [
    "BackupEngine",
    "BackupOperations",
    "BackupRecord",
    "BackupType",
    "DirectoryEntry",
    "FileEntry",
    "OperationResult",
    "RecordStore",
    "RestoreEngine",
    "merge_records",
]

"""
Record types shared by the backup engine, the restore engine and the record store.

Entries keep the camelCase field names of the persisted JSON document so a
store written by one version can be read by another.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

from .exceptions import BackuplyError


class BackupType(str, Enum):
    FULL = "FULL"
    DIFF = "DIFF"


def to_relative_path(path: str, root: str) -> str:
    """Return ``path`` relative to ``root`` in POSIX form."""
    return Path(os.path.relpath(path, root)).as_posix()


def path_is_below(relative_path: str, directory: str) -> bool:
    """Check whether ``relative_path`` lives strictly below ``directory``."""
    child = PurePosixPath(relative_path).parts
    parent = PurePosixPath(directory).parts
    return len(child) > len(parent) and child[:len(parent)] == parent


def path_is_within(relative_path: str, directory: str) -> bool:
    """Check whether ``relative_path`` is ``directory`` itself or lives below it."""
    return PurePosixPath(relative_path) == PurePosixPath(directory) or path_is_below(relative_path, directory)


@dataclass(frozen=True)
class FileEntry:
    """A regular file as observed at capture time, or a tombstone for one."""

    full_path: str
    relative_path: str
    byte_length: int
    content_hash: str
    deleted: bool = False

    def rebased_onto(self, root: str) -> "FileEntry":
        return replace(self, full_path=str(Path(root) / self.relative_path))

    def as_tombstone(self) -> "FileEntry":
        return replace(self, deleted=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fullPath": self.full_path,
            "relativePath": self.relative_path,
            "byteLength": self.byte_length,
            "contentHash": self.content_hash,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source_root: Optional[str] = None) -> "FileEntry":
        relative_path = data.get("relativePath")
        if relative_path is None:
            relative_path = to_relative_path(data["fullPath"], source_root or "/")
        return cls(
            full_path=data["fullPath"],
            relative_path=relative_path,
            byte_length=int(data.get("byteLength", 0)),
            content_hash=data.get("contentHash", ""),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass(frozen=True)
class DirectoryEntry:
    """A directory with the metadata needed to recreate it, or a tombstone for one."""

    path: str
    relative_path: str
    depth: int
    deleted: bool = False
    mode: Optional[str] = None
    owner_uid: Optional[int] = None
    owner_gid: Optional[int] = None

    def rebased_onto(self, root: str) -> "DirectoryEntry":
        return replace(self, path=str(Path(root) / self.relative_path))

    def as_tombstone(self) -> "DirectoryEntry":
        # Only the location survives a deletion; the metadata no longer applies.
        return DirectoryEntry(
            path=self.path,
            relative_path=self.relative_path,
            depth=self.depth,
            deleted=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "path": self.path,
            "relativePath": self.relative_path,
            "deleted": self.deleted,
            "depth": self.depth,
        }
        if self.mode is not None:
            data["mode"] = self.mode
        if self.owner_uid is not None:
            data["ownerUid"] = self.owner_uid
        if self.owner_gid is not None:
            data["ownerGid"] = self.owner_gid
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source_root: Optional[str] = None) -> "DirectoryEntry":
        relative_path = data.get("relativePath")
        if relative_path is None:
            relative_path = to_relative_path(data["path"], source_root or "/")
        return cls(
            path=data["path"],
            relative_path=relative_path,
            depth=int(data.get("depth", 0)),
            deleted=bool(data.get("deleted", False)),
            mode=data.get("mode"),
            owner_uid=data.get("ownerUid"),
            owner_gid=data.get("ownerGid"),
        )


@dataclass
class BackupRecord:
    """Metadata describing one full or differential backup."""

    id: str
    name: str
    created: str
    type: BackupType
    total_bytes: int
    source_root: str
    dest_root: str
    file_entries: List[FileEntry] = field(default_factory=list)
    directory_entries: List[DirectoryEntry] = field(default_factory=list)
    based_on: Optional[str] = None
    # User-given name the backup was created under; ``name`` is the directory name.
    label: Optional[str] = None

    @property
    def is_full(self) -> bool:
        return self.type == BackupType.FULL

    @property
    def live_files(self) -> List[FileEntry]:
        return [f for f in self.file_entries if not f.deleted]

    @property
    def live_directories(self) -> List[DirectoryEntry]:
        return [d for d in self.directory_entries if not d.deleted]

    @property
    def tombstoned_directories(self) -> List[DirectoryEntry]:
        return [d for d in self.directory_entries if d.deleted]

    def rebased(self) -> "BackupRecord":
        """
        Return a copy whose entry paths point at the stored copy under ``dest_root``.

        Paths are captured against the original source tree, but the bytes of a
        backup live under its destination directory.
        """
        return replace(
            self,
            file_entries=[f.rebased_onto(self.dest_root) for f in self.file_entries],
            directory_entries=[d.rebased_onto(self.dest_root) for d in self.directory_entries],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "basedOn": self.based_on,
            "name": self.name,
            "label": self.label,
            "created": self.created,
            "type": self.type.value,
            "totalBytes": self.total_bytes,
            "fileEntries": [f.to_dict() for f in self.file_entries],
            "directoryEntries": [d.to_dict() for d in self.directory_entries],
            "sourceRoot": self.source_root,
            "destRoot": self.dest_root,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupRecord":
        source_root = data.get("sourceRoot", "")
        return cls(
            id=data["id"],
            based_on=data.get("basedOn"),
            name=data["name"],
            label=data.get("label"),
            created=data.get("created", ""),
            type=BackupType(data["type"]),
            total_bytes=int(data.get("totalBytes", 0)),
            file_entries=[FileEntry.from_dict(f, source_root) for f in data.get("fileEntries", [])],
            directory_entries=[
                DirectoryEntry.from_dict(d, source_root) for d in data.get("directoryEntries", [])
            ],
            source_root=source_root,
            dest_root=data.get("destRoot", ""),
        )


def total_byte_length(files: List[FileEntry]) -> int:
    """Sum the sizes of the files that are not tombstones."""
    return sum(f.byte_length for f in files if not f.deleted)


@dataclass
class OperationResult:
    """
    Outcome of a public operation: either a value or the error that stopped it.

    Public engine and facade methods never raise for expected failures; they
    hand back one of these and let the caller decide what to do.
    """

    value: Any = None
    error: Optional[BackuplyError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


__all__ = [
    "BackupType",
    "FileEntry",
    "DirectoryEntry",
    "BackupRecord",
    "OperationResult",
    "path_is_below",
    "path_is_within",
    "to_relative_path",
    "total_byte_length",
]

import shutil
import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from .database import RecordStore
from .discovery import TreeListing, collect_directory_entries, collect_file_entries, discover_tree
from .exceptions import BackupIOError, BackuplyError, InvalidReference, RecordNotFound
from .fsops import DEFAULT_WORKERS, copy_file, create_directory_tree, make_unique_directory, run_batch
from .models import (
    BackupRecord,
    BackupType,
    DirectoryEntry,
    FileEntry,
    OperationResult,
    path_is_below,
    total_byte_length,
)

logger = logging.getLogger('backuply')

Entry = Union[FileEntry, DirectoryEntry]


class ChangeKind(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Change:
    """One entry of a tree comparison, tagged with how it differs from the reference."""

    kind: ChangeKind
    entry: Entry


def diff_files(reference: Iterable[FileEntry], current: Iterable[FileEntry]) -> List[Change]:
    """
    Compare the files of a reference backup against the files found now.

    Files are matched on their path relative to the backup source. A reference
    file with no current counterpart becomes a tombstone that keeps its last
    known size and hash; a counterpart with another hash is reported with the
    current entry. Current files unknown to the reference are additions.
    """
    current = list(current)
    current_by_path = {f.relative_path: f for f in current}
    reference_paths = set()
    changes = []

    for ref in reference:
        if ref.deleted:
            continue
        reference_paths.add(ref.relative_path)
        match = current_by_path.get(ref.relative_path)
        if match is None:
            changes.append(Change(ChangeKind.DELETED, ref.as_tombstone()))
        elif match.content_hash != ref.content_hash:
            changes.append(Change(ChangeKind.MODIFIED, match))
        else:
            changes.append(Change(ChangeKind.UNCHANGED, match))

    for f in current:
        if f.relative_path not in reference_paths:
            changes.append(Change(ChangeKind.ADDED, f))
    return changes


def diff_directories(reference: Iterable[DirectoryEntry], current: Iterable[DirectoryEntry]) -> List[Change]:
    """Compare directories by existence only; there is no notion of a modified directory."""
    current = list(current)
    current_paths = {d.relative_path for d in current}
    reference_paths = set()
    changes = []

    for ref in reference:
        if ref.deleted:
            continue
        reference_paths.add(ref.relative_path)
        if ref.relative_path in current_paths:
            changes.append(Change(ChangeKind.UNCHANGED, ref))
        else:
            changes.append(Change(ChangeKind.DELETED, ref.as_tombstone()))

    for d in current:
        if d.relative_path not in reference_paths:
            changes.append(Change(ChangeKind.ADDED, d))
    return changes


def collapse_changes(changes: Iterable[Change]) -> List[Entry]:
    """Keep only the entries a differential record stores: everything but unchanged ones."""
    return [c.entry for c in changes if c.kind is not ChangeKind.UNCHANGED]


def _summarize(changes: List[Change]) -> str:
    counts = Counter(c.kind for c in changes)
    return ", ".join(
        f"{counts[kind]} {kind.value}"
        for kind in (ChangeKind.ADDED, ChangeKind.MODIFIED, ChangeKind.DELETED)
    )


def backup_name(name: str, backup_type: BackupType, created: datetime, use_date: bool = True) -> str:
    """Build the destination directory name, e.g. ``docs-full-2024-01-31``."""
    if not use_date:
        return name
    return f"{name}-{backup_type.value.lower()}-{created.date().isoformat()}"


class BackupEngine:
    """Creates full and differential backups and records them in a RecordStore."""

    def __init__(self, store: RecordStore, max_workers: int = DEFAULT_WORKERS):
        """
        Args:
            store (RecordStore): Store that receives a record per successful backup
            max_workers (int, optional): Concurrency for hashing and copying. Defaults to 8.
        """
        self.store = store
        self.max_workers = max_workers
        self.last_listing: Optional[TreeListing] = None

    def clear_buffers(self) -> None:
        """Forget the tree listing kept from the previous backup."""
        self.last_listing = None

    def _scan(self, source: str) -> Tuple[TreeListing, List[FileEntry], List[DirectoryEntry]]:
        logger.info(f"Generating backup tree from '{source}'")
        listing = discover_tree(source)
        self.last_listing = listing
        files = collect_file_entries(listing.files, listing.root, self.max_workers)
        directories = collect_directory_entries(listing.directories, listing.root)
        logger.info(f"Fingerprinted {len(files)} files ({total_byte_length(files)} bytes) under '{listing.root}'")
        return listing, files, directories

    def _copy_files(self, files: List[FileEntry], dest_root: str,
                    excluded_directories: Iterable[DirectoryEntry] = ()) -> int:
        excluded = [d.relative_path for d in excluded_directories]
        selected = [
            f for f in files
            if not f.deleted and not any(path_is_below(f.relative_path, d) for d in excluded)
        ]
        run_batch(
            lambda f: copy_file(f.full_path, str(Path(dest_root) / f.relative_path)),
            selected,
            self.max_workers,
        )
        logger.info(f"Copied {len(selected)} files to '{dest_root}'")
        return len(selected)

    def _reference_record(self, full_id: str) -> BackupRecord:
        self.store.reload()
        try:
            reference = self.store.find_by_id(full_id)
        except RecordNotFound as e:
            raise InvalidReference(
                f"Could not find a reference full backup with ID, {full_id}. Cannot continue"
            ) from e
        if not reference.is_full:
            raise InvalidReference(
                f"Backup {full_id} is a {reference.type.value} backup; differential backups "
                f"must reference a FULL backup"
            )
        return reference

    @staticmethod
    def _discard(dest_root: Optional[str]) -> None:
        if dest_root:
            logger.warning(f"Removing incomplete backup directory '{dest_root}'")
            shutil.rmtree(dest_root, ignore_errors=True)

    def full_backup(self, source: str, name: str, destination: str, use_date: bool = True) -> OperationResult:
        """
        Copy the whole of ``source`` into a fresh directory under ``destination``.

        Args:
            source (str): Directory to back up
            name (str): User-given backup name
            destination (str): Directory that will contain the backup directory
            use_date (bool, optional): Append the type and today's date to the
                directory name. Defaults to True.

        Returns:
            OperationResult: The persisted FULL BackupRecord, or the error that
            stopped the backup. No record is stored on failure.
        """
        dest_root = None
        try:
            if not name:
                raise BackuplyError("A backup name is required")
            created = datetime.now(timezone.utc)
            logger.info(f"Starting full backup '{name}' of '{source}'")

            listing, files, directories = self._scan(source)

            dest_root = make_unique_directory(destination, backup_name(name, BackupType.FULL, created, use_date))
            create_directory_tree(directories, dest_root, self.max_workers)
            self._copy_files(files, dest_root)

            record = BackupRecord(
                id=str(uuid.uuid4()),
                based_on=None,
                name=Path(dest_root).name,
                label=name,
                created=created.isoformat(),
                type=BackupType.FULL,
                total_bytes=total_byte_length(files),
                file_entries=files,
                directory_entries=directories,
                source_root=listing.root,
                dest_root=dest_root,
            )
            self.store.insert(record)
            logger.info(f"Full backup {record.id} completed: {len(files)} files, {record.total_bytes} bytes")
            return OperationResult(value=record)
        except BackuplyError as e:
            logger.error(f"Error creating full backup: {e}")
            self._discard(dest_root)
            return OperationResult(error=e)
        except OSError as e:
            logger.error(f"Error creating full backup: {e}")
            self._discard(dest_root)
            return OperationResult(error=BackupIOError(str(e)))

    def diff_backup(self, full_id: str, source: str, name: str, destination: str,
                    use_date: bool = True) -> OperationResult:
        """
        Store only what changed in ``source`` since the FULL backup ``full_id``.

        Only added directories are recreated and only added or modified files
        are copied. Deleted files and directories are kept as tombstones in
        the record so a restore can leave them out.

        Returns:
            OperationResult: The persisted DIFF BackupRecord, or the error that
            stopped the backup. An invalid reference fails before anything is
            read from or written to disk.
        """
        dest_root = None
        try:
            if not name:
                raise BackuplyError("A backup name is required")
            reference = self._reference_record(full_id)
            created = datetime.now(timezone.utc)
            logger.info(f"Starting differential backup '{name}' of '{source}' against {full_id}")

            listing, files, directories = self._scan(source)

            file_changes = diff_files(reference.file_entries, files)
            directory_changes = diff_directories(reference.directory_entries, directories)
            changed_files = collapse_changes(file_changes)
            changed_directories = collapse_changes(directory_changes)
            removed_directories = [d for d in changed_directories if d.deleted]
            logger.info(
                f"Diff computed against {full_id}: files ({_summarize(file_changes)}), "
                f"directories ({_summarize(directory_changes)})"
            )

            dest_root = make_unique_directory(destination, backup_name(name, BackupType.DIFF, created, use_date))
            create_directory_tree(changed_directories, dest_root, self.max_workers)
            self._copy_files(changed_files, dest_root, removed_directories)

            record = BackupRecord(
                id=str(uuid.uuid4()),
                based_on=reference.id,
                name=Path(dest_root).name,
                label=name,
                created=created.isoformat(),
                type=BackupType.DIFF,
                total_bytes=total_byte_length(changed_files),
                file_entries=changed_files,
                directory_entries=changed_directories,
                source_root=listing.root,
                dest_root=dest_root,
            )
            self.store.insert(record)
            logger.info(
                f"Differential backup {record.id} completed: {len(changed_files)} file changes, "
                f"{record.total_bytes} bytes"
            )
            return OperationResult(value=record)
        except BackuplyError as e:
            logger.error(f"Error creating differential backup: {e}")
            self._discard(dest_root)
            return OperationResult(error=e)
        except OSError as e:
            logger.error(f"Error creating differential backup: {e}")
            self._discard(dest_root)
            return OperationResult(error=BackupIOError(str(e)))

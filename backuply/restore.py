import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

from .database import RecordStore
from .exceptions import BackupIOError, BackuplyError, RecordNotFound, RestoreMergeError
from .fsops import DEFAULT_WORKERS, copy_file, create_directory_tree, run_batch
from .models import (
    BackupRecord,
    BackupType,
    DirectoryEntry,
    FileEntry,
    OperationResult,
    path_is_below,
    path_is_within,
)

logger = logging.getLogger('backuply')


@dataclass
class RestoreReport:
    """Summary of a completed restore."""

    record_id: str
    target: str
    files_restored: int
    directories_created: int
    bytes_restored: int


def _is_removed(relative_path: str, removed: List[str]) -> bool:
    """A directory is removed when it or one of its ancestors is tombstoned."""
    return any(path_is_within(relative_path, d) for d in removed)


def merge_records(full: BackupRecord, diff: BackupRecord) -> BackupRecord:
    """
    Reconcile a FULL record with a DIFF record based on it.

    The result is a transient record describing the effective tree. Its entries
    already point at the stored copies: unchanged files under the full
    backup's destination, added or modified ones under the differential's.

    Files are keyed by their relative path, so each path appears once and the
    differential's version wins over the full backup's. Tombstoned files are
    dropped. Tombstoned directories of both records are kept as tombstones,
    and live directories below any of them are dropped.

    Raises:
        RestoreMergeError: If the records do not form a FULL + DIFF pair
    """
    if full.type != BackupType.FULL:
        raise RestoreMergeError(f"Backup {full.id} is not a FULL backup and cannot be the merge base")
    if diff.type != BackupType.DIFF:
        raise RestoreMergeError(f"Backup {diff.id} is not a differential backup")
    if diff.based_on != full.id:
        raise RestoreMergeError(f"Differential backup {diff.id} is based on {diff.based_on}, not on {full.id}")

    full = full.rebased()
    diff = diff.rebased()

    removed: Dict[str, DirectoryEntry] = {}
    for d in full.tombstoned_directories + diff.tombstoned_directories:
        removed[d.relative_path] = d

    files: Dict[str, FileEntry] = {f.relative_path: f for f in full.live_files}
    for entry in diff.file_entries:
        if entry.deleted:
            files.pop(entry.relative_path, None)
            continue
        current = files.get(entry.relative_path)
        if current is None or current.content_hash != entry.content_hash:
            files[entry.relative_path] = entry

    directories: Dict[str, DirectoryEntry] = {d.relative_path: d for d in full.live_directories}
    for d in diff.live_directories:
        directories[d.relative_path] = d
    live_directories = [d for d in directories.values() if not _is_removed(d.relative_path, list(removed))]

    logger.debug(
        f"Merged {full.id} and {diff.id}: {len(files)} files, {len(live_directories)} directories, "
        f"{len(removed)} removed directories"
    )
    return BackupRecord(
        id=diff.id,
        based_on=full.id,
        name=diff.name,
        label=diff.label,
        created=diff.created,
        type=BackupType.DIFF,
        # Only an approximation for display; the copied file set is authoritative.
        total_bytes=full.total_bytes + diff.total_bytes,
        file_entries=list(files.values()),
        directory_entries=live_directories + list(removed.values()),
        source_root=diff.source_root,
        dest_root=diff.dest_root,
    )


class RestoreEngine:
    """Rebuilds a directory tree from a FULL backup or a FULL + DIFF pair."""

    def __init__(self, store: RecordStore, max_workers: int = DEFAULT_WORKERS):
        self.store = store
        self.max_workers = max_workers

    @staticmethod
    def _require_stored_copy(record: BackupRecord) -> None:
        if not os.path.isdir(record.dest_root):
            raise BackupIOError(f"Stored copy of backup {record.id} is missing at '{record.dest_root}'")

    def _effective_record(self, record: BackupRecord) -> BackupRecord:
        if record.based_on is None:
            self._require_stored_copy(record)
            return record.rebased()

        try:
            full = self.store.find_by_id(record.based_on)
        except RecordNotFound as e:
            raise RestoreMergeError(
                f"Reference full backup {record.based_on} of {record.id} could not be found"
            ) from e
        self._require_stored_copy(full)
        self._require_stored_copy(record)
        return merge_records(full, record)

    def _materialize(self, record: BackupRecord, target_dir: str) -> RestoreReport:
        removed = [d.relative_path for d in record.tombstoned_directories]
        # A file may replace a removed directory of the same name, so only files
        # strictly below a removed directory are left out.
        files = [
            f for f in record.live_files
            if not any(path_is_below(f.relative_path, d) for d in removed)
        ]

        try:
            os.makedirs(target_dir, exist_ok=True)
        except OSError as e:
            raise BackupIOError(f"Failed to create restore directory '{target_dir}': {e}") from e

        directories_created = create_directory_tree(record.live_directories, target_dir, self.max_workers)
        sizes = run_batch(
            lambda f: copy_file(f.full_path, str(Path(target_dir) / f.relative_path)),
            files,
            self.max_workers,
        )
        return RestoreReport(
            record_id=record.id,
            target=target_dir,
            files_restored=len(files),
            directories_created=directories_created,
            bytes_restored=sum(sizes),
        )

    def restore(self, ref_id: str, target_dir: str) -> OperationResult:
        """
        Restore the backup ``ref_id`` into ``target_dir``.

        Args:
            ref_id (str): ID of a FULL or DIFF backup record
            target_dir (str): Directory to restore into (created if missing)

        Returns:
            OperationResult: A RestoreReport, or the error that stopped the
            restore. Nothing is written when the record cannot be resolved;
            files copied before a later failure are left in place.
        """
        try:
            self.store.reload()
            record = self.store.find_by_id(ref_id)
            logger.info(f"Restoring {record.type.value} backup {record.id} ({record.name}) to '{target_dir}'")
            effective = self._effective_record(record)
            report = self._materialize(effective, os.path.abspath(target_dir))
            logger.info(
                f"Restored {report.files_restored} files ({report.bytes_restored} bytes) "
                f"from backup {record.id} to '{report.target}'"
            )
            return OperationResult(value=report)
        except BackuplyError as e:
            logger.error(f"Error restoring backup: {e}")
            return OperationResult(error=e)
        except OSError as e:
            logger.error(f"Error restoring backup: {e}")
            return OperationResult(error=BackupIOError(str(e)))

import os
import shutil
import logging
from typing import Optional

from .backup import BackupEngine
from .config import AppConfig
from .database import RecordStore
from .exceptions import BackupIOError, BackuplyError, InvalidReference, RecordNotFound
from .fsops import DEFAULT_WORKERS
from .models import BackupType, OperationResult
from .restore import RestoreEngine


# Get logger instance (configuration is handled in cli.py)
logger = logging.getLogger('backuply')


class BackupOperations:
    """Entry point that wires configuration, the record store and both engines together."""

    def __init__(self, db_path: Optional[str] = None, config: Optional[AppConfig] = None,
                 max_workers: int = DEFAULT_WORKERS):
        """
        Initialize BackupOperations with a record store path.

        Args:
            db_path (str, optional): Path to the record store document. Defaults
                to the ``db.path`` setting of the application configuration.
            config (AppConfig, optional): Configuration to read ``db.path`` from.
            max_workers (int, optional): Concurrency for hashing and copying.

        Raises:
            StoreError: If an existing record store cannot be read
            ConfigError: If the configuration cannot be read
        """
        if db_path is None:
            config = config or AppConfig()
            db_path = config.db_path
        self.config = config
        self.store = RecordStore(db_path)
        self.backup_engine = BackupEngine(self.store, max_workers)
        self.restore_engine = RestoreEngine(self.store, max_workers)
        logger.debug(f"Initialized BackupOperations with record store at {db_path}")

    def full_backup(self, source: str, name: str, destination: str, use_date: bool = True) -> OperationResult:
        return self.backup_engine.full_backup(source, name, destination, use_date)

    def diff_backup(self, full_id: str, source: str, name: str, destination: str,
                    use_date: bool = True) -> OperationResult:
        return self.backup_engine.diff_backup(full_id, source, name, destination, use_date)

    def backup(self, name: str, source: str, destination: str, ref: Optional[str] = None,
               use_date: bool = True) -> OperationResult:
        """
        Create a full backup, or a differential one when ``ref`` is given.

        Args:
            name (str): User-given backup name
            source (str): Directory to back up
            destination (str): Directory that will contain the backup
            ref (str, optional): ID or name of the FULL backup to diff against
            use_date (bool, optional): Include type and date in the directory name

        Returns:
            OperationResult: The new BackupRecord or the error that stopped it
        """
        self.backup_engine.clear_buffers()
        if not ref:
            return self.full_backup(source, name, destination, use_date)

        try:
            reference = self.store.resolve(ref, BackupType.FULL)
        except RecordNotFound as e:
            logger.error(f"Could not resolve reference backup '{ref}': {e}")
            return OperationResult(error=InvalidReference(
                f"Could not find a reference full backup for '{ref}'. Cannot continue"
            ))
        except BackuplyError as e:
            return OperationResult(error=e)
        logger.info(f"Reference '{ref}' resolved to full backup {reference.id}")
        return self.diff_backup(reference.id, source, name, destination, use_date)

    def restore(self, ref: str, target: str, full_only: bool = False) -> OperationResult:
        """
        Restore a backup given by ID or by name.

        Args:
            ref (str): Backup ID, or a name resolving to its latest backup
            target (str): Directory to restore to
            full_only (bool, optional): With a name, pick the latest FULL backup

        Returns:
            OperationResult: A RestoreReport or the error that stopped it
        """
        try:
            self.store.reload()
            record = self.store.resolve(ref, BackupType.FULL if full_only else None)
        except BackuplyError as e:
            logger.error(f"Error restoring backup: {e}")
            return OperationResult(error=e)
        return self.restore_engine.restore(record.id, target)

    def list_backups(self, name: Optional[str] = None, archived: bool = False) -> OperationResult:
        """List backup records, optionally only those created under ``name``."""
        try:
            self.store.reload()
            records = self.store.list_records(name, archived)
            logger.debug(f"Retrieved {len(records)} backup records")
            return OperationResult(value=records)
        except BackuplyError as e:
            logger.error(f"Error listing backups: {e}")
            return OperationResult(error=e)

    def find_backup(self, ref: str) -> OperationResult:
        try:
            self.store.reload()
            return OperationResult(value=self.store.resolve(ref))
        except BackuplyError as e:
            return OperationResult(error=e)

    def delete_backup(self, record_id: str, purge: bool = False) -> OperationResult:
        """
        Remove a backup record, and with ``purge`` its stored copy as well.

        A FULL backup that differential backups still reference cannot be removed.
        """
        try:
            record = self.store.delete(record_id)
            if purge and os.path.isdir(record.dest_root):
                logger.info(f"Purging stored copy of backup {record_id} at '{record.dest_root}'")
                shutil.rmtree(record.dest_root)
            return OperationResult(value=record)
        except BackuplyError as e:
            logger.error(f"Error deleting backup: {e}")
            return OperationResult(error=e)
        except OSError as e:
            logger.error(f"Error purging backup: {e}")
            return OperationResult(error=BackupIOError(str(e)))

    def archive_backup(self, record_id: str) -> OperationResult:
        try:
            return OperationResult(value=self.store.archive(record_id))
        except BackuplyError as e:
            logger.error(f"Error archiving backup: {e}")
            return OperationResult(error=e)

    def close(self) -> None:
        """Release per-run state held by the engines."""
        self.backup_engine.clear_buffers()

    def __enter__(self) -> 'BackupOperations':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

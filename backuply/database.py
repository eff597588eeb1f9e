import os
import re
import json
import logging
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import InvalidReference, RecordNotFound, StoreError
from .models import BackupRecord, BackupType

logger = logging.getLogger('backuply')

BACKUPS_TABLE = "backups"
ARCHIVE_TABLE = "archive"

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE
)


def _empty_document() -> Dict[str, List[Dict[str, Any]]]:
    return {BACKUPS_TABLE: [], ARCHIVE_TABLE: []}


def _name_matches(record: BackupRecord, name: str) -> bool:
    if record.label is not None:
        return record.label == name
    # Records without a label only have the directory name: "<name>[-<type>-<date>][-<n>]".
    pattern = rf'^{re.escape(name)}(-(full|diff)-\d{{4}}-\d{{2}}-\d{{2}})?(-\d+)?$'
    return re.match(pattern, record.name) is not None


class RecordStore:
    """
    Persists backup records in a single JSON document.

    The document has the shape ``{"backups": [...], "archive": [...]}``. It is
    re-read before every mutation and rewritten as a whole through a temporary
    file, so readers never observe a half-written store. A single writing
    process is assumed; there is no file locking.
    """

    def __init__(self, db_path: str):
        """Open the store at ``db_path``; a missing file reads as an empty store."""
        self.db_path = Path(db_path)
        self._document = self._read()

    def _read(self) -> Dict[str, List[Dict[str, Any]]]:
        """Load the document from disk, or an empty one if it does not exist yet."""
        if not self.db_path.exists():
            return _empty_document()
        try:
            with open(self.db_path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise StoreError(f"Record store '{self.db_path}' is not valid JSON: {e}") from e
        except OSError as e:
            raise StoreError(f"Could not read record store '{self.db_path}': {e}") from e

        if not isinstance(document, dict) or not isinstance(document.get(BACKUPS_TABLE, []), list):
            raise StoreError(f"Record store '{self.db_path}' has an unexpected layout")
        document.setdefault(BACKUPS_TABLE, [])
        document.setdefault(ARCHIVE_TABLE, [])
        return document

    def _write(self) -> None:
        """Atomically replace the document on disk with the in-memory one."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.db_path.name}.", suffix=".tmp", dir=str(self.db_path.parent)
            )
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(self._document, f, indent=2)
                os.replace(tmp_path, self.db_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StoreError(f"Could not write record store '{self.db_path}': {e}") from e

    def reload(self) -> None:
        """Discard the in-memory document and read it again from disk."""
        self._document = self._read()

    def _records(self, table: str = BACKUPS_TABLE) -> List[BackupRecord]:
        try:
            return [BackupRecord.from_dict(item) for item in self._document[table]]
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Record store '{self.db_path}' contains a malformed record: {e}") from e

    def insert(self, record: BackupRecord) -> BackupRecord:
        """Append a new record and persist the store."""
        self.reload()
        known_ids = {item.get("id") for table in (BACKUPS_TABLE, ARCHIVE_TABLE) for item in self._document[table]}
        if record.id in known_ids:
            raise StoreError(f"A backup record with ID, {record.id}, already exists")
        self._document[BACKUPS_TABLE].append(record.to_dict())
        self._write()
        logger.debug(f"Inserted {record.type.value} record {record.id} ({record.name})")
        return record

    def find_by_id(self, record_id: str, archived: bool = False) -> BackupRecord:
        """Get a specific record by ID."""
        table = ARCHIVE_TABLE if archived else BACKUPS_TABLE
        for record in self._records(table):
            if record.id == record_id:
                return record
        raise RecordNotFound(record_id)

    def find_by_name(self, name: str, archived: bool = False) -> List[BackupRecord]:
        """Get all records created under the user-given ``name``, oldest first."""
        table = ARCHIVE_TABLE if archived else BACKUPS_TABLE
        return [r for r in self._records(table) if _name_matches(r, name)]

    def latest(self, name: str, backup_type: Optional[BackupType] = None) -> BackupRecord:
        """Get the most recently created record for ``name``, optionally of one type."""
        candidates = [
            r for r in self.find_by_name(name)
            if backup_type is None or r.type == backup_type
        ]
        if not candidates:
            kind = f"{backup_type.value} " if backup_type else ""
            raise RecordNotFound(name, f"Could not find a {kind}backup record named, {name}")
        return max(candidates, key=lambda r: r.created)

    def resolve(self, ref: str, backup_type: Optional[BackupType] = None) -> BackupRecord:
        """
        Translate a user reference into a record.

        UUID-shaped references are looked up by ID; anything else is treated
        as a backup name and resolves to the latest record with that name.
        """
        if UUID_PATTERN.match(ref):
            record = self.find_by_id(ref.lower())
            if backup_type is not None and record.type != backup_type:
                raise RecordNotFound(ref, f"Backup {ref} is not a {backup_type.value} backup")
            return record
        logger.debug(f"Reference '{ref}' is not a UUID, resolving it as a backup name")
        return self.latest(ref, backup_type)

    def list_records(self, name: Optional[str] = None, archived: bool = False) -> List[BackupRecord]:
        """Get all records, optionally only those created under ``name``."""
        if name:
            return self.find_by_name(name, archived)
        return self._records(ARCHIVE_TABLE if archived else BACKUPS_TABLE)

    def dependents(self, record_id: str) -> List[BackupRecord]:
        """Get the live differential records based on ``record_id``."""
        return [r for r in self._records() if r.based_on == record_id]

    def delete(self, record_id: str) -> BackupRecord:
        """Remove a record by ID and return it."""
        self.reload()
        record = self.find_by_id(record_id)
        dependents = self.dependents(record_id)
        if dependents:
            ids = ", ".join(r.id for r in dependents)
            raise InvalidReference(
                f"Backup {record_id} is the reference of {len(dependents)} differential backup(s): {ids}"
            )
        self._document[BACKUPS_TABLE] = [
            item for item in self._document[BACKUPS_TABLE] if item.get("id") != record_id
        ]
        self._write()
        logger.info(f"Removed backup record {record_id}")
        return record

    def archive(self, record_id: str) -> BackupRecord:
        """Move a record from the live backups to the archive."""
        self.reload()
        record = self.find_by_id(record_id)
        if self.dependents(record_id):
            raise InvalidReference(f"Backup {record_id} is still referenced by differential backups")
        self._document[BACKUPS_TABLE] = [
            item for item in self._document[BACKUPS_TABLE] if item.get("id") != record_id
        ]
        self._document[ARCHIVE_TABLE].append(record.to_dict())
        self._write()
        logger.info(f"Archived backup record {record_id}")
        return record

    def count(self, archived: bool = False) -> int:
        return len(self._document[ARCHIVE_TABLE if archived else BACKUPS_TABLE])

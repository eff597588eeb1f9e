"""
File-system helpers shared by the backup and restore engines.

Copies and directory creations are dispatched as batches of independent jobs
on a thread pool. A batch finishes when every job has finished or as soon as
one of them fails, in which case queued jobs are cancelled and the failure is
raised to the caller once the running ones have drained.
"""

import os
import shutil
import stat
import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from itertools import groupby
from pathlib import Path
from typing import Callable, Iterable, List, Optional, TypeVar

from .exceptions import BackupIOError
from .models import DirectoryEntry

logger = logging.getLogger('backuply')

DEFAULT_WORKERS = 8

T = TypeVar('T')
R = TypeVar('R')


def run_batch(func: Callable[[T], R], items: Iterable[T], max_workers: int = DEFAULT_WORKERS) -> List[R]:
    """
    Run ``func`` over ``items`` concurrently and return results in input order.

    Args:
        func: Callable applied to each item
        items: Work items
        max_workers: Upper bound on concurrently running jobs

    Returns:
        List of results, one per item, in the order the items were given

    Raises:
        Exception: The first exception raised by any job
    """
    items = list(items)
    if not items:
        return []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as executor:
        futures = [executor.submit(func, item) for item in items]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in done:
            error = future.exception()
            if error is not None:
                for queued in pending:
                    queued.cancel()
                raise error
        return [future.result() for future in futures]


def copy_file(source: str, destination: str) -> int:
    """
    Copy a single file, creating missing parent directories and keeping timestamps.

    An existing file at ``destination`` is replaced, even when it is read-only.

    Returns:
        int: Number of bytes at the destination after the copy

    Raises:
        BackupIOError: If the file cannot be copied
    """
    try:
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        try:
            shutil.copy2(source, destination)
        except PermissionError:
            if not os.path.lexists(destination):
                raise
            os.unlink(destination)
            shutil.copy2(source, destination)
        return os.path.getsize(destination)
    except OSError as e:
        raise BackupIOError(f"Failed to copy '{source}' to '{destination}': {e}") from e


def _can_change_owner() -> bool:
    return hasattr(os, 'geteuid') and hasattr(os, 'chown') and os.geteuid() == 0


def create_directory(path: str, mode: Optional[str] = None,
                     uid: Optional[int] = None, gid: Optional[int] = None) -> str:
    """
    Create a directory (and any missing parents) and apply captured metadata.

    The owner always keeps rwx on the created directory so that files can
    still be copied into it. Ownership is only applied when running as root.

    Raises:
        BackupIOError: If the directory cannot be created or updated
    """
    try:
        os.makedirs(path, exist_ok=True)
        if mode:
            os.chmod(path, int(mode, 8) | stat.S_IRWXU)
        if (uid is not None or gid is not None) and _can_change_owner():
            os.chown(path, -1 if uid is None else uid, -1 if gid is None else gid)
        return path
    except (OSError, ValueError) as e:
        raise BackupIOError(f"Failed to create directory '{path}': {e}") from e


def create_directory_tree(directories: Iterable[DirectoryEntry], target_root: str,
                          max_workers: int = DEFAULT_WORKERS) -> int:
    """
    Recreate directories under ``target_root`` in ascending depth order.

    Every directory of one depth is created concurrently, and the next depth
    only starts once the whole level has finished, so parents always exist
    before their children. Tombstoned entries are ignored.

    Returns:
        int: Number of directories created
    """
    live = sorted((d for d in directories if not d.deleted), key=lambda d: d.depth)
    created = 0
    for depth, level in groupby(live, key=lambda d: d.depth):
        level = list(level)
        run_batch(
            lambda d: create_directory(
                str(Path(target_root) / d.relative_path), d.mode, d.owner_uid, d.owner_gid
            ),
            level,
            max_workers,
        )
        logger.debug(f"Created {len(level)} directories at depth {depth} under '{target_root}'")
        created += len(level)
    return created


def make_unique_directory(parent: str, name: str) -> str:
    """
    Create a new, empty directory named ``name`` under ``parent``.

    If that name is already taken a numeric suffix is appended
    (``name-1``, ``name-2``, ...) until an unused one is found.

    Raises:
        BackupIOError: If the directory cannot be created
    """
    try:
        os.makedirs(parent, exist_ok=True)
        candidate = Path(parent) / name
        suffix = 0
        while True:
            try:
                os.mkdir(candidate)
                return str(candidate)
            except FileExistsError:
                suffix += 1
                candidate = Path(parent) / f"{name}-{suffix}"
    except OSError as e:
        raise BackupIOError(f"Could not create the backup directory '{Path(parent) / name}': {e}") from e

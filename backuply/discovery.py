import os
import stat
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Iterable, List, Tuple

from .exceptions import DiscoveryError
from .fsops import DEFAULT_WORKERS, run_batch
from .models import DirectoryEntry, FileEntry, to_relative_path

logger = logging.getLogger('backuply')

HASH_ALGORITHM = 'md5'
CHUNK_SIZE = 64 * 1024


@dataclass
class TreeListing:
    """Absolute paths of the directories and regular files found under ``root``."""

    root: str
    directories: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)


def _raise_walk_error(error: OSError) -> None:
    raise error


def discover_tree(root: str) -> TreeListing:
    """
    Walk ``root`` recursively and list its directories and regular files.

    Symbolic links are neither followed nor listed, and special files
    (sockets, FIFOs, devices) are skipped.

    Args:
        root (str): Directory to walk

    Returns:
        TreeListing: Sorted absolute paths of directories and files below ``root``

    Raises:
        DiscoveryError: If any part of the tree cannot be read. Nothing is
            returned in that case, the walk is all-or-nothing.
    """
    root_path = os.path.abspath(root)
    if not os.path.isdir(root_path):
        raise DiscoveryError(
            f"Error trying to generate backup tree from '{root}'. Reason: not an existing directory"
        )

    listing = TreeListing(root=root_path)
    try:
        for current, dirnames, filenames in os.walk(root_path, onerror=_raise_walk_error):
            for name in dirnames:
                path = os.path.join(current, name)
                if not os.path.islink(path):
                    listing.directories.append(path)
            for name in filenames:
                path = os.path.join(current, name)
                if stat.S_ISREG(os.lstat(path).st_mode):
                    listing.files.append(path)
    except OSError as e:
        raise DiscoveryError(f"Error trying to generate backup tree from '{root}'. Reason: {e}") from e

    listing.directories.sort()
    listing.files.sort()
    logger.info(
        f"Discovered {len(listing.directories)} directories and {len(listing.files)} files under '{root_path}'"
    )
    return listing


def fingerprint_file(file_path: str, chunk_size: int = CHUNK_SIZE) -> Tuple[int, str]:
    """
    Stream a file once, returning its size in bytes and its content digest.

    The file is read in fixed-size chunks, so memory use does not grow with
    the file size. The size is counted from the bytes actually read.

    Raises:
        DiscoveryError: If the file cannot be opened or a read fails
    """
    digest = hashlib.new(HASH_ALGORITHM)
    byte_length = 0
    try:
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(chunk_size), b''):
                byte_length += len(chunk)
                digest.update(chunk)
    except OSError as e:
        raise DiscoveryError(f"Failed to calculate hash of '{file_path}'. Reason: {e}") from e
    return byte_length, digest.hexdigest()


def describe_file(file_path: str, root: str) -> FileEntry:
    byte_length, content_hash = fingerprint_file(file_path)
    return FileEntry(
        full_path=file_path,
        relative_path=to_relative_path(file_path, root),
        byte_length=byte_length,
        content_hash=content_hash,
    )


def collect_file_entries(paths: Iterable[str], root: str, max_workers: int = DEFAULT_WORKERS) -> List[FileEntry]:
    """Fingerprint every file in parallel; the first failure aborts the batch."""
    return run_batch(lambda path: describe_file(path, root), paths, max_workers)


def directory_depth(path: str) -> int:
    """Number of path segments between the filesystem root and ``path``."""
    pure = PurePath(path)
    return len(pure.parts) - (1 if pure.anchor else 0)


def describe_directory(path: str, root: str) -> DirectoryEntry:
    """
    Capture permission bits, ownership and depth of a directory.

    Raises:
        DiscoveryError: If the directory cannot be stat'ed
    """
    try:
        info = os.lstat(path)
    except OSError as e:
        raise DiscoveryError(f"Failed to read metadata of directory '{path}'. Reason: {e}") from e
    return DirectoryEntry(
        path=path,
        relative_path=to_relative_path(path, root),
        depth=directory_depth(path),
        mode=f"0{stat.S_IMODE(info.st_mode):o}",
        owner_uid=getattr(info, 'st_uid', None),
        owner_gid=getattr(info, 'st_gid', None),
    )


def collect_directory_entries(paths: Iterable[str], root: str) -> List[DirectoryEntry]:
    return [describe_directory(path, root) for path in paths]

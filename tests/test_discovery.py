import os
import sys
import hashlib
import pytest
from pathlib import Path

from backuply.discovery import (
    collect_directory_entries,
    collect_file_entries,
    describe_directory,
    directory_depth,
    discover_tree,
    fingerprint_file,
)
from backuply.exceptions import DiscoveryError
from tests.conftest import TestBase


class TestDiscovery(TestBase):
    """Tree walking and content fingerprinting."""

    def test_discover_lists_directories_and_files(self):
        listing = discover_tree(str(self.source_dir))

        assert listing.root == os.path.abspath(self.source_dir)
        relative_dirs = {Path(d).relative_to(self.source_dir).as_posix() for d in listing.directories}
        relative_files = {Path(f).relative_to(self.source_dir).as_posix() for f in listing.files}

        assert relative_dirs == {"docs", "docs/deep", "empty"}
        assert relative_files == {
            "file_1.txt", "file_2.txt", "file_3.txt", "file_4.txt", "binary.bin",
            "docs/notes.txt", "docs/deep/readme.md",
        }
        assert listing.files == sorted(listing.files)
        assert all(os.path.isabs(p) for p in listing.files + listing.directories)

    @pytest.mark.skipif(not hasattr(os, "symlink") or sys.platform == "win32", reason="symlinks required")
    def test_symbolic_links_are_skipped(self):
        os.symlink(self.source_dir / "file_1.txt", self.source_dir / "link.txt")
        os.symlink(self.source_dir / "docs", self.source_dir / "docs_link")

        listing = discover_tree(str(self.source_dir))

        names = {Path(p).name for p in listing.files + listing.directories}
        assert "link.txt" not in names
        assert "docs_link" not in names
        # The linked directory is not followed either
        assert not any("docs_link" in p for p in listing.files)

    def test_missing_root_fails(self):
        with pytest.raises(DiscoveryError) as excinfo:
            discover_tree(str(self.working_dir / "does-not-exist"))
        assert "does-not-exist" in str(excinfo.value)

    def test_file_root_fails(self):
        with pytest.raises(DiscoveryError):
            discover_tree(str(self.source_dir / "file_1.txt"))

    @pytest.mark.skipif(
        not hasattr(os, "geteuid") or os.geteuid() == 0,
        reason="permission checks do not apply to root"
    )
    def test_unreadable_subdirectory_aborts_walk(self):
        locked = self.source_dir / "locked"
        os.makedirs(locked)
        (locked / "secret.txt").write_text("secret")
        os.chmod(locked, 0)
        try:
            with pytest.raises(DiscoveryError) as excinfo:
                discover_tree(str(self.source_dir))
            assert str(self.source_dir) in str(excinfo.value)
        finally:
            os.chmod(locked, 0o755)

    def test_fingerprint_matches_md5_and_size(self):
        path = self.source_dir / "binary.bin"
        content = path.read_bytes()

        byte_length, digest = fingerprint_file(str(path))

        assert byte_length == len(content) == 1024
        assert digest == hashlib.md5(content).hexdigest()

    def test_fingerprint_streams_in_chunks(self):
        path = self.working_dir / "chunked.txt"
        path.write_bytes(b"0123456789" * 10 + b"tail")

        byte_length, digest = fingerprint_file(str(path), chunk_size=7)

        assert byte_length == 104
        assert digest == hashlib.md5(path.read_bytes()).hexdigest()

    def test_fingerprint_empty_file(self):
        path = self.working_dir / "empty.txt"
        path.write_bytes(b"")
        assert fingerprint_file(str(path)) == (0, hashlib.md5(b"").hexdigest())

    def test_fingerprint_missing_file_fails(self):
        with pytest.raises(DiscoveryError) as excinfo:
            fingerprint_file(str(self.working_dir / "gone.txt"))
        assert "gone.txt" in str(excinfo.value)

    def test_collect_file_entries(self):
        listing = discover_tree(str(self.source_dir))
        entries = collect_file_entries(listing.files, listing.root, max_workers=3)

        assert [e.full_path for e in entries] == listing.files
        by_path = {e.relative_path: e for e in entries}
        assert by_path["docs/notes.txt"].byte_length == len("Some notes")
        assert by_path["docs/notes.txt"].content_hash == hashlib.md5(b"Some notes").hexdigest()
        assert not any(e.deleted for e in entries)

    def test_collect_file_entries_aborts_on_failure(self):
        paths = [str(self.source_dir / "file_1.txt"), str(self.source_dir / "vanished.txt")]
        with pytest.raises(DiscoveryError):
            collect_file_entries(paths, str(self.source_dir))

    def test_describe_directory(self):
        path = self.source_dir / "docs" / "deep"
        os.chmod(path, 0o750)

        entry = describe_directory(str(path), str(self.source_dir))

        assert entry.relative_path == "docs/deep"
        assert entry.depth == directory_depth(str(path))
        assert entry.depth == directory_depth(str(self.source_dir)) + 2
        assert not entry.deleted
        if sys.platform != "win32":
            assert entry.mode == "0750"
            assert entry.owner_uid == os.stat(path).st_uid

    def test_collect_directory_entries_missing_directory(self):
        with pytest.raises(DiscoveryError):
            collect_directory_entries([str(self.source_dir / "nope")], str(self.source_dir))

    def test_directory_depth(self):
        assert directory_depth("/") == 0
        assert directory_depth("/src") == 1
        assert directory_depth("/src/a") == 2

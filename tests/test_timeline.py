import os
import hashlib

from tests.conftest import TestBase, read_tree


class TestTimelineScenarios(TestBase):
    """
    Tests that simulate realistic backup scenarios with complex timelines.

    A full backup is taken, the source drifts over several stages, and a
    differential backup is taken against the full one after each stage.
    Every point in time must restore to exactly what the source held then.
    """

    def _create_file_with_content(self, path, content):
        """Helper to create a file with specific content."""
        os.makedirs(path.parent, exist_ok=True)
        with open(path, 'wb' if isinstance(content, bytes) else 'w') as f:
            f.write(content)

    def _verify_tree(self, directory, file_map):
        """Helper to verify a restored tree holds exactly the files of ``file_map``."""
        expected = {
            rel_path: content if isinstance(content, bytes) else content.encode()
            for rel_path, content in file_map.items()
        }
        assert read_tree(directory) == expected, f"Content mismatch in {directory}"

    def _create_fixed_file_structure(self, base_dir):
        """
        Create a fixed file structure for testing.

        Args:
            base_dir: The base directory to create files in

        Returns:
            A dictionary mapping relative POSIX paths to file contents
        """
        for name in os.listdir(base_dir):
            path = base_dir / name
            if path.is_dir():
                for root, dirs, files in os.walk(path, topdown=False):
                    for file in files:
                        os.remove(os.path.join(root, file))
                    for d in dirs:
                        os.rmdir(os.path.join(root, d))
                os.rmdir(path)
            else:
                os.remove(path)

        file_map = {
            "file_1.txt": "This is test file 1",
            "file_2.txt": "This is test file 2",
            "dir_1/file_3.txt": "This is test file 3 in dir_1",
            "dir_2/file_4.txt": "This is test file 4 in dir_2",
            "dir_1/subdir_1/file_5.txt": "This is test file 5 in subdir_1",
            "binary_1.bin": b"\x00\x01\x02\x03\x04",
            "dir_2/binary_2.bin": b"\x05\x06\x07\x08\x09",
            "dir_2/subdir_2/binary_3.bin": b"\x0A\x0B\x0C\x0D\x0E\x0F",
        }
        for rel_path, content in file_map.items():
            self._create_file_with_content(base_dir / rel_path, content)
        return file_map

    def _apply_stage(self, base_dir, file_map, writes, deletions):
        """
        Apply one stage of modifications and additions, then deletions.

        Returns:
            Updated file map with the stage applied
        """
        updated_map = file_map.copy()
        for rel_path, content in writes:
            self._create_file_with_content(base_dir / rel_path, content)
            updated_map[rel_path] = content
        for rel_path in deletions:
            os.unlink(base_dir / rel_path)
            del updated_map[rel_path]
        return updated_map

    def test_complex_timeline(self):
        """
        Test a timeline of one full backup and several differential backups.

        Each differential backup is taken against the same full backup, so
        later ones accumulate every change since the full one.
        """
        initial_files = self._create_fixed_file_structure(self.source_dir)
        full = self.full_backup()
        points = {full.id: initial_files}

        stage_1 = self._apply_stage(
            self.source_dir, initial_files,
            writes=[
                ("file_1.txt", "This is test file 1 - MODIFIED"),
                ("dir_1/file_3.txt", "This is test file 3 in dir_1 - MODIFIED"),
                ("new_file_1.txt", "This is a new file 1"),
                ("dir_1/new_file_2.txt", "This is a new file 2 in dir_1"),
            ],
            deletions=["dir_2/file_4.txt"],
        )
        points[self.diff_backup(full.id).id] = stage_1

        stage_2 = self._apply_stage(
            self.source_dir, stage_1,
            writes=[
                ("file_2.txt", "This is test file 2 - MODIFIED IN STAGE 2"),
                ("dir_1/new_file_2.txt", "This is a new file 2 in dir_1 - MODIFIED"),
                ("new_file_3.txt", "This is a new file 3 added in stage 2"),
                ("dir_2/new_file_4.bin", b"\x10\x11\x12\x13\x14"),
            ],
            deletions=["new_file_1.txt", "file_1.txt"],
        )
        second_diff = self.diff_backup(full.id)
        points[second_diff.id] = stage_2

        # The second diff still carries stage 1 changes relative to the full backup
        changed = {f.relative_path for f in second_diff.file_entries}
        assert "dir_1/file_3.txt" in changed
        assert "dir_2/file_4.txt" in changed
        assert "new_file_1.txt" not in changed

        for point_id, file_map in points.items():
            target = self.working_dir / f"restore_{point_id}"
            result = self.ops.restore(point_id, str(target))
            assert result.ok, result.error
            self._verify_tree(target, file_map)

    def test_archiving_diffs_keeps_full_restorable(self):
        initial_files = self._create_fixed_file_structure(self.source_dir)
        full = self.full_backup()
        self._apply_stage(self.source_dir, initial_files, [("file_1.txt", "changed")], [])
        diff = self.diff_backup(full.id)

        # The full backup is pinned while a diff references it
        assert not self.ops.archive_backup(full.id).ok

        assert self.ops.archive_backup(diff.id).ok
        assert self.ops.archive_backup(full.id).ok
        assert self.ops.list_backups().unwrap() == []
        assert {r.id for r in self.ops.list_backups(archived=True).unwrap()} == {full.id, diff.id}

    def test_incremental_changes(self):
        """
        Test repeated changes to the same files over time.

        Every differential backup only stores the files that differ from the
        full backup, and restores the exact versions of its point in time.
        """
        for name in os.listdir(self.source_dir):
            path = self.source_dir / name
            if path.is_file():
                os.remove(path)

        base_files = {}
        for i in range(5):
            filename = f"file_{i}.txt"
            content = f"Initial content for file {i}\n"
            self._create_file_with_content(self.source_dir / filename, content)
            base_files[filename] = content
        base_files.update({
            "docs/notes.txt": "Some notes",
            "docs/deep/readme.md": "# Deep readme",
        })

        full = self.full_backup()
        versions = [(full.id, base_files.copy())]
        current_files = base_files.copy()
        touched = set()

        modifications = [
            [0, 1, 2],
            [1, 3, 4],
            [0, 2, 4],
        ]
        for iteration, files_to_modify in enumerate(modifications):
            for file_idx in files_to_modify:
                filename = f"file_{file_idx}.txt"
                new_content = current_files[filename] + f"Change from iteration {iteration + 1}\n"
                self._create_file_with_content(self.source_dir / filename, new_content)
                current_files[filename] = new_content
                touched.add(filename)

            diff = self.diff_backup(full.id)
            assert {f.relative_path for f in diff.file_entries} == touched
            versions.append((diff.id, current_files.copy()))

        for i, (record_id, file_version) in enumerate(versions):
            target = self.working_dir / f"restore_incr_{i}"
            self.ops.restore(record_id, str(target)).unwrap()
            self._verify_tree(target, file_version)

    def test_large_files_and_restores(self):
        """Test handling of large files that span many hashing chunks."""
        file_map = read_tree(self.source_dir)

        for i in range(3):
            filename = f"medium_file_{i}.bin"
            content = bytes([i % 256 for _ in range(100 * 1024)])  # 100KB
            self._create_file_with_content(self.source_dir / filename, content)
            file_map[filename] = content

        large_content = bytes([i % 256 for i in range(1024 * 1024)])  # 1MB
        self._create_file_with_content(self.source_dir / "large_file.bin", large_content)
        file_map["large_file.bin"] = large_content

        record = self.full_backup()
        large_entry = next(f for f in record.file_entries if f.relative_path == "large_file.bin")
        assert large_entry.byte_length == len(large_content)
        assert large_entry.content_hash == hashlib.md5(large_content).hexdigest()

        self.ops.restore(record.id, str(self.restore_dir)).unwrap()

        self._verify_tree(self.restore_dir, file_map)

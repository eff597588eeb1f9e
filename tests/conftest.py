import os
import pytest
import tempfile
import uuid
import time
from pathlib import Path

from backuply.operations import BackupOperations


# ---- Individual fixtures for flexible test composition ----

@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def config_dir(temp_dir, monkeypatch):
    """Point the application configuration at a throwaway directory."""
    config_dir = temp_dir / "config"
    monkeypatch.setenv("BACKUPLY_CONFIG_DIR", str(config_dir))
    return config_dir


# ---- Base test class for inheritance-based testing ----

class TestBase:
    """Base class for all backuply tests providing isolation and cleanup."""

    def setUp(self):
        """
        Set up the test environment.

        This method:
        1. Creates a temporary directory
        2. Sets up source and backup paths (restore_dir is left uncreated)
        3. Creates a unique record store path
        4. Creates test files
        5. Opens the operations facade on that store
        """
        self.temp_dir = tempfile.TemporaryDirectory()
        self.working_dir = Path(self.temp_dir.name)

        self.source_dir = self.working_dir / "source"
        self.backup_dir = self.working_dir / "backups"
        self.restore_dir = self.working_dir / "restore"
        os.makedirs(self.source_dir)

        # Create a unique record store path for each test
        self.db_path = self.working_dir / f"test_{uuid.uuid4().hex[:8]}.json"

        self._create_test_files()

        self.ops = BackupOperations(str(self.db_path), max_workers=4)

    def tearDown(self):
        """Close the operations facade and remove everything the test created."""
        self._safe_cleanup()

    @pytest.fixture(autouse=True)
    def _setup_teardown_fixture(self):
        """
        Pytest fixture to automatically call setUp and tearDown.

        This fixture is automatically used by all test methods in classes
        that inherit from TestBase.
        """
        self.setUp()
        yield
        self.tearDown()

    def _create_test_files(self):
        """Create a small tree of text, binary, nested and empty entries in the source directory."""
        for i in range(1, 5):
            with open(self.source_dir / f"file_{i}.txt", "w") as f:
                f.write(f"Content of file {i}")

        with open(self.source_dir / "binary.bin", "wb") as f:
            f.write(os.urandom(1024))  # 1KB of random data

        os.makedirs(self.source_dir / "docs" / "deep")
        (self.source_dir / "docs" / "notes.txt").write_text("Some notes")
        (self.source_dir / "docs" / "deep" / "readme.md").write_text("# Deep readme")
        os.makedirs(self.source_dir / "empty")

    def _safe_cleanup(self):
        try:
            self.ops.close()
        except Exception:
            pass

        # Wait a moment to ensure all file handles are released
        time.sleep(0.05)

        try:
            self.temp_dir.cleanup()
        except (PermissionError, OSError) as e:
            print(f"Warning: Could not clean up temporary directory: {e}")

    def full_backup(self, name="docs", use_date=True):
        """Run a full backup of the source directory and return the record."""
        result = self.ops.full_backup(str(self.source_dir), name, str(self.backup_dir), use_date)
        assert result.ok, result.error
        return result.value

    def diff_backup(self, full_id, name="docs", use_date=True):
        """Run a differential backup of the source directory and return the record."""
        result = self.ops.diff_backup(full_id, str(self.source_dir), name, str(self.backup_dir), use_date)
        assert result.ok, result.error
        return result.value


# ---- Helper functions for both approaches ----

def read_tree(directory):
    """Map every regular file under ``directory`` (relative POSIX path) to its bytes."""
    directory = Path(directory)
    contents = {}
    for root, _, files in os.walk(directory):
        for file in files:
            file_path = Path(root) / file
            contents[file_path.relative_to(directory).as_posix()] = file_path.read_bytes()
    return contents


def list_directories(directory):
    """Relative POSIX paths of every directory under ``directory``."""
    directory = Path(directory)
    found = set()
    for root, dirs, _ in os.walk(directory):
        for d in dirs:
            found.add((Path(root) / d).relative_to(directory).as_posix())
    return found

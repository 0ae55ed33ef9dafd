"""Tests for the lock-guarded JSON store."""

import json
import os
import tempfile
import time
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from devfactory_oracle.exceptions import StoreLockError
from devfactory_oracle.storage import JsonFileStore, StoreConfig

FAST = StoreConfig(lock_retries=2, min_retry_delay=0.01, max_retry_delay=0.02, stale_after_seconds=10.0)


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class TestReadWrite:
    """Tests for reading and writing documents."""

    def test_roundtrip(self, temp_dir):
        store = JsonFileStore(temp_dir / "store.json")
        store.write([{"id": "int_1", "success": True}])

        assert store.read() == [{"id": "int_1", "success": True}]

    def test_creates_parent_directories(self, temp_dir):
        store = JsonFileStore(temp_dir / "nested" / "deeper" / "store.json")
        store.write({"ok": 1})
        assert store.path.exists()

    def test_missing_file_reads_none(self, temp_dir):
        assert JsonFileStore(temp_dir / "absent.json").read() is None

    def test_empty_file_reads_none(self, temp_dir):
        path = temp_dir / "empty.json"
        path.write_text("   \n")
        assert JsonFileStore(path).read() is None

    def test_invalid_json_raises(self, temp_dir):
        path = temp_dir / "bad.json"
        path.write_text("{not json")
        with pytest.raises(json.JSONDecodeError):
            JsonFileStore(path).read()

    def test_write_replaces_document(self, temp_dir):
        store = JsonFileStore(temp_dir / "store.json")
        store.write([1, 2, 3])
        store.write([4])
        assert store.read() == [4]

    def test_no_temp_files_left_behind(self, temp_dir):
        store = JsonFileStore(temp_dir / "store.json")
        store.write({"a": 1})
        assert sorted(p.name for p in temp_dir.iterdir()) == ["store.json"]

    def test_lock_released_after_write(self, temp_dir):
        store = JsonFileStore(temp_dir / "store.json")
        store.write({"a": 1})
        assert not store.lock_path.exists()


class TestLocking:
    """Tests for lock acquisition and contention."""

    def test_lock_path(self, temp_dir):
        store = JsonFileStore(temp_dir / "interventions.json")
        assert store.lock_path == temp_dir / "interventions.json.lock"

    def test_held_lock_raises_after_retries(self, temp_dir):
        store = JsonFileStore(temp_dir / "store.json", FAST)
        store.lock_path.write_text("")

        with pytest.raises(StoreLockError):
            with store.lock():
                pass

    def test_write_falls_back_when_locked(self, temp_dir):
        """A held lock delays the write but does not lose it."""
        store = JsonFileStore(temp_dir / "store.json", FAST)
        store.lock_path.write_text("")

        store.write({"written": True})

        assert json.loads(store.path.read_text()) == {"written": True}
        assert store.lock_path.exists()

    def test_read_falls_back_when_locked(self, temp_dir):
        store = JsonFileStore(temp_dir / "store.json", FAST)
        store.path.write_text('{"a": 1}')
        store.lock_path.write_text("")

        assert store.read() == {"a": 1}

    def test_stale_lock_is_broken(self, temp_dir):
        store = JsonFileStore(temp_dir / "store.json", FAST)
        store.lock_path.write_text("")
        old = time.time() - 60
        os.utime(store.lock_path, (old, old))

        with store.lock():
            assert store.lock_path.exists()
        assert not store.lock_path.exists()

    def test_retaken_stale_lock_is_kept(self, temp_dir):
        """A lock refreshed between the age check and the delete survives."""
        store = JsonFileStore(temp_dir / "store.json", FAST)
        store.lock_path.write_text("")
        old = time.time() - 60
        stats = [SimpleNamespace(st_mtime=old), SimpleNamespace(st_mtime=time.time())]

        with patch.object(Path, "stat", side_effect=stats):
            store._break_stale_lock()

        assert store.lock_path.exists()

    def test_lock_is_exclusive(self, temp_dir):
        first = JsonFileStore(temp_dir / "store.json", FAST)
        second = JsonFileStore(temp_dir / "store.json", FAST)

        with first.lock():
            with pytest.raises(StoreLockError):
                with second.lock():
                    pass

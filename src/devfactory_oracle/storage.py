"""
Lock-guarded JSON file storage.

Several cooperating processes may read and write the same store. Writers
take a soft lock file next to the store, retry with bounded backoff, and
break lock files left behind by crashed processes. Writes are atomic
(temp file + rename) so readers never see a partial document.

If the lock cannot be acquired within the retry budget the write still
happens, without the lock. Losing a write is worse than racing another
writer, but this does leave a window where a concurrent writer's update
can be overwritten under heavy contention.

Stale-lock breaking has a second, narrower window. The lock file's mtime is
read again just before deletion and the lock is left alone if it changed,
but a process that re-takes the lock between that re-check and the unlink
still loses it, and two writers may then hold the lock at once.
"""

import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from filelock import SoftFileLock, Timeout

from .exceptions import StoreLockError

logger = logging.getLogger(__name__)


@dataclass
class StoreConfig:
    """Locking behaviour for a JSON file store."""

    lock_retries: int = 5
    min_retry_delay: float = 0.1  # seconds
    max_retry_delay: float = 0.5  # seconds
    stale_after_seconds: float = 10.0


class JsonFileStore:
    """A JSON document on disk shared between processes.

    Example:
        store = JsonFileStore(".devfactory/oracle/interventions.json")
        store.write([{"id": "int_1"}])
        records = store.read() or []
    """

    def __init__(self, path: Union[str, Path], config: Optional[StoreConfig] = None):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.config = config or StoreConfig()

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the store lock for the duration of the block.

        Raises:
            StoreLockError: If the lock cannot be acquired within the retry budget.
        """
        file_lock = SoftFileLock(str(self.lock_path))
        self._acquire(file_lock)
        try:
            yield
        finally:
            file_lock.release()

    def read(self) -> Optional[Any]:
        """Read and parse the document.

        Returns:
            The parsed JSON, or None if the file is missing or empty.

        Raises:
            json.JSONDecodeError: If the file is not valid JSON.
        """
        if not self.path.exists():
            return None

        try:
            with self.lock():
                text = self.path.read_text(encoding="utf-8")
        except StoreLockError:
            logger.warning(f"Could not acquire lock on {self.path} for reading, reading without lock")
            text = self.path.read_text(encoding="utf-8")

        if not text.strip():
            return None
        return json.loads(text)

    def write(self, data: Any) -> None:
        """Serialize and atomically replace the document."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(data, indent=2)

        try:
            with self.lock():
                self._write_atomic(payload)
        except StoreLockError:
            logger.warning(f"Could not acquire lock on {self.path}, writing without lock")
            self._write_atomic(payload)

    def _acquire(self, file_lock: SoftFileLock) -> None:
        delay = self.config.min_retry_delay
        for attempt in range(self.config.lock_retries + 1):
            self._break_stale_lock()
            try:
                file_lock.acquire(timeout=0)
                return
            except Timeout:
                if attempt == self.config.lock_retries:
                    break
                time.sleep(delay)
                delay = min(delay * 2, self.config.max_retry_delay)

        raise StoreLockError(
            f"Could not acquire lock on {self.path} after {self.config.lock_retries} retries"
        )

    def _break_stale_lock(self) -> None:
        try:
            mtime = self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return

        age = time.time() - mtime
        if age <= self.config.stale_after_seconds:
            return

        try:
            # A different mtime means someone re-took the lock since we looked
            if self.lock_path.stat().st_mtime != mtime:
                return
            logger.warning(f"Removing stale lock {self.lock_path} ({age:.1f}s old)")
            self.lock_path.unlink()
        except FileNotFoundError:
            pass  # Another process broke it first

    def _write_atomic(self, payload: str) -> None:
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

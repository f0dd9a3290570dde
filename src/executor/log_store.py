"""
Job Log Store for PiFleet

Keeps job output on local disk, bounded per job and over time:

- each job writes ``<root>/<job_id>/job.log``
- once the file passes ``max_bytes`` it rotates to ``job.log.1`` ...
  ``job.log.N`` and the oldest backup is dropped
- ``prune()`` deletes job directories untouched for longer than ``max_age``

Chunks are appended as they arrive; a job's output is never held in memory.
"""

import logging
import os
import re
import shutil
import threading
import time
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

LOG_NAME = "job.log"
_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


class JobLogWriter:
    """Append-only, size-rotated writer for one job's log."""

    def __init__(self, path: Path, max_bytes: int, backup_count: int):
        self.path = path
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.bytes_written = 0
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._stream = open(self.path, "ab")
        self._size = self._stream.tell()

    def write(self, chunk: bytes) -> None:
        with self._lock:
            if self._stream is None:
                raise ValueError(f"Log writer for {self.path} is closed")
            if self.max_bytes and self._size + len(chunk) > self.max_bytes and self._size > 0:
                self._rotate()
            self._stream.write(chunk)
            self._stream.flush()
            self._size += len(chunk)
            self.bytes_written += len(chunk)

    def _rotate(self) -> None:
        self._stream.close()
        if self.backup_count > 0:
            for index in range(self.backup_count - 1, 0, -1):
                source = self.path.with_name(f"{self.path.name}.{index}")
                if source.exists():
                    os.replace(source, self.path.with_name(f"{self.path.name}.{index + 1}"))
            os.replace(self.path, self.path.with_name(f"{self.path.name}.1"))
        self._stream = open(self.path, "wb")
        self._size = 0

    def close(self) -> None:
        with self._lock:
            if self._stream is not None:
                self._stream.close()
                self._stream = None

    def __enter__(self) -> "JobLogWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class LogStore:
    """Bounded, rotated on-disk store of job logs."""

    def __init__(
        self,
        root: Union[str, Path],
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 3,
        max_age: float = 7 * 24 * 3600,
    ):
        """
        Args:
            root: Directory holding one subdirectory per job
            max_bytes: Size of job.log before it rotates (0 disables rotation)
            backup_count: Rotated files kept per job
            max_age: Seconds after which a job's logs are pruned
        """
        self.root = Path(root)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.max_age = max_age
        self.root.mkdir(parents=True, exist_ok=True)

    def job_dir(self, job_id: str) -> Path:
        return self.root / _SAFE_ID.sub("_", job_id)

    def log_ref(self, job_id: str) -> str:
        """Reference to a job's current log file."""
        return str(self.job_dir(job_id) / LOG_NAME)

    def open(self, job_id: str) -> JobLogWriter:
        """Open a writer for a job's log."""
        return JobLogWriter(
            self.job_dir(job_id) / LOG_NAME, self.max_bytes, self.backup_count
        )

    def files(self, job_id: str) -> List[Path]:
        """Log files for a job, oldest first."""
        directory = self.job_dir(job_id)
        if not directory.exists():
            return []
        backups = sorted(
            (p for p in directory.glob(f"{LOG_NAME}.*") if p.suffix[1:].isdigit()),
            key=lambda p: int(p.suffix[1:]),
            reverse=True,
        )
        current = directory / LOG_NAME
        return backups + ([current] if current.exists() else [])

    def read(self, job_id: str, max_bytes: Optional[int] = None) -> bytes:
        """
        Read a job's retained output.

        Args:
            job_id: Job whose log to read
            max_bytes: Only return the last max_bytes bytes
        """
        data = b"".join(path.read_bytes() for path in self.files(job_id))
        if max_bytes is not None:
            data = data[-max_bytes:]
        return data

    def prune(self, now: Optional[float] = None) -> int:
        """
        Delete job logs older than max_age.

        Returns:
            Number of job directories removed
        """
        now = now if now is not None else time.time()
        removed = 0
        for directory in self.root.iterdir():
            if not directory.is_dir():
                continue
            try:
                newest = max(
                    (p.stat().st_mtime for p in directory.iterdir()),
                    default=directory.stat().st_mtime,
                )
            except OSError as e:
                logger.warning(f"Could not stat {directory}: {e}")
                continue
            if now - newest > self.max_age:
                shutil.rmtree(directory, ignore_errors=True)
                removed += 1
        if removed:
            logger.info(f"Pruned logs of {removed} jobs")
        return removed

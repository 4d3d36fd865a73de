"""Durable job store backed by SQLite.

This module provides the at-least-once job store used by the durable queue.
Jobs move from ``waiting`` to ``active`` when the single worker picks them up,
and end as ``completed`` or ``failed``. Active jobs survive a crash and are
found again at startup, which is what the recovery procedure relies on.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from loguru import logger

from ..core.utils import to_json


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StoredJob:
    """A job as persisted by the store."""

    id: int
    data: Dict[str, Any]
    status: JobStatus = JobStatus.WAITING
    result: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class StoreConfig:
    """Configuration for the SQLite job store."""

    db_path: Path = Path("relay_jobs.db")
    queue_key: str = "relay:relayEventsQueue"  # "<prefix>:<queue name>"
    timeout_seconds: float = 5.0  # How long to wait on a locked database
    enable_wal_mode: bool = True  # Use SQLite WAL journaling for crash safety
    keep_completed: int = 1000  # Completed jobs retained for inspection

    def __post_init__(self):
        self.db_path = Path(self.db_path)


class JobStore(ABC):
    """Contract of the external at-least-once job store."""

    @abstractmethod
    def add(self, data: Dict[str, Any], lifo: bool = False) -> StoredJob:
        """Persist a new waiting job, at the front of the queue when ``lifo``."""

    @abstractmethod
    def next_job(self) -> Optional[StoredJob]:
        """Atomically move the first waiting job to active and return it."""

    @abstractmethod
    def get_active(self) -> List[StoredJob]:
        """Return the jobs currently marked active."""

    @abstractmethod
    def remove(self, job_id: int) -> bool:
        """Delete a job regardless of its status."""

    @abstractmethod
    def complete(self, job_id: int, result: Optional[str] = None) -> bool:
        """Mark an active job completed."""

    @abstractmethod
    def fail(self, job_id: int, reason: str) -> bool:
        """Mark an active job failed (dead-lettered)."""

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        """Number of jobs per status."""

    def close(self) -> None:
        pass


class SQLiteJobStore(JobStore):
    """SQLite implementation of the job store."""

    def __init__(self, config: StoreConfig = StoreConfig()):
        """Initialize the store and its schema.

        Args:
            config: Store configuration

        Raises:
            sqlite3.Error: If the database cannot be opened or initialized
        """
        self.config = config
        self._lock = threading.RLock()

        # Create database directory if needed
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.config.db_path, timeout=self.config.timeout_seconds)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Initialize the SQLite database with the required schema."""
        with self._connect() as conn:
            if self.config.enable_wal_mode:
                conn.execute("PRAGMA journal_mode=WAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'waiting',
                    data TEXT NOT NULL,
                    result TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    finished_at TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_queue_status_position
                ON jobs(queue, status, position)
            """)

        logger.info(f"Initialized job store at {self.config.db_path} for queue {self.config.queue_key}")

    def add(self, data: Dict[str, Any], lifo: bool = False) -> StoredJob:
        with self._lock:
            with self._connect() as conn:
                if lifo:
                    row = conn.execute(
                        "SELECT COALESCE(MIN(position), 0) - 1 FROM jobs WHERE queue = ? AND status = ?",
                        (self.config.queue_key, JobStatus.WAITING.value),
                    ).fetchone()
                else:
                    row = conn.execute(
                        "SELECT COALESCE(MAX(position), 0) + 1 FROM jobs WHERE queue = ? AND status = ?",
                        (self.config.queue_key, JobStatus.WAITING.value),
                    ).fetchone()
                position = row[0]

                cursor = conn.execute(
                    "INSERT INTO jobs (queue, position, status, data) VALUES (?, ?, ?, ?)",
                    (self.config.queue_key, position, JobStatus.WAITING.value, to_json(data)),
                )
                job_id = cursor.lastrowid

        logger.debug(f"Added job {job_id} to {self.config.queue_key} ({'lifo' if lifo else 'fifo'})")
        return StoredJob(id=job_id, data=data)

    def next_job(self) -> Optional[StoredJob]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, data, created_at FROM jobs
                    WHERE queue = ? AND status = ?
                    ORDER BY position, id
                    LIMIT 1
                """,
                    (self.config.queue_key, JobStatus.WAITING.value),
                ).fetchone()
                if row is None:
                    return None

                conn.execute("UPDATE jobs SET status = ? WHERE id = ?", (JobStatus.ACTIVE.value, row["id"]))

        return self._to_job(row, JobStatus.ACTIVE)

    def get_active(self) -> List[StoredJob]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, data, created_at FROM jobs WHERE queue = ? AND status = ? ORDER BY position, id",
                (self.config.queue_key, JobStatus.ACTIVE.value),
            ).fetchall()

        return [self._to_job(row, JobStatus.ACTIVE) for row in rows]

    def remove(self, job_id: int) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
                return cursor.rowcount > 0

    def complete(self, job_id: int, result: Optional[str] = None) -> bool:
        updated = self._finish(job_id, JobStatus.COMPLETED, result)
        self._trim_completed()
        return updated

    def fail(self, job_id: int, reason: str) -> bool:
        return self._finish(job_id, JobStatus.FAILED, reason)

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._connect() as conn:
            for status, count in conn.execute("SELECT status, COUNT(*) FROM jobs WHERE queue = ? GROUP BY status", (self.config.queue_key,)):
                counts[status] = count
        return counts

    def get_failed(self, limit: int = 100) -> List[StoredJob]:
        """Return dead-lettered jobs, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, data, created_at, result FROM jobs WHERE queue = ? AND status = ? ORDER BY id LIMIT ?",
                (self.config.queue_key, JobStatus.FAILED.value, limit),
            ).fetchall()

        return [self._to_job(row, JobStatus.FAILED) for row in rows]

    def close(self) -> None:
        """Checkpoint the WAL so all data is in the main database file."""
        try:
            with self._connect() as conn:
                if self.config.enable_wal_mode:
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.info(f"Closed job store at {self.config.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Error closing job store: {e}")

    def _finish(self, job_id: int, status: JobStatus, result: Optional[str]) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE jobs SET status = ?, result = ?, finished_at = CURRENT_TIMESTAMP WHERE id = ? AND status = ?",
                    (status.value, result, job_id, JobStatus.ACTIVE.value),
                )
                if cursor.rowcount == 0:
                    logger.warning(f"Job {job_id} is not active, cannot mark it {status.value}")
                    return False
                return True

    def _trim_completed(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    DELETE FROM jobs WHERE queue = ? AND status = ? AND id NOT IN (
                        SELECT id FROM jobs WHERE queue = ? AND status = ? ORDER BY id DESC LIMIT ?
                    )
                """,
                    (self.config.queue_key, JobStatus.COMPLETED.value, self.config.queue_key, JobStatus.COMPLETED.value, self.config.keep_completed),
                )

    @staticmethod
    def _to_job(row: sqlite3.Row, status: JobStatus) -> StoredJob:
        keys = row.keys()
        return StoredJob(
            id=row["id"],
            data=json.loads(row["data"]),
            status=status,
            result=row["result"] if "result" in keys else None,
            created_at=row["created_at"],
        )

"""
SQLite persistence for job status records.

This module provides the durable Job Status Store and the connection helper
shared by every SQLite-backed component (queue, credentials, quota counters,
idempotency tokens). All of them can live in the same database file.

Every write runs inside ``BEGIN IMMEDIATE`` so read-modify-write sequences are
atomic across threads and processes.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import BackingStoreUnavailable, IllegalTransition, JobNotFound
from .models import JobEvent, JobStage, JobStatusResponse, JobSummary
from .stages import can_transition
from .utils import utcnow

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/papyrus.db")


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


@contextmanager
def open_connection(db_path: Path, store: str = "database", immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """
    Open a connection and run the body inside one transaction.

    Args:
        db_path: SQLite database file
        store: Name reported in BackingStoreUnavailable
        immediate: Take the write lock up front (``BEGIN IMMEDIATE``)

    Raises:
        BackingStoreUnavailable: The database cannot be opened, is locked past
            the busy timeout, or the disk is unusable
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), timeout=30.0, isolation_level=None)
    except (OSError, sqlite3.Error) as exc:
        raise BackingStoreUnavailable(store, str(exc)) from exc

    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.OperationalError as exc:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise BackingStoreUnavailable(store, str(exc)) from exc
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


@dataclass
class JobRecord:
    """
    One generation request through its lifecycle.

    ``metadata`` holds the stage outputs merged by every transition
    (artifact_ref, signed_ref, result_url, error, ...).
    """

    id: str
    stage: JobStage
    payload: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    owner: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def artifact_ref(self) -> Optional[str]:
        return self.metadata.get("artifact_ref")

    @property
    def result_url(self) -> Optional[str]:
        return self.metadata.get("result_url") if self.stage is JobStage.COMPLETED else None

    @property
    def error(self) -> Optional[str]:
        return self.metadata.get("error") if self.stage is JobStage.FAILED else None

    def to_status(self) -> JobStatusResponse:
        return JobStatusResponse(
            job_id=self.id,
            status=self.stage,
            created_at=self.created_at,
            updated_at=self.updated_at,
            **self.metadata,
        )

    def to_summary(self) -> JobSummary:
        return JobSummary(
            job_id=self.id,
            status=self.stage,
            document_type=self.payload.get("type"),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class JobStatusStore:
    """
    SQLite store for job records.

    ``transition`` is the only mutator after ``create``. It never stores a
    backward move or anything after a terminal stage; those raise
    IllegalTransition.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self, immediate: bool = False):
        return open_connection(self.db_path, store="status", immediate=immediate)

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._connect(immediate=True) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    stage TEXT NOT NULL,
                    owner TEXT,
                    payload TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    stage TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_owner_created ON jobs(owner, created_at DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_stage_updated ON jobs(stage, updated_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_events(job_id, id)")

    def create(self, job_id: str, payload: Dict[str, Any], owner: Optional[str] = None) -> JobRecord:
        """
        Register a new job in the ``queued`` stage.

        Raises:
            sqlite3.IntegrityError: A job with this id already exists
        """
        now = utcnow()
        with self._connect(immediate=True) as conn:
            conn.execute(
                """
                INSERT INTO jobs (id, stage, owner, payload, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    JobStage.QUEUED.value,
                    owner,
                    json.dumps(payload),
                    json.dumps({}),
                    _serialize_datetime(now),
                    _serialize_datetime(now),
                ),
            )
            self._append_event(conn, job_id, JobStage.QUEUED, now)

        return JobRecord(id=job_id, stage=JobStage.QUEUED, payload=payload, created_at=now, updated_at=now, owner=owner)

    def transition(
        self,
        job_id: str,
        to_stage: JobStage,
        metadata: Optional[Dict[str, Any]] = None,
        from_stage: Optional[JobStage] = None,
    ) -> JobRecord:
        """
        Move a job to ``to_stage`` and merge ``metadata`` into its stage outputs.

        Args:
            job_id: The job to update
            to_stage: Target stage
            metadata: Stage-specific fields; unrelated fields are preserved
            from_stage: When given, the job must currently be in this stage

        Raises:
            JobNotFound: Unknown or evicted job
            IllegalTransition: Terminal job, backward/skipping move, or
                ``from_stage`` mismatch
        """
        to_stage = JobStage(to_stage)
        now = utcnow()
        with self._connect(immediate=True) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if not row:
                raise JobNotFound(job_id)

            current = JobStage(row["stage"])
            if from_stage is not None and current is not JobStage(from_stage):
                raise IllegalTransition(job_id, current.value, to_stage.value)
            if not can_transition(current, to_stage):
                raise IllegalTransition(job_id, current.value, to_stage.value)

            merged = json.loads(row["metadata"] or "{}")
            merged.update(metadata or {})
            if to_stage is JobStage.FAILED and not merged.get("error"):
                merged["error"] = "Unknown error"

            conn.execute(
                "UPDATE jobs SET stage = ?, metadata = ?, updated_at = ? WHERE id = ?",
                (to_stage.value, json.dumps(merged), _serialize_datetime(now), job_id),
            )
            if current is not to_stage:
                self._append_event(conn, job_id, to_stage, now)

            record = self._row_to_record(row)
        record.stage = to_stage
        record.metadata = merged
        record.updated_at = now
        return record

    def get(self, job_id: str) -> Optional[JobRecord]:
        """
        Retrieve a job by ID.

        Returns:
            The record, or None if the job never existed or was purged
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_record(row) if row else None

    def history(self, job_id: str) -> List[JobEvent]:
        """Stage transitions of a job in the order they were stored."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT stage, timestamp FROM job_events WHERE job_id = ? ORDER BY id", (job_id,)
            ).fetchall()
        return [JobEvent(timestamp=_deserialize_datetime(r["timestamp"]), stage=JobStage(r["stage"])) for r in rows]

    def list_jobs(self, owner: Optional[str] = None, limit: int = 50) -> List[JobRecord]:
        """List jobs ordered by creation time (newest first), optionally for one owner."""
        with self._connect() as conn:
            if owner is None:
                rows = conn.execute("SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE owner = ? ORDER BY created_at DESC LIMIT ?", (owner, limit)
                ).fetchall()
            return [self._row_to_record(row) for row in rows]

    def purge_expired(self, retention: timedelta) -> int:
        """
        Delete terminal jobs last updated before ``now - retention``.

        Returns:
            Number of jobs deleted
        """
        cutoff = _serialize_datetime(utcnow() - retention)
        terminal = (JobStage.COMPLETED.value, JobStage.FAILED.value)
        with self._connect(immediate=True) as conn:
            conn.execute(
                """
                DELETE FROM job_events WHERE job_id IN (
                    SELECT id FROM jobs WHERE stage IN (?, ?) AND updated_at < ?
                )
                """,
                (*terminal, cutoff),
            )
            cursor = conn.execute("DELETE FROM jobs WHERE stage IN (?, ?) AND updated_at < ?", (*terminal, cutoff))
            deleted = cursor.rowcount
        if deleted:
            logger.info(f"Purged {deleted} expired jobs")
        return deleted

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def _append_event(self, conn: sqlite3.Connection, job_id: str, stage: JobStage, timestamp: datetime) -> None:
        conn.execute(
            "INSERT INTO job_events (job_id, stage, timestamp) VALUES (?, ?, ?)",
            (job_id, stage.value, _serialize_datetime(timestamp)),
        )

    def _row_to_record(self, row: sqlite3.Row) -> JobRecord:
        """Convert a database row to a job record."""
        return JobRecord(
            id=row["id"],
            stage=JobStage(row["stage"]),
            owner=row["owner"],
            payload=json.loads(row["payload"] or "{}"),
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
        )

"""
Durable pipeline queues with at-least-once delivery.

Messages live in a SQLite table shared by all worker processes. A dequeued
message is leased for ``visibility_timeout`` seconds; if the worker neither
acknowledges nor reschedules it before the lease runs out, another worker
receives it again with ``attempts`` incremented.

Retry behaviour is not baked into the queue: ``RetryPolicy`` describes it and
``RetryingConsumer`` applies it to any handler.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from .database import DEFAULT_DB_PATH, open_connection
from .errors import PermanentStageError

logger = logging.getLogger(__name__)

READY = "ready"
LEASED = "leased"
DONE = "done"
DEAD = "dead"


@dataclass
class QueueMessage:
    id: int
    queue: str
    body: Dict[str, Any]
    attempts: int
    enqueued_at: float
    lease_token: str
    last_error: Optional[str] = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times a message is delivered and how long to wait in between.

    Delay before delivery ``n + 1`` is
    ``min(backoff_max, backoff_initial * backoff_factor ** (n - 1))``.
    """

    max_attempts: int = 3
    backoff_initial: float = 2.0
    backoff_factor: float = 2.0
    backoff_max: float = 60.0

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def delay_for(self, attempts: int) -> float:
        exponent = max(attempts - 1, 0)
        return min(self.backoff_max, self.backoff_initial * (self.backoff_factor ** exponent))

    @classmethod
    def from_config(cls, retry_config: Any) -> "RetryPolicy":
        return cls(
            max_attempts=int(retry_config.max_attempts),
            backoff_initial=float(retry_config.backoff_initial),
            backoff_factor=float(retry_config.backoff_factor),
            backoff_max=float(retry_config.backoff_max),
        )


class PipelineQueue:
    """SQLite-backed set of named queues."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self, immediate: bool = False):
        return open_connection(self.db_path, store="queue", immediate=immediate)

    def _init_db(self) -> None:
        with self._connect(immediate=True) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS queue_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue TEXT NOT NULL,
                    dedupe_key TEXT,
                    body TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    available_at REAL NOT NULL,
                    leased_until REAL,
                    lease_token TEXT,
                    last_error TEXT,
                    enqueued_at REAL NOT NULL,
                    finished_at REAL,
                    UNIQUE (queue, dedupe_key)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_queue_ready ON queue_messages(queue, status, available_at)"
            )

    def enqueue(self, queue: str, body: Dict[str, Any], dedupe_key: Optional[str] = None, delay: float = 0.0) -> Optional[int]:
        """
        Add a message to ``queue``.

        A message whose ``dedupe_key`` already exists in the same queue is
        not added again, whatever the state of the existing one.

        Returns:
            The new message id, or None when deduplicated
        """
        now = time.time()
        with self._connect(immediate=True) as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO queue_messages
                    (queue, dedupe_key, body, status, attempts, available_at, enqueued_at)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (queue, dedupe_key, json.dumps(body), READY, now + delay, now),
            )
            if cursor.rowcount == 0:
                logger.debug(f"Message {dedupe_key} already present in {queue}")
                return None
            return cursor.lastrowid

    def dequeue(self, queue: str, visibility_timeout: float) -> Optional[QueueMessage]:
        """
        Lease the oldest deliverable message of ``queue``.

        Deliverable means ready and due, or leased with an expired lease
        (the previous consumer stalled or crashed).
        """
        now = time.time()
        token = uuid4().hex
        with self._connect(immediate=True) as conn:
            row = conn.execute(
                """
                SELECT * FROM queue_messages
                WHERE queue = ?
                  AND ((status = ? AND available_at <= ?) OR (status = ? AND leased_until <= ?))
                ORDER BY available_at, id
                LIMIT 1
                """,
                (queue, READY, now, LEASED, now),
            ).fetchone()
            if not row:
                return None

            if row["status"] == LEASED:
                logger.warning(f"Redelivering message {row['id']} on {queue}: lease expired")

            attempts = row["attempts"] + 1
            conn.execute(
                """
                UPDATE queue_messages
                SET status = ?, attempts = ?, leased_until = ?, lease_token = ?
                WHERE id = ?
                """,
                (LEASED, attempts, now + visibility_timeout, token, row["id"]),
            )

        return QueueMessage(
            id=row["id"],
            queue=queue,
            body=json.loads(row["body"]),
            attempts=attempts,
            enqueued_at=row["enqueued_at"],
            lease_token=token,
            last_error=row["last_error"],
        )

    def ack(self, message: QueueMessage) -> bool:
        return self._finish(message, DONE, None)

    def dead_letter(self, message: QueueMessage, error: str) -> bool:
        logger.error(f"Dead-lettering message {message.id} on {message.queue}: {error}")
        return self._finish(message, DEAD, error)

    def retry(self, message: QueueMessage, delay: float, error: str) -> bool:
        """Release the lease and make the message deliverable again after ``delay`` seconds."""
        with self._connect(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE queue_messages
                SET status = ?, available_at = ?, leased_until = NULL, lease_token = NULL, last_error = ?
                WHERE id = ? AND lease_token = ?
                """,
                (READY, time.time() + delay, error, message.id, message.lease_token),
            )
            return cursor.rowcount > 0

    def _finish(self, message: QueueMessage, status: str, error: Optional[str]) -> bool:
        with self._connect(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE queue_messages
                SET status = ?, leased_until = NULL, last_error = COALESCE(?, last_error), finished_at = ?
                WHERE id = ? AND lease_token = ?
                """,
                (status, error, time.time(), message.id, message.lease_token),
            )
        if cursor.rowcount == 0:
            # Lease expired and another consumer owns the message now
            logger.warning(f"Lost lease on message {message.id} ({message.queue}) before {status}")
            return False
        return True

    def depth(self, queue: str) -> int:
        """Messages waiting or in flight on ``queue``."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM queue_messages WHERE queue = ? AND status IN (?, ?)",
                (queue, READY, LEASED),
            ).fetchone()
            return int(row["n"])

    def messages(self, queue: str, status: Optional[str] = None) -> list[Dict[str, Any]]:
        """Inspect stored messages (admin and tests)."""
        with self._connect() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM queue_messages WHERE queue = ? ORDER BY id", (queue,)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM queue_messages WHERE queue = ? AND status = ? ORDER BY id", (queue, status)
                ).fetchall()
        return [{**dict(row), "body": json.loads(row["body"])} for row in rows]

    def purge_finished(self, older_than: float) -> int:
        """Delete done and dead-lettered messages finished more than ``older_than`` seconds ago."""
        cutoff = time.time() - older_than
        with self._connect(immediate=True) as conn:
            cursor = conn.execute(
                "DELETE FROM queue_messages WHERE status IN (?, ?) AND finished_at < ?",
                (DONE, DEAD, cutoff),
            )
            return cursor.rowcount


Handler = Callable[[QueueMessage], None]
GiveUp = Callable[[QueueMessage, BaseException], None]


class RetryingConsumer:
    """
    Pull messages from one queue and apply a RetryPolicy to handler failures.

    - handler returns: message acknowledged
    - PermanentStageError: ``on_give_up`` then dead-letter, no retry
    - any other exception: rescheduled with backoff while the policy allows,
      otherwise ``on_give_up`` then dead-letter
    - a message already delivered more than ``max_attempts`` times (earlier
      consumers stalled past the visibility timeout) is given up without
      running the handler again
    """

    def __init__(
        self,
        queue: PipelineQueue,
        queue_name: str,
        handler: Handler,
        policy: RetryPolicy,
        on_give_up: Optional[GiveUp] = None,
        visibility_timeout: float = 300.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.policy = policy
        self.on_give_up = on_give_up
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval

    def run_once(self) -> bool:
        """
        Process at most one message.

        Returns:
            True if a message was received
        """
        message = self.queue.dequeue(self.queue_name, self.visibility_timeout)
        if message is None:
            return False

        if message.attempts > self.policy.max_attempts:
            reason = RuntimeError(
                f"Gave up after {message.attempts - 1} deliveries without completion"
                + (f": {message.last_error}" if message.last_error else "")
            )
            self._give_up(message, reason)
            return True

        try:
            self.handler(message)
        except PermanentStageError as exc:
            logger.warning(f"Permanent failure on {self.queue_name} message {message.id}: {exc}")
            self._give_up(message, exc)
        except Exception as exc:
            if self.policy.should_retry(message.attempts):
                delay = self.policy.delay_for(message.attempts)
                logger.warning(
                    f"Transient failure on {self.queue_name} message {message.id} "
                    f"(attempt {message.attempts}/{self.policy.max_attempts}), retrying in {delay:.1f}s: {exc}"
                )
                self.queue.retry(message, delay, str(exc))
            else:
                logger.error(f"Retries exhausted on {self.queue_name} message {message.id}: {exc}")
                self._give_up(message, exc)
        else:
            self.queue.ack(message)
        return True

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(f"Consumer started on {self.queue_name}")
        while not stop_event.is_set():
            try:
                received = self.run_once()
            except Exception:
                # Queue store outage; keep the worker slot alive and poll again
                logger.exception(f"Consumer loop error on {self.queue_name}")
                received = False
            if not received:
                stop_event.wait(self.poll_interval)
        logger.info(f"Consumer stopped on {self.queue_name}")

    def _give_up(self, message: QueueMessage, exc: BaseException) -> None:
        if self.on_give_up is not None:
            self.on_give_up(message, exc)
        self.queue.dead_letter(message, str(exc))

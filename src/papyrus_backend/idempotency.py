"""
Idempotency cache for submissions carrying an ``Idempotency-Key`` header.

A token is bound to the job handle of the first accepted request for the TTL
window. Binding is an atomic set-if-absent on the backing store, so when two
requests race with the same token only one value is ever stored and both
callers read it back.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from redis.exceptions import RedisError

from .database import DEFAULT_DB_PATH, open_connection
from .errors import BackingStoreUnavailable

logger = logging.getLogger(__name__)

# Compare-and-delete: only drop the token while it is bound to the given job
_RELEASE_SCRIPT = """
local raw = redis.call("GET", KEYS[1])
if raw and cjson.decode(raw)["job_id"] == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class CachedResult:
    job_id: str
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"job_id": self.job_id, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedResult":
        return cls(job_id=data["job_id"], created_at=float(data.get("created_at", 0.0)))


class TokenBackend(Protocol):
    def get(self, key: str, now: float) -> Optional[Dict[str, Any]]:
        ...

    def set_if_absent(self, key: str, value: Dict[str, Any], ttl_seconds: float, now: float) -> Dict[str, Any]:
        """Store ``value`` unless a live value exists; return whichever value is bound afterwards."""
        ...

    def release(self, key: str, job_id: str) -> bool:
        """Unbind ``key`` only while it still points at ``job_id``."""
        ...


class SQLiteTokenBackend:
    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        with self._connect(immediate=True) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS idempotency_tokens (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)

    def _connect(self, immediate: bool = False):
        return open_connection(self.db_path, store="idempotency", immediate=immediate)

    def get(self, key: str, now: float) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM idempotency_tokens WHERE key = ? AND expires_at > ?", (key, now)
            ).fetchone()
        return json.loads(row["value"]) if row else None

    def set_if_absent(self, key: str, value: Dict[str, Any], ttl_seconds: float, now: float) -> Dict[str, Any]:
        with self._connect(immediate=True) as conn:
            row = conn.execute(
                "SELECT value FROM idempotency_tokens WHERE key = ? AND expires_at > ?", (key, now)
            ).fetchone()
            if row:
                return json.loads(row["value"])
            conn.execute(
                "INSERT OR REPLACE INTO idempotency_tokens (key, value, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), now + ttl_seconds),
            )
        return value

    def release(self, key: str, job_id: str) -> bool:
        with self._connect(immediate=True) as conn:
            row = conn.execute("SELECT value FROM idempotency_tokens WHERE key = ?", (key,)).fetchone()
            if not row or json.loads(row["value"]).get("job_id") != job_id:
                return False
            conn.execute("DELETE FROM idempotency_tokens WHERE key = ?", (key,))
        return True

    def purge_expired(self, now: Optional[float] = None) -> int:
        with self._connect(immediate=True) as conn:
            cursor = conn.execute("DELETE FROM idempotency_tokens WHERE expires_at <= ?", (now or time.time(),))
            return cursor.rowcount


class RedisTokenBackend:
    def __init__(self, client, prefix: str = "papyrus:idempotency:"):
        self.client = client
        self.prefix = prefix

    def get(self, key: str, now: float) -> Optional[Dict[str, Any]]:
        try:
            raw = self.client.get(f"{self.prefix}{key}")
        except RedisError as exc:
            raise BackingStoreUnavailable("idempotency", str(exc)) from exc
        return json.loads(raw) if raw else None

    def set_if_absent(self, key: str, value: Dict[str, Any], ttl_seconds: float, now: float) -> Dict[str, Any]:
        redis_key = f"{self.prefix}{key}"
        try:
            # The bound value can expire between SET NX and GET; a couple of tries settles it
            for _ in range(3):
                if self.client.set(redis_key, json.dumps(value), nx=True, ex=max(1, int(ttl_seconds))):
                    return value
                raw = self.client.get(redis_key)
                if raw:
                    return json.loads(raw)
        except RedisError as exc:
            raise BackingStoreUnavailable("idempotency", str(exc)) from exc
        raise BackingStoreUnavailable("idempotency", f"could not bind token {key}")

    def release(self, key: str, job_id: str) -> bool:
        try:
            return bool(self.client.eval(_RELEASE_SCRIPT, 1, f"{self.prefix}{key}", job_id))
        except RedisError as exc:
            raise BackingStoreUnavailable("idempotency", str(exc)) from exc


class IdempotencyCache:
    """
    Maps (caller, token) to the job handle produced by the first acceptance.

    Args:
        backend: Store offering atomic set-if-absent
        ttl_seconds: How long a token stays bound to its job
    """

    def __init__(self, backend: TokenBackend, ttl_seconds: float = 86400):
        self.backend = backend
        self.ttl_seconds = float(ttl_seconds)

    @staticmethod
    def _key(scope: str, token: str) -> str:
        return f"{scope}:{token}"

    def lookup(self, scope: str, token: str, now: Optional[float] = None) -> Optional[CachedResult]:
        now = time.time() if now is None else now
        value = self.backend.get(self._key(scope, token), now)
        return CachedResult.from_dict(value) if value else None

    def store(
        self,
        scope: str,
        token: str,
        result: CachedResult,
        ttl: Optional[float] = None,
        now: Optional[float] = None,
    ) -> CachedResult:
        """
        Bind ``token`` to ``result`` unless it is already bound.

        Returns:
            The bound result. When it differs from ``result`` the caller lost
            a race and must use the returned job instead of creating its own.
        """
        now = time.time() if now is None else now
        bound = self.backend.set_if_absent(
            self._key(scope, token), result.to_dict(), self.ttl_seconds if ttl is None else ttl, now
        )
        winner = CachedResult.from_dict(bound)
        if winner.job_id != result.job_id:
            logger.info(f"Idempotency token {token!r} already bound to job {winner.job_id}")
        return winner

    def release(self, scope: str, token: str, job_id: str) -> bool:
        """
        Unbind ``token`` if it is still bound to ``job_id``.

        Used when the job the token was reserved for could not be accepted,
        so a retry with the same token creates a job instead of replaying
        one that does not exist.
        """
        released = self.backend.release(self._key(scope, token), job_id)
        if released:
            logger.info(f"Released idempotency token {token!r} from job {job_id}")
        return released

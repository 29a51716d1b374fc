"""
Per-caller admission control.

The controller answers one question per request: may this caller start more
work right now? Quotas are counted per fixed window in a shared counter store
that offers an atomic increment (SQLite or Redis), so any number of API
instances can enforce the same limit.

Callers are keyed by the hash of their API key, or, without a credential, by
network origin plus a short user-agent fingerprint.
"""

from __future__ import annotations

import base64
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

from redis.exceptions import RedisError

from .database import DEFAULT_DB_PATH, open_connection
from .errors import BackingStoreUnavailable
from .models import ApiKeyTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unlimited:
    def __str__(self) -> str:
        return "unlimited"


@dataclass(frozen=True)
class Limited:
    requests: int

    def __post_init__(self) -> None:
        if self.requests < 1:
            raise ValueError("Limited quota needs at least 1 request per window")

    def __str__(self) -> str:
        return str(self.requests)


Quota = Union[Unlimited, Limited]


def quota_from_value(requests_per_window: int) -> Quota:
    """Stored credentials use 0 for "no limit"; this is the only place that sentinel is read."""
    if requests_per_window == 0:
        return Unlimited()
    return Limited(requests_per_window)


@dataclass(frozen=True)
class Identity:
    """What admission needs to know about an authenticated caller."""

    id: str
    hash: str
    name: str
    tier: ApiKeyTier
    quota: Quota
    active: bool = True


@dataclass(frozen=True)
class AdmissionRequest:
    route: str
    method: str
    client_ip: str
    user_agent: str = ""
    identity: Optional[Identity] = None


@dataclass(frozen=True)
class WindowState:
    count: int
    reset_at: float


@dataclass(frozen=True)
class Allow:
    key: Optional[str]
    quota: Quota
    remaining: Optional[int] = None
    reset_at: Optional[float] = None
    exempt: bool = False


@dataclass(frozen=True)
class Deny:
    key: Optional[str]
    limit: int
    retry_after: int
    reset_time: datetime
    hint: str
    store_unavailable: bool = False


Decision = Union[Allow, Deny]

ANONYMOUS_HINT = "Use a valid API key to get a higher request limit."
UPGRADE_HINT = "Consider upgrading to a premium API key for a higher request limit."
SPREAD_HINT = "Spread your requests over time."
UNAVAILABLE_HINT = "Request accounting is temporarily unavailable. Try again shortly."


class QuotaCounter(Protocol):
    def hit(self, key: str, window_seconds: float, now: float) -> WindowState:
        """Count one request for ``key`` and return the state of its current window."""
        ...


class SQLiteQuotaCounter:
    """Fixed windows anchored at the first request, kept in a SQLite table."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rate_counters (
                    key TEXT PRIMARY KEY,
                    window_start REAL NOT NULL,
                    window_end REAL NOT NULL,
                    count INTEGER NOT NULL
                )
            """)

    def _connect(self):
        return open_connection(self.db_path, store="quota", immediate=True)

    def hit(self, key: str, window_seconds: float, now: float) -> WindowState:
        with self._connect() as conn:
            row = conn.execute("SELECT window_end, count FROM rate_counters WHERE key = ?", (key,)).fetchone()
            if row is None or row["window_end"] <= now:
                window_end = now + window_seconds
                conn.execute(
                    "INSERT OR REPLACE INTO rate_counters (key, window_start, window_end, count) VALUES (?, ?, ?, 1)",
                    (key, now, window_end),
                )
                return WindowState(count=1, reset_at=window_end)

            conn.execute("UPDATE rate_counters SET count = count + 1 WHERE key = ?", (key,))
            return WindowState(count=row["count"] + 1, reset_at=row["window_end"])

    def purge_expired(self, now: Optional[float] = None) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM rate_counters WHERE window_end <= ?", (now or time.time(),))
            return cursor.rowcount


class RedisQuotaCounter:
    """Fixed windows on Redis: INCR, set the expiry only on the first hit, read the remaining TTL."""

    def __init__(self, client, prefix: str = "papyrus:ratelimit:"):
        self.client = client
        self.prefix = prefix

    def hit(self, key: str, window_seconds: float, now: float) -> WindowState:
        redis_key = f"{self.prefix}{key}"
        window_ms = int(window_seconds * 1000)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.incr(redis_key)
            pipe.pexpire(redis_key, window_ms, nx=True)
            pipe.pttl(redis_key)
            count, _, ttl_ms = pipe.execute()
        except RedisError as exc:
            raise BackingStoreUnavailable("quota", str(exc)) from exc

        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        return WindowState(count=int(count), reset_at=now + ttl_ms / 1000.0)


def client_fingerprint(client_ip: str, user_agent: str) -> str:
    agent = base64.b64encode((user_agent or "unknown").encode("utf-8")).decode("ascii")[:8]
    return f"ip:{client_ip}:{agent}"


class AdmissionController:
    """
    Decide whether a request may proceed.

    Args:
        counter: Shared fixed-window counter store
        default_limit: Requests per window for callers without a credential
        window_seconds: Window length
        exempt_routes: Route prefixes never counted (health, metrics, listings)
        exempt_methods: HTTP methods never counted (CORS preflight)
    """

    def __init__(
        self,
        counter: QuotaCounter,
        default_limit: int = 5,
        window_seconds: float = 60.0,
        exempt_routes: Sequence[str] = ("/healthz",),
        exempt_methods: Sequence[str] = ("OPTIONS",),
    ) -> None:
        self.counter = counter
        self.anonymous_quota = Limited(default_limit)
        self.window_seconds = float(window_seconds)
        self.exempt_routes = tuple(exempt_routes)
        self.exempt_methods = tuple(method.upper() for method in exempt_methods)

    def is_exempt(self, route: str, method: str) -> bool:
        if method.upper() in self.exempt_methods:
            return True
        return any(route == prefix or route.startswith(prefix.rstrip("/") + "/") for prefix in self.exempt_routes)

    def accounting_key(self, request: AdmissionRequest) -> str:
        if request.identity is not None:
            return f"api_key:{request.identity.hash}"
        return client_fingerprint(request.client_ip, request.user_agent)

    def resolve_quota(self, identity: Optional[Identity]) -> Quota:
        if identity is None:
            return self.anonymous_quota
        return identity.quota

    def hint_for(self, identity: Optional[Identity]) -> str:
        if identity is None:
            return ANONYMOUS_HINT
        if identity.tier is ApiKeyTier.BASIC:
            return UPGRADE_HINT
        return SPREAD_HINT

    def admit(self, request: AdmissionRequest, now: Optional[float] = None) -> Decision:
        now = time.time() if now is None else now

        if self.is_exempt(request.route, request.method):
            return Allow(key=None, quota=Unlimited(), exempt=True)

        key = self.accounting_key(request)
        quota = self.resolve_quota(request.identity)
        if isinstance(quota, Unlimited):
            return Allow(key=key, quota=quota)

        try:
            state = self.counter.hit(key, self.window_seconds, now)
        except BackingStoreUnavailable as exc:
            # Fail closed: no accounting, no admission
            logger.error(f"admission store unavailable, denying request for {key}: {exc}")
            retry_after = max(1, math.ceil(min(self.window_seconds, 5.0)))
            return Deny(
                key=key,
                limit=quota.requests,
                retry_after=retry_after,
                reset_time=datetime.fromtimestamp(now + retry_after, tz=timezone.utc),
                hint=UNAVAILABLE_HINT,
                store_unavailable=True,
            )

        if state.count > quota.requests:
            retry_after = max(1, math.ceil(state.reset_at - now))
            logger.warning(f"Rate limit exceeded for {key}: {state.count} > {quota.requests} per {self.window_seconds:g}s")
            return Deny(
                key=key,
                limit=quota.requests,
                retry_after=min(retry_after, math.ceil(self.window_seconds)),
                reset_time=datetime.fromtimestamp(state.reset_at, tz=timezone.utc),
                hint=self.hint_for(request.identity),
            )

        return Allow(key=key, quota=quota, remaining=quota.requests - state.count, reset_at=state.reset_at)

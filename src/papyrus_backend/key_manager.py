from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple
from uuid import uuid4

from .admission import Identity, quota_from_value
from .database import DEFAULT_DB_PATH, open_connection
from .models import APIKeyInfo, ApiKeyTier
from .utils import utcnow

logger = logging.getLogger(__name__)

# Requests per minute granted to each tier when none is given; 0 = unlimited
TIER_LIMITS = {
    ApiKeyTier.BASIC: 10,
    ApiKeyTier.PREMIUM: 100,
    ApiKeyTier.UNLIMITED: 0,
}


def hash_key(key: str) -> str:
    """SHA-256 hash of the API key."""
    return hashlib.sha256(key.encode()).hexdigest()


@dataclass
class APIKeyRecord:
    id: str
    key_hash: str
    prefix: str
    name: str
    tier: ApiKeyTier
    requests_per_minute: int
    is_active: bool
    created_at: datetime
    description: Optional[str] = None
    last_used_at: Optional[datetime] = None

    def to_identity(self) -> Identity:
        return Identity(
            id=self.id,
            hash=self.key_hash,
            name=self.name,
            tier=self.tier,
            quota=quota_from_value(self.requests_per_minute),
            active=self.is_active,
        )

    def to_info(self) -> APIKeyInfo:
        return APIKeyInfo(
            id=self.id,
            name=self.name,
            prefix=self.prefix,
            tier=self.tier,
            requests_per_minute=self.requests_per_minute,
            is_active=self.is_active,
            description=self.description,
            created_at=self.created_at,
            last_used_at=self.last_used_at,
        )


class KeyManager:
    """
    Manages API keys using a local SQLite database.

    Only the SHA-256 hash of a key is stored; the raw key is returned once,
    at creation.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self, immediate: bool = False):
        return open_connection(self.db_path, store="credentials", immediate=immediate)

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._connect(immediate=True) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    name TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    requests_per_minute INTEGER NOT NULL,
                    description TEXT,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TEXT NOT NULL,
                    last_used_at TEXT
                )
            """)

    def create_key(
        self,
        name: str,
        tier: ApiKeyTier = ApiKeyTier.BASIC,
        requests_per_minute: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Tuple[str, APIKeyRecord]:
        """
        Generate a new API key.

        Returns:
            (raw_api_key, record). The raw key is shown ONLY ONCE here.
        """
        tier = ApiKeyTier(tier)
        raw_key = f"pap_{secrets.token_urlsafe(32)}"
        limit = TIER_LIMITS[tier] if requests_per_minute is None else requests_per_minute
        record = APIKeyRecord(
            id=str(uuid4()),
            key_hash=hash_key(raw_key),
            prefix=raw_key[:8],
            name=name,
            tier=tier,
            requests_per_minute=limit,
            is_active=True,
            created_at=utcnow(),
            description=description,
        )

        with self._connect(immediate=True) as conn:
            conn.execute(
                """
                INSERT INTO api_keys (id, key_hash, prefix, name, tier, requests_per_minute, description, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    record.id,
                    record.key_hash,
                    record.prefix,
                    name,
                    tier.value,
                    limit,
                    description,
                    record.created_at.isoformat(),
                ),
            )

        logger.info(f"Created API key {record.id} ({name}, {tier.value}, limit {limit}/min)")
        return raw_key, record

    def validate_key(self, key: str) -> Optional[APIKeyRecord]:
        """
        Validate an API key and return its record if it exists and is active.

        Raises:
            BackingStoreUnavailable: The credential database is unreachable
        """
        if not key:
            return None

        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE key_hash = ? AND is_active = 1",
                (hash_key(key),),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def touch(self, key_id: str) -> None:
        """Record that a key was just used."""
        with self._connect(immediate=True) as conn:
            conn.execute("UPDATE api_keys SET last_used_at = ? WHERE id = ?", (utcnow().isoformat(), key_id))

    def list_keys(self) -> List[APIKeyRecord]:
        """List all API keys (admin only)."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM api_keys ORDER BY created_at DESC").fetchall()
        return [self._row_to_record(row) for row in rows]

    def revoke_key(self, key_id: str) -> bool:
        """Revoke a key by ID."""
        with self._connect(immediate=True) as conn:
            cursor = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
            revoked = cursor.rowcount > 0
        if revoked:
            logger.info(f"Revoked API key {key_id}")
        return revoked

    def _row_to_record(self, row) -> APIKeyRecord:
        return APIKeyRecord(
            id=row["id"],
            key_hash=row["key_hash"],
            prefix=row["prefix"],
            name=row["name"],
            tier=ApiKeyTier(row["tier"]),
            requests_per_minute=row["requests_per_minute"],
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            description=row["description"],
            last_used_at=datetime.fromisoformat(row["last_used_at"]) if row["last_used_at"] else None,
        )

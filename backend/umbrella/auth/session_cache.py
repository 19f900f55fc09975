"""
Session cache: lightweight session records in the key-value store.

The cache is advisory only. The users table is the source of truth; a miss
or a read error here always falls through to the database and never denies
access on its own.

Key format: session:{user_id}
Value: JSON {user_id, email, oauth_provider, created_at}
TTL: SESSION_TTL_SECONDS (7 days by default)

Logout deletes the record but does not revoke issued tokens: tokens are
time-bounded capabilities.
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from threading import Lock
from typing import Optional

from redis.exceptions import RedisError

from umbrella.config import get_settings
from umbrella.models.user import User
from umbrella.storage.kv import KeyValueStore, get_kv_store

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


def session_key(user_id: str) -> str:
    """Generate storage key for a user's session record."""
    return f"{SESSION_KEY_PREFIX}{user_id}"


@dataclass
class SessionRecord:
    """Cached view of an active session."""

    user_id: str
    email: Optional[str]
    oauth_provider: Optional[str]
    created_at: str

    @classmethod
    def for_user(cls, user: User) -> "SessionRecord":
        return cls(
            user_id=user.id,
            email=user.email,
            oauth_provider=user.oauth_provider.value if user.oauth_provider else None,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            user_id=data["user_id"],
            email=data.get("email"),
            oauth_provider=data.get("oauth_provider"),
            created_at=data["created_at"],
        )


class SessionCache:
    """
    Read/write session records.

    Store errors are logged and never fail the request: reads degrade to a
    miss, and a failed write only costs the fast path on later lookups.
    """

    def __init__(self, store: KeyValueStore, ttl_seconds: int):
        self._store = store
        self._ttl_seconds = ttl_seconds

    def _write(self, record: SessionRecord) -> None:
        try:
            self._store.set(
                session_key(record.user_id), record.to_json(), ttl_seconds=self._ttl_seconds
            )
        except RedisError as e:
            logger.warning(
                "Session cache write failed",
                extra={"user_id": record.user_id, "error": str(e)},
            )

    def put(self, user: User) -> SessionRecord:
        """Create or overwrite the session record for a user (sign-in)."""
        record = SessionRecord.for_user(user)
        self._write(record)
        return record

    def refresh(self, user: User) -> SessionRecord:
        """Re-write the record with a fresh TTL (token refresh)."""
        existing = self.get(user.id)
        record = SessionRecord.for_user(user)
        if existing is not None:
            record.created_at = existing.created_at
        self._write(record)
        return record

    def get(self, user_id: str) -> Optional[SessionRecord]:
        try:
            raw = self._store.get(session_key(user_id))
            if raw is None:
                return None
            return SessionRecord.from_json(raw)
        except (RedisError, ValueError, KeyError) as e:
            logger.warning(
                "Session cache read failed, falling through to database",
                extra={"user_id": user_id, "error": str(e)},
            )
            return None

    def delete(self, user_id: str) -> bool:
        """Drop the record (logout, identity deleted). Returns True if it existed."""
        try:
            return self._store.delete(session_key(user_id))
        except RedisError as e:
            logger.warning(
                "Session cache delete failed",
                extra={"user_id": user_id, "error": str(e)},
            )
            return False


# Singleton instance
_session_cache: Optional[SessionCache] = None
_session_cache_lock = Lock()


def get_session_cache() -> SessionCache:
    """Get the process-wide session cache."""
    global _session_cache

    with _session_cache_lock:
        if _session_cache is None:
            _session_cache = SessionCache(
                store=get_kv_store(),
                ttl_seconds=get_settings().session_ttl_seconds,
            )
        return _session_cache


def set_session_cache(cache: Optional[SessionCache]) -> None:
    """Replace the session cache singleton (tests)."""
    global _session_cache

    with _session_cache_lock:
        _session_cache = cache

"""
Daily counter of manual identity recoveries.

Each time a user has to be recovered from the identity provider API (because
its identity.created webhook never arrived), today's counter is bumped. A
high count means the webhook channel is unhealthy, not that a recovery
failed.

Key format: manual_syncs:{YYYY-MM-DD} (UTC date)
TTL: 7 days

Increments are atomic in the store (Redis INCR), so concurrent recoveries
across instances all count. The counter feeds alerting only and never
affects correctness.
"""

import logging
from datetime import datetime, timezone, timedelta, date
from typing import Optional, Dict

from umbrella.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

COUNTER_KEY_PREFIX = "manual_syncs:"
COUNTER_TTL_SECONDS = 7 * 24 * 60 * 60


def counter_key(day: date) -> str:
    return f"{COUNTER_KEY_PREFIX}{day.isoformat()}"


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


class ManualSyncCounter:
    """Per-day recovery counter stored in the key-value store."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    def increment(self, day: Optional[date] = None) -> int:
        """Bump the counter for a day (today by default) and return the new count."""
        key = counter_key(day or today_utc())
        return self._store.incr(key, ttl_seconds=COUNTER_TTL_SECONDS)

    def get(self, day: Optional[date] = None) -> int:
        return self._read(counter_key(day or today_utc()))

    def _read(self, key: str) -> int:
        raw = self._store.get(key)
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer sync counter", extra={"key": key})
            return 0

    def get_manual_sync_stats(self, days: int = 7) -> Dict[str, int]:
        """
        Counts for the last `days` days, newest first.

        Returns:
            Mapping of ISO date string to recovery count (0 when no entry)
        """
        today = today_utc()
        stats: Dict[str, int] = {}
        for offset in range(days):
            day = today - timedelta(days=offset)
            stats[day.isoformat()] = self.get(day)
        return stats

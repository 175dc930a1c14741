"""Deduplicates externally retried run requests by client-supplied key."""

from __future__ import annotations

import time
from typing import Callable, Optional

from taskloop.log import get_logger
from taskloop.storage.database import Database

logger = get_logger(__name__)

IN_FLIGHT = "in_flight"
COMPLETED = "completed"


def owner_key(owner_id: str, key: str) -> str:
    """Client keys are only unique per owner; two owners may send the same key."""
    return f"{owner_id}:{key}"


class IdempotencyGuard:
    """Key states: absent, in-flight (claimed, no payload yet) and completed.

    An in-flight key is reported as absent by ``get_cached`` so a concurrent
    duplicate proceeds instead of blocking indefinitely.
    """

    def __init__(
        self,
        db: Database,
        ttl_hours: int = 24,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._ttl_seconds = ttl_hours * 3600
        self._clock = clock

    async def try_claim(self, key: str) -> bool:
        """Atomically mark *key* in-flight. False when it is already claimed or completed."""
        now = self._clock()
        conn = self._db.conn
        await conn.execute(
            "DELETE FROM idempotency_keys WHERE key = ? AND expires_at <= ?", (key, now)
        )
        cursor = await conn.execute(
            """INSERT OR IGNORE INTO idempotency_keys (key, state, payload, expires_at)
               VALUES (?, ?, NULL, ?)""",
            (key, IN_FLIGHT, now + self._ttl_seconds),
        )
        await conn.commit()
        claimed = cursor.rowcount == 1
        logger.debug("idempotency_claim", key=key, claimed=claimed)
        return claimed

    async def get_cached(self, key: str) -> Optional[str]:
        cursor = await self._db.conn.execute(
            "SELECT state, payload FROM idempotency_keys WHERE key = ? AND expires_at > ?",
            (key, self._clock()),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        if row["state"] == IN_FLIGHT:
            logger.warning("idempotency_in_flight", key=key)
            return None
        return row["payload"]

    async def store(self, key: str, payload: str) -> None:
        await self._db.conn.execute(
            """INSERT OR REPLACE INTO idempotency_keys (key, state, payload, expires_at)
               VALUES (?, ?, ?, ?)""",
            (key, COMPLETED, payload, self._clock() + self._ttl_seconds),
        )
        await self._db.conn.commit()
        logger.debug("idempotency_stored", key=key)

    async def release(self, key: str) -> None:
        """Forget *key* so the client can safely retry."""
        await self._db.conn.execute("DELETE FROM idempotency_keys WHERE key = ?", (key,))
        await self._db.conn.commit()
        logger.debug("idempotency_released", key=key)

    async def purge_expired(self) -> int:
        cursor = await self._db.conn.execute(
            "DELETE FROM idempotency_keys WHERE expires_at <= ?", (self._clock(),)
        )
        await self._db.conn.commit()
        return cursor.rowcount

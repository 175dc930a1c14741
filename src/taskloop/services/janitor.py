"""APScheduler job that purges expired cache rows."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from taskloop.log import get_logger
from taskloop.services.base import Service

if TYPE_CHECKING:
    from taskloop.memory.embeddings import EmbeddingCache
    from taskloop.memory.session_window import SessionWindow
    from taskloop.resilience.idempotency import IdempotencyGuard

logger = get_logger(__name__)

PURGE_JOB_ID = "expiry_purge"


class ExpiryJanitor(Service):
    """Expired rows are already invisible to reads; this reclaims their space."""

    def __init__(
        self,
        windows: SessionWindow,
        idempotency: IdempotencyGuard,
        embedding_cache: Optional[EmbeddingCache] = None,
        interval_minutes: int = 10,
    ):
        self._windows = windows
        self._idempotency = idempotency
        self._embedding_cache = embedding_cache
        self._interval_minutes = interval_minutes
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._last_purge: dict[str, int] = {}
        self._runs = 0

    @property
    def service_name(self) -> str:
        return "expiry_janitor"

    async def start(self) -> None:
        self._scheduler.add_job(
            self.purge,
            IntervalTrigger(minutes=self._interval_minutes),
            id=PURGE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("janitor_started", interval_minutes=self._interval_minutes)

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("janitor_stopped")

    async def health_check(self) -> bool:
        return self._scheduler.running

    def stats(self) -> dict:
        return {"purge_runs": self._runs, "last_purge": dict(self._last_purge)}

    async def purge(self) -> dict[str, int]:
        purged = {
            "session_windows": await self._windows.purge_expired(),
            "idempotency_keys": await self._idempotency.purge_expired(),
            "embedding_cache": (
                await self._embedding_cache.purge_expired() if self._embedding_cache else 0
            ),
        }
        self._runs += 1
        self._last_purge = purged
        logger.info("expired_rows_purged", **purged)
        return purged

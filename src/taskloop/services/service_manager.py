"""Service lifecycle manager."""

from __future__ import annotations

from taskloop.log import get_logger
from taskloop.services.base import Service
from taskloop.services.dispatcher import BackgroundWorkDispatcher
from taskloop.services.janitor import ExpiryJanitor

logger = get_logger(__name__)


class ServiceManager:
    """Starts services in order and stops them in reverse."""

    def __init__(self, dispatcher: BackgroundWorkDispatcher, janitor: ExpiryJanitor):
        self._dispatcher = dispatcher
        self._janitor = janitor

    @property
    def services(self) -> list[Service]:
        return [self._dispatcher, self._janitor]

    async def start_all(self) -> None:
        await self._dispatcher.start()
        try:
            await self._janitor.start()
        except Exception as e:
            # Expired rows stay invisible to reads; only disk space is at stake.
            logger.warning("janitor_unavailable", error=str(e))
        logger.info("all_services_started")

    async def stop_all(self) -> None:
        """Stop the janitor first so no purge runs while the dispatcher drains."""
        await self._janitor.stop()
        await self._dispatcher.stop()
        logger.info("all_services_stopped")

    async def health_check_all(self) -> dict[str, bool]:
        return {service.service_name: await service.health_check() for service in self.services}

    async def describe_all(self) -> dict[str, dict]:
        return {service.service_name: await service.describe() for service in self.services}

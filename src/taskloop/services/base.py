"""Lifecycle contract shared by the dispatcher and the janitor."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Service(ABC):
    """Background component owned by the ServiceManager.

    ``start`` and ``stop`` must be idempotent; the manager may call ``stop``
    on a service whose ``start`` failed.
    """

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    def stats(self) -> dict[str, Any]:
        return {}

    async def describe(self) -> dict[str, Any]:
        """Health plus counters, as collected by ``ServiceManager.describe_all``."""
        return {"healthy": await self.health_check(), **self.stats()}

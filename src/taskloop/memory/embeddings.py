"""Embedding provider and the content-hash cache in front of it."""

from __future__ import annotations

import hashlib
import json
import time
from abc import ABC, abstractmethod
from typing import Callable, Sequence

import aiosqlite
import httpx
import numpy as np

from taskloop.config import EmbeddingConfig
from taskloop.errors import ConfigurationError, TransientProviderError
from taskloop.log import get_logger
from taskloop.storage.database import Database

logger = get_logger(__name__)


class EmbeddingProvider(ABC):
    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return a fixed-dimensionality vector for *text*."""
        ...

    async def aclose(self) -> None:
        return None


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """``/embeddings`` endpoint of any OpenAI-compatible API."""

    def __init__(self, config: EmbeddingConfig, transport: httpx.AsyncBaseTransport | None = None):
        if not config.api_key:
            raise ConfigurationError("embeddings.api_key is not set")
        self._model = config.model
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {config.api_key}"},
            timeout=httpx.Timeout(config.timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self._client.post("/embeddings", json={"model": self._model, "input": text})
        except httpx.RequestError as exc:
            raise TransientProviderError(f"Embedding request failed: {exc}") from exc

        if response.status_code in (401, 403, 404):
            raise ConfigurationError(f"Embedding provider rejected request ({response.status_code})")
        if response.status_code >= 400:
            raise TransientProviderError(
                f"Embedding provider returned {response.status_code}",
                status_code=response.status_code,
            )
        data = response.json()
        return [float(x) for x in data["data"][0]["embedding"]]


def cache_key(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; vectors of different dimensionality or zero norm score 0."""
    if len(a) != len(b) or not len(a):
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class EmbeddingCache:
    """Identical text always embeds to the same vector, so results are cached for days."""

    def __init__(
        self,
        db: Database,
        provider: EmbeddingProvider,
        ttl_days: int = 7,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._provider = provider
        self._ttl_seconds = ttl_days * 86400
        self._clock = clock

    async def embed(self, text: str) -> list[float]:
        key = cache_key(text)
        cached = await self._read(key)
        if cached is not None:
            logger.debug("embedding_cache_hit", key=key[:12])
            return cached

        vector = await self._provider.embed(text)
        await self._write(key, vector)
        logger.debug("embedding_cache_miss", key=key[:12], dims=len(vector))
        return vector

    async def _read(self, key: str) -> list[float] | None:
        try:
            cursor = await self._db.conn.execute(
                "SELECT vector_json FROM embedding_cache WHERE cache_key = ? AND expires_at > ?",
                (key, self._clock()),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            logger.warning("embedding_cache_read_failed", error=str(exc))
            return None
        return json.loads(row["vector_json"]) if row else None

    async def _write(self, key: str, vector: list[float]) -> None:
        try:
            await self._db.conn.execute(
                """INSERT OR REPLACE INTO embedding_cache (cache_key, vector_json, expires_at)
                   VALUES (?, ?, ?)""",
                (key, json.dumps(vector), self._clock() + self._ttl_seconds),
            )
            await self._db.conn.commit()
        except aiosqlite.Error as exc:
            logger.warning("embedding_cache_write_failed", error=str(exc))

    async def purge_expired(self) -> int:
        cursor = await self._db.conn.execute(
            "DELETE FROM embedding_cache WHERE expires_at <= ?", (self._clock(),)
        )
        await self._db.conn.commit()
        return cursor.rowcount

"""Similarity search over an owner's embedded facts with keyword fallback."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from taskloop.log import get_logger
from taskloop.memory.embeddings import EmbeddingCache, cosine_similarity
from taskloop.memory.facts import FactStore
from taskloop.storage.models import MemoryFact

logger = get_logger(__name__)


@dataclass
class ScoredFact:
    fact: MemoryFact
    score: Optional[float] = None  # None for keyword-fallback hits


class SemanticIndex:
    def __init__(
        self,
        facts: FactStore,
        embeddings: Optional[EmbeddingCache],
        top_k: int = 5,
        threshold: float = 0.75,
    ):
        self._facts = facts
        self._embeddings = embeddings
        self._top_k = top_k
        self._threshold = threshold

    async def semantic_search(
        self, owner_id: str, query: str, top_k: Optional[int] = None
    ) -> list[ScoredFact]:
        """Top-k facts scoring at least the threshold, best first, newest first on ties.

        Falls back to keyword search when the owner has no embedded facts or the
        query cannot be embedded.
        """
        limit = top_k or self._top_k
        candidates = await self._facts.load_embedded(owner_id) if self._embeddings else []
        if not candidates:
            logger.debug("semantic_fallback_keyword", owner_id=owner_id, reason="no_embedded_facts")
            return await self._keyword(owner_id, query, limit)

        try:
            query_vector = await self._embeddings.embed(query)
        except Exception as exc:
            logger.warning("query_embedding_failed", owner_id=owner_id, error=str(exc))
            return await self._keyword(owner_id, query, limit)

        scored = [
            ScoredFact(fact=fact, score=cosine_similarity(query_vector, fact.embedding or []))
            for fact in candidates
        ]
        scored = [item for item in scored if item.score >= self._threshold]
        scored.sort(
            key=lambda item: (item.score, item.fact.created_at, item.fact.id or 0),
            reverse=True,
        )
        logger.debug(
            "semantic_search",
            owner_id=owner_id,
            candidates=len(candidates),
            matched=len(scored),
        )
        return scored[:limit]

    async def _keyword(self, owner_id: str, query: str, limit: int) -> list[ScoredFact]:
        facts = await self._facts.keyword_search(owner_id, query, limit=limit)
        return [ScoredFact(fact=fact) for fact in facts]

"""Long-term memory: durable, per-owner capped fact store."""

from __future__ import annotations

import asyncio
import json
import weakref
from typing import TYPE_CHECKING, Optional

from taskloop.core.types import FactTag
from taskloop.log import get_logger
from taskloop.storage.database import Database
from taskloop.storage.models import MemoryFact, parse_timestamp

if TYPE_CHECKING:
    from taskloop.memory.embeddings import EmbeddingCache
    from taskloop.services.dispatcher import BackgroundWorkDispatcher

logger = get_logger(__name__)


class FactStore:
    """Facts are immutable once written, except for the embedding backfill.

    ``store`` evicts the oldest facts before inserting so that an owner never
    holds more than ``max_facts`` rows; eviction and insert for one owner are
    serialized by a per-owner lock.
    """

    def __init__(
        self,
        db: Database,
        max_facts: int = 500,
        embeddings: Optional[EmbeddingCache] = None,
        dispatcher: Optional[BackgroundWorkDispatcher] = None,
    ):
        self._db = db
        self._max_facts = max_facts
        self._embeddings = embeddings
        self._dispatcher = dispatcher
        # Entries vanish once no store() for that owner holds or awaits the lock.
        self._owner_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def max_facts(self) -> int:
        return self._max_facts

    def _owner_lock(self, owner_id: str) -> asyncio.Lock:
        lock = self._owner_locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._owner_locks[owner_id] = lock
        return lock

    async def store(
        self,
        owner_id: str,
        content: str,
        tag: str | FactTag = FactTag.FACT,
        source_session_id: Optional[str] = None,
    ) -> MemoryFact:
        normalized = FactTag.normalize(str(tag))
        conn = self._db.conn
        async with self._owner_lock(owner_id):
            try:
                count = await self.count(owner_id)
                if count >= self._max_facts:
                    excess = count - self._max_facts + 1
                    await conn.execute(
                        """DELETE FROM memory_facts WHERE id IN (
                               SELECT id FROM memory_facts
                               WHERE owner_id = ?
                               ORDER BY created_at ASC, id ASC
                               LIMIT ?)""",
                        (owner_id, excess),
                    )
                    logger.info("facts_evicted", owner_id=owner_id, evicted=excess)
                cursor = await conn.execute(
                    """INSERT INTO memory_facts (owner_id, content, tag, source_session_id)
                       VALUES (?, ?, ?, ?)
                       RETURNING *""",
                    (owner_id, content, str(normalized), source_session_id),
                )
                row = await cursor.fetchone()
                await cursor.close()
                await conn.commit()
            except BaseException:
                # Eviction and insert land together or not at all.
                await conn.rollback()
                raise

        fact = self._row_to_fact(row)
        logger.debug("fact_stored", owner_id=owner_id, fact_id=fact.id, tag=fact.tag)
        self._submit_embedding(fact)
        return fact

    async def count(self, owner_id: str) -> int:
        cursor = await self._db.conn.execute(
            "SELECT COUNT(*) FROM memory_facts WHERE owner_id = ?", (owner_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def get(self, fact_id: int) -> Optional[MemoryFact]:
        cursor = await self._db.conn.execute("SELECT * FROM memory_facts WHERE id = ?", (fact_id,))
        row = await cursor.fetchone()
        return self._row_to_fact(row) if row else None

    async def load_all(self, owner_id: str) -> list[MemoryFact]:
        """All facts of *owner_id*, newest first."""
        cursor = await self._db.conn.execute(
            "SELECT * FROM memory_facts WHERE owner_id = ? ORDER BY created_at DESC, id DESC",
            (owner_id,),
        )
        return [self._row_to_fact(row) for row in await cursor.fetchall()]

    async def load_by_tag(self, owner_id: str, tag: str | FactTag) -> list[MemoryFact]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM memory_facts
               WHERE owner_id = ? AND tag = ?
               ORDER BY created_at DESC, id DESC""",
            (owner_id, str(FactTag.normalize(str(tag)))),
        )
        return [self._row_to_fact(row) for row in await cursor.fetchall()]

    async def keyword_search(self, owner_id: str, query: str, limit: Optional[int] = None) -> list[MemoryFact]:
        """Case-insensitive substring match, newest first."""
        sql = """SELECT * FROM memory_facts
                 WHERE owner_id = ? AND instr(lower(content), lower(?)) > 0
                 ORDER BY created_at DESC, id DESC"""
        params: tuple = (owner_id, query.strip())
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        cursor = await self._db.conn.execute(sql, params)
        return [self._row_to_fact(row) for row in await cursor.fetchall()]

    async def load_embedded(self, owner_id: str) -> list[MemoryFact]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM memory_facts
               WHERE owner_id = ? AND embedding IS NOT NULL
               ORDER BY created_at DESC, id DESC""",
            (owner_id,),
        )
        return [self._row_to_fact(row) for row in await cursor.fetchall()]

    async def set_embedding(self, fact_id: int, vector: list[float]) -> bool:
        cursor = await self._db.conn.execute(
            "UPDATE memory_facts SET embedding = ? WHERE id = ?", (json.dumps(vector), fact_id)
        )
        await self._db.conn.commit()
        return cursor.rowcount > 0

    async def delete(self, fact_id: int, owner_id: Optional[str] = None) -> bool:
        """Hard delete. When *owner_id* is given, only that owner's fact is removed."""
        if owner_id is None:
            cursor = await self._db.conn.execute("DELETE FROM memory_facts WHERE id = ?", (fact_id,))
        else:
            cursor = await self._db.conn.execute(
                "DELETE FROM memory_facts WHERE id = ? AND owner_id = ?", (fact_id, owner_id)
            )
        await self._db.conn.commit()
        return cursor.rowcount > 0

    async def format_for_prompt(self, owner_id: str) -> str:
        facts = await self.load_all(owner_id)
        if not facts:
            return ""
        lines = ["## What I remember about you:"]
        lines.extend(f"- [{fact.tag}] {fact.content}" for fact in facts)
        return "\n".join(lines)

    async def backfill_embeddings(self, owner_id: str) -> int:
        """Queue embedding for every fact of *owner_id* that lacks one. Returns the number queued."""
        cursor = await self._db.conn.execute(
            "SELECT * FROM memory_facts WHERE owner_id = ? AND embedding IS NULL",
            (owner_id,),
        )
        queued = 0
        for row in await cursor.fetchall():
            if self._submit_embedding(self._row_to_fact(row)):
                queued += 1
        logger.info("embedding_backfill_queued", owner_id=owner_id, queued=queued)
        return queued

    def _submit_embedding(self, fact: MemoryFact) -> bool:
        if self._embeddings is None or self._dispatcher is None or fact.id is None:
            return False
        fact_id, content, embeddings = fact.id, fact.content, self._embeddings

        async def _embed() -> None:
            vector = await embeddings.embed(content)
            await self.set_embedding(fact_id, vector)

        return self._dispatcher.submit(f"embed_fact:{fact_id}", _embed)

    @staticmethod
    def _row_to_fact(row) -> MemoryFact:
        embedding = row["embedding"]
        return MemoryFact(
            id=row["id"],
            owner_id=row["owner_id"],
            content=row["content"],
            tag=row["tag"],
            source_session_id=row["source_session_id"],
            embedding=json.loads(embedding) if embedding else None,
            created_at=parse_timestamp(row["created_at"]),
        )

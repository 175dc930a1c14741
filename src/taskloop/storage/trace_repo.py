"""Run trace repository: persisted RunRecords and simple analytics."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from taskloop.log import get_logger
from taskloop.storage.database import Database
from taskloop.storage.models import RunRecord, ToolCallSummary, parse_timestamp

logger = get_logger(__name__)


class TraceRepository:
    def __init__(self, db: Database):
        self._db = db

    async def save(self, record: RunRecord) -> int:
        """Insert one run record and return its row id."""
        cursor = await self._db.conn.execute(
            """INSERT INTO run_traces
               (session_id, owner_id, input, answer, status, iterations_used,
                latency_ms, prompt_tokens, completion_tokens, total_tokens,
                tool_calls_json, error)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.session_id,
                record.owner_id,
                record.input,
                record.answer,
                record.status,
                record.iterations_used,
                record.latency_ms,
                record.prompt_tokens,
                record.completion_tokens,
                record.total_tokens,
                json.dumps([call.to_dict() for call in record.tool_calls]),
                record.error,
            ),
        )
        await self._db.conn.commit()
        return cursor.lastrowid  # type: ignore[return-value]

    async def for_session(self, session_id: str) -> list[RunRecord]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM run_traces WHERE session_id = ? ORDER BY created_at ASC, id ASC",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def for_owner(self, owner_id: str, limit: int = 50) -> list[RunRecord]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM run_traces
               WHERE owner_id = ?
               ORDER BY created_at DESC, id DESC
               LIMIT ?""",
            (owner_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def analytics(self, owner_id: str) -> dict:
        """Average latency, tokens spent in the last 24h and a status breakdown."""
        cursor = await self._db.conn.execute(
            "SELECT COUNT(*), AVG(latency_ms) FROM run_traces WHERE owner_id = ?",
            (owner_id,),
        )
        total_runs, avg_latency = await cursor.fetchone()

        since = (datetime.now(timezone.utc) - timedelta(hours=24)).replace(tzinfo=None)
        since = since.isoformat(timespec="milliseconds")
        cursor = await self._db.conn.execute(
            """SELECT COALESCE(SUM(total_tokens), 0) FROM run_traces
               WHERE owner_id = ? AND created_at >= ?""",
            (owner_id, since),
        )
        (tokens_last_24h,) = await cursor.fetchone()

        cursor = await self._db.conn.execute(
            """SELECT status, COUNT(*) AS n FROM run_traces
               WHERE owner_id = ?
               GROUP BY status""",
            (owner_id,),
        )
        breakdown = {row["status"]: row["n"] for row in await cursor.fetchall()}

        return {
            "owner_id": owner_id,
            "total_runs": total_runs,
            "avg_latency_ms": round(avg_latency or 0.0, 1),
            "tokens_last_24h": tokens_last_24h,
            "status_breakdown": breakdown,
        }

    @staticmethod
    def _row_to_record(row) -> RunRecord:
        calls = [
            ToolCallSummary(
                name=item["name"],
                latency_ms=item["latencyMs"],
                result_preview=item["resultPreview"],
            )
            for item in json.loads(row["tool_calls_json"] or "[]")
        ]
        return RunRecord(
            id=row["id"],
            session_id=row["session_id"],
            owner_id=row["owner_id"],
            input=row["input"],
            answer=row["answer"],
            status=row["status"],
            iterations_used=row["iterations_used"],
            latency_ms=row["latency_ms"],
            prompt_tokens=row["prompt_tokens"],
            completion_tokens=row["completion_tokens"],
            tool_calls=calls,
            error=row["error"],
            created_at=parse_timestamp(row["created_at"]),
        )

"""Session repository: one row per conversation, atomic turn counting."""

from __future__ import annotations

from typing import Optional

from taskloop.errors import SessionOwnershipError
from taskloop.log import get_logger
from taskloop.storage.database import Database
from taskloop.storage.models import SessionInfo, parse_timestamp

logger = get_logger(__name__)


class SessionRepository:
    def __init__(self, db: Database):
        self._db = db

    async def upsert_session(self, session_id: str, owner_id: str) -> SessionInfo:
        """Create the session or increment its turn count in a single statement.

        Raises SessionOwnershipError when *session_id* belongs to another owner.
        """
        cursor = await self._db.conn.execute(
            """INSERT INTO sessions (session_id, owner_id, turn_count)
               VALUES (?, ?, 1)
               ON CONFLICT(session_id) DO UPDATE SET
                   turn_count = turn_count + 1,
                   updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')
               WHERE sessions.owner_id = excluded.owner_id
               RETURNING *""",
            (session_id, owner_id),
        )
        rows = await cursor.fetchall()
        await self._db.conn.commit()
        if not rows:
            logger.warning("session_owner_mismatch", session_id=session_id, owner_id=owner_id)
            raise SessionOwnershipError(f"Session '{session_id}' belongs to another owner")
        return self._row_to_session(rows[0])

    async def get_session(self, session_id: str) -> Optional[SessionInfo]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_session(row) if row else None

    async def update_summary(self, session_id: str, owner_id: str, summary: str) -> bool:
        cursor = await self._db.conn.execute(
            """UPDATE sessions
               SET summary = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')
               WHERE session_id = ? AND owner_id = ?""",
            (summary, session_id, owner_id),
        )
        await self._db.conn.commit()
        return cursor.rowcount > 0

    async def list_for_owner(self, owner_id: str, limit: int = 50) -> list[SessionInfo]:
        """Most recently active sessions first."""
        cursor = await self._db.conn.execute(
            """SELECT * FROM sessions
               WHERE owner_id = ?
               ORDER BY updated_at DESC
               LIMIT ?""",
            (owner_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def count_for_owner(self, owner_id: str) -> int:
        cursor = await self._db.conn.execute(
            "SELECT COUNT(*) FROM sessions WHERE owner_id = ?", (owner_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    @staticmethod
    def _row_to_session(row) -> SessionInfo:
        return SessionInfo(
            session_id=row["session_id"],
            owner_id=row["owner_id"],
            turn_count=row["turn_count"],
            summary=row["summary"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

"""Short-term memory: per-session sliding message window with idle expiry."""

from __future__ import annotations

import json
import time
from typing import Callable

from taskloop.core.models import ConversationMessage
from taskloop.core.types import Role
from taskloop.log import get_logger
from taskloop.storage.database import Database

logger = get_logger(__name__)


def apply_window(messages: list[ConversationMessage], max_messages: int) -> list[ConversationMessage]:
    """Keep a leading system message plus the most recent ``max_messages - 1`` others."""
    if len(messages) <= max_messages:
        return list(messages)
    if messages and messages[0].role == Role.SYSTEM:
        return [messages[0], *messages[len(messages) - (max_messages - 1):]]
    return list(messages[-max_messages:])


class SessionWindow:
    def __init__(
        self,
        db: Database,
        max_messages: int = 20,
        ttl_minutes: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._max_messages = max_messages
        self._ttl_seconds = ttl_minutes * 60
        self._clock = clock

    async def load(self, session_id: str) -> list[ConversationMessage]:
        """Ordered history, or an empty list when absent or expired."""
        cursor = await self._db.conn.execute(
            "SELECT messages_json FROM session_windows WHERE session_id = ? AND expires_at > ?",
            (session_id, self._clock()),
        )
        row = await cursor.fetchone()
        if row is None:
            return []
        return [ConversationMessage.model_validate(item) for item in json.loads(row["messages_json"])]

    async def save(self, session_id: str, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        """Trim to the window, persist and reset the idle expiry. Returns what was kept."""
        kept = apply_window(messages, self._max_messages)
        payload = json.dumps([message.model_dump(mode="json", exclude_none=True) for message in kept])
        await self._db.conn.execute(
            """INSERT INTO session_windows (session_id, messages_json, expires_at)
               VALUES (?, ?, ?)
               ON CONFLICT(session_id) DO UPDATE SET
                   messages_json = excluded.messages_json,
                   expires_at = excluded.expires_at""",
            (session_id, payload, self._clock() + self._ttl_seconds),
        )
        await self._db.conn.commit()
        if len(kept) < len(messages):
            logger.debug("session_window_trimmed", session_id=session_id, dropped=len(messages) - len(kept))
        return kept

    async def clear(self, session_id: str) -> None:
        await self._db.conn.execute("DELETE FROM session_windows WHERE session_id = ?", (session_id,))
        await self._db.conn.commit()

    async def purge_expired(self) -> int:
        cursor = await self._db.conn.execute(
            "DELETE FROM session_windows WHERE expires_at <= ?", (self._clock(),)
        )
        await self._db.conn.commit()
        return cursor.rowcount

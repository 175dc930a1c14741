"""SQLite database connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from taskloop.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id      TEXT    PRIMARY KEY,
    owner_id        TEXT    NOT NULL,
    turn_count      INTEGER NOT NULL DEFAULT 0,
    summary         TEXT,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    updated_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_sessions_owner
    ON sessions(owner_id, updated_at);

CREATE TABLE IF NOT EXISTS memory_facts (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id            TEXT    NOT NULL,
    content             TEXT    NOT NULL,
    tag                 TEXT    NOT NULL CHECK(tag IN ('fact','preference','task','context')),
    source_session_id   TEXT,
    embedding           TEXT,
    created_at          TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_facts_owner_created
    ON memory_facts(owner_id, created_at, id);

CREATE INDEX IF NOT EXISTS idx_facts_owner_tag
    ON memory_facts(owner_id, tag);

CREATE TABLE IF NOT EXISTS run_traces (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id          TEXT    NOT NULL,
    owner_id            TEXT    NOT NULL,
    input               TEXT    NOT NULL,
    answer              TEXT,
    status              TEXT    NOT NULL CHECK(status IN ('success','max_iterations','error')),
    iterations_used     INTEGER NOT NULL DEFAULT 0,
    latency_ms          INTEGER NOT NULL DEFAULT 0,
    prompt_tokens       INTEGER NOT NULL DEFAULT 0,
    completion_tokens   INTEGER NOT NULL DEFAULT 0,
    total_tokens        INTEGER NOT NULL DEFAULT 0,
    tool_calls_json     TEXT    NOT NULL DEFAULT '[]',
    error               TEXT,
    created_at          TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_traces_session ON run_traces(session_id);
CREATE INDEX IF NOT EXISTS idx_traces_owner ON run_traces(owner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_traces_status ON run_traces(status);

CREATE TABLE IF NOT EXISTS session_windows (
    session_id      TEXT PRIMARY KEY,
    messages_json   TEXT NOT NULL,
    expires_at      REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS embedding_cache (
    cache_key       TEXT PRIMARY KEY,
    vector_json     TEXT NOT NULL,
    expires_at      REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS idempotency_keys (
    key             TEXT PRIMARY KEY,
    state           TEXT NOT NULL CHECK(state IN ('in_flight','completed')),
    payload         TEXT,
    expires_at      REAL NOT NULL
);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str, schema: str = SCHEMA_SQL):
        self._db_path = db_path
        self._schema = schema
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        if self._schema:
            await self._conn.executescript(self._schema)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    @property
    def path(self) -> str:
        return self._db_path

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed", path=self._db_path)

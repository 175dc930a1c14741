"""SQL tool over the workspace database with read/write table allowlists."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

import aiosqlite

from taskloop.ai.tools.base import Tool
from taskloop.config import DatabaseToolConfig
from taskloop.errors import ToolAuthorizationError, ToolExecutionError
from taskloop.log import get_logger
from taskloop.storage.database import Database

logger = get_logger(__name__)

BLOCKED_KEYWORDS = frozenset(
    {"DELETE", "DROP", "ALTER", "CREATE", "ATTACH", "DETACH", "PRAGMA", "VACUUM", "REINDEX", "ANALYZE"}
)
READ_VERBS = frozenset({"SELECT", "WITH"})
WRITE_VERBS = frozenset({"INSERT", "UPDATE", "REPLACE"})
TABLE_KEYWORDS = frozenset({"FROM", "JOIN", "INTO", "UPDATE"})
# Words that may follow a table name and are never an alias.
_CLAUSE_WORDS = frozenset(
    {
        "WHERE", "GROUP", "ORDER", "LIMIT", "HAVING", "JOIN", "INNER", "LEFT", "RIGHT", "FULL",
        "CROSS", "NATURAL", "OUTER", "ON", "USING", "SET", "VALUES", "SELECT", "UNION", "EXCEPT",
        "INTERSECT", "DEFAULT", "RETURNING", "WINDOW", "OFFSET",
    }
)

_COMMENT_PATTERN = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_STRING_PATTERN = re.compile(r"'(?:[^']|'')*'")
_TOKEN_PATTERN = re.compile(
    r'"(?:[^"]|"")*"|`[^`]*`|\[[^\]]*\]|[A-Za-z_][\w$]*(?:\.[A-Za-z_][\w$]*)?|[(),;]'
)


@dataclass
class StatementInfo:
    kind: str  # "read" | "write"
    tables: set[str] = field(default_factory=set)


def _unquote(token: str) -> str:
    if token[:1] in ('"', "`", "["):
        token = token[1:-1]
    return token.split(".")[-1].lower()


def _is_identifier(token: str) -> bool:
    return token not in ("(", ")", ",", ";")


def classify_statement(sql: str) -> StatementInfo:
    """Decide whether *sql* reads or writes and which tables it touches.

    Raises ToolAuthorizationError for statements that are never allowed.
    """
    stripped = _STRING_PATTERN.sub("''", _COMMENT_PATTERN.sub(" ", sql)).strip()
    if not stripped:
        raise ToolExecutionError("'sql' is required")
    if ";" in stripped.rstrip(";").rstrip():
        raise ToolAuthorizationError("Multiple statements are not permitted")

    tokens = _TOKEN_PATTERN.findall(stripped)
    words = [token.upper() for token in tokens]
    blocked = BLOCKED_KEYWORDS.intersection(words)
    if blocked:
        raise ToolAuthorizationError(f"Operation '{sorted(blocked)[0]}' is not permitted")

    verb = words[0]
    if verb in WRITE_VERBS:
        kind = "write"
    elif verb in READ_VERBS:
        writes = any(
            word in ("INSERT", "UPDATE") or (word == "REPLACE" and words[i + 1 : i + 2] == ["INTO"])
            for i, word in enumerate(words)
        )
        kind = "write" if verb == "WITH" and writes else "read"
    else:
        raise ToolAuthorizationError(f"Statement type '{verb}' is not permitted")

    cte_names = {
        _unquote(tokens[i])
        for i in range(len(tokens) - 2)
        if _is_identifier(tokens[i]) and words[i + 1] == "AS" and tokens[i + 2] == "("
    }

    tables: set[str] = set()
    for i, word in enumerate(words):
        if word not in TABLE_KEYWORDS:
            continue
        j = i + 1
        while j < len(tokens) and _is_identifier(tokens[j]):
            tables.add(_unquote(tokens[j]))
            j += 1
            # optional alias
            if j < len(tokens) and words[j] == "AS":
                j += 2
            elif j < len(tokens) and _is_identifier(tokens[j]) and words[j] not in _CLAUSE_WORDS:
                j += 1
            if word == "FROM" and j < len(tokens) and tokens[j] == ",":
                j += 1
                continue
            break

    return StatementInfo(kind=kind, tables=tables - cte_names)


class DatabaseQueryTool(Tool):
    """Runs SQL against a separate workspace database, never the runtime store."""

    def __init__(self, db: Database, config: DatabaseToolConfig):
        self._db = db
        self._readable = {table.lower() for table in config.readable_tables}
        self._writable = {table.lower() for table in config.writable_tables}
        self._max_rows = config.max_result_rows

    @property
    def name(self) -> str:
        return "query_database"

    @property
    def description(self) -> str:
        return (
            "Run a single SQL statement against the workspace SQLite database. "
            "SELECT/WITH queries read data; INSERT, UPDATE and REPLACE write data. "
            "Schema changes and deletes are not permitted. Only permitted tables can be accessed."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "sql": {
                    "type": "string",
                    "description": "One SQL statement. Use ? placeholders for values.",
                },
                "params": {
                    "type": "array",
                    "items": {},
                    "description": "Values bound to the ? placeholders, in order",
                },
            },
            "required": ["sql"],
        }

    def authorize(self, info: StatementInfo) -> None:
        if info.kind == "read":
            denied = sorted(t for t in info.tables if self._readable and t not in self._readable)
            if denied:
                raise ToolAuthorizationError(
                    f"Table '{denied[0]}' is not in the readable list. Allowed: {sorted(self._readable)}"
                )
            return
        denied = sorted(t for t in info.tables if t not in self._writable)
        if denied or not info.tables:
            allowed = sorted(self._writable) if self._writable else "[none configured]"
            target = denied[0] if denied else "?"
            raise ToolAuthorizationError(f"Table '{target}' is not in the writable list. Allowed: {allowed}")

    async def execute(self, **kwargs: Any) -> str:
        sql = kwargs.get("sql")
        if not isinstance(sql, str) or not sql.strip():
            raise ToolExecutionError("'sql' is required")
        params = kwargs.get("params") or []
        if not isinstance(params, list):
            raise ToolExecutionError("'params' must be an array")

        info = classify_statement(sql)
        self.authorize(info)
        logger.info("db_tool_query", kind=info.kind, tables=sorted(info.tables))

        try:
            if info.kind == "read":
                return await self._read(sql, params)
            return await self._write(sql, params)
        except aiosqlite.Error as exc:
            raise ToolExecutionError(f"SQL error: {exc}") from exc

    async def _read(self, sql: str, params: list) -> str:
        cursor = await self._db.conn.execute(sql, params)
        rows = await cursor.fetchmany(self._max_rows + 1)
        await cursor.close()
        if not rows:
            return "No rows found."
        truncated = len(rows) > self._max_rows
        rows = rows[: self._max_rows]
        payload = json.dumps([dict(row) for row in rows], indent=2, default=str, ensure_ascii=False)
        header = f"Found {len(rows)} row(s)"
        if truncated:
            header += f" (showing first {self._max_rows})"
        return f"{header}:\n\n{payload}"

    async def _write(self, sql: str, params: list) -> str:
        cursor = await self._db.conn.execute(sql, params)
        affected = cursor.rowcount
        await cursor.close()
        await self._db.conn.commit()
        return f"{affected} row(s) affected"

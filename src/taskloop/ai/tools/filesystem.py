"""Sandboxed file operations under a configured root directory."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from taskloop.ai.tools.base import Tool
from taskloop.config import FileOpsConfig
from taskloop.errors import ToolAuthorizationError, ToolExecutionError
from taskloop.log import get_logger

logger = get_logger(__name__)


class FileOpsTool(Tool):
    """Read, write, append, list and delete files below ``base_directory`` only."""

    def __init__(self, config: FileOpsConfig):
        self._base = Path(config.base_directory).resolve()
        self._max_bytes = config.max_file_size_kb * 1024
        self._allowed_extensions = {ext.lower().lstrip(".") for ext in config.allowed_extensions}

    @property
    def name(self) -> str:
        return "file_ops"

    @property
    def description(self) -> str:
        return (
            "Read, write, append, list or delete files in your personal notes directory. "
            "Use it to save research summaries, notes, task lists or structured data, "
            f"and to read them back later. Supported file types: {', '.join(sorted(self._allowed_extensions))}."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": ["read", "write", "append", "list", "delete"],
                    "description": "The operation to perform",
                },
                "filename": {
                    "type": "string",
                    "description": (
                        "File name with extension, e.g. 'meeting-notes.md'. "
                        "Subdirectories are allowed: 'notes/project.md'"
                    ),
                },
                "content": {
                    "type": "string",
                    "description": "File content for write/append",
                },
            },
            "required": ["operation"],
        }

    async def execute(self, **kwargs: Any) -> str:
        operation = str(kwargs.get("operation") or "").strip().lower()
        filename = kwargs.get("filename")
        self._base.mkdir(parents=True, exist_ok=True)

        match operation:
            case "read":
                return self._read(self._resolve(filename, operation), filename)
            case "write" | "append":
                return self._write(
                    self._resolve(filename, operation), filename, kwargs.get("content"), append=operation == "append"
                )
            case "list":
                return self._list()
            case "delete":
                return self._delete(self._resolve(filename, operation), filename)
            case "":
                raise ToolExecutionError("'operation' is required (read, write, append, list, delete)")
            case _:
                raise ToolExecutionError(f"Unknown operation '{operation}'")

    def _resolve(self, filename: Any, operation: str) -> Path:
        """Canonicalize *filename* (following symlinks) and refuse anything outside the root."""
        if not isinstance(filename, str) or not filename.strip():
            raise ToolExecutionError(f"'filename' is required for {operation}")
        path = (self._base / filename.strip()).resolve()
        if not path.is_relative_to(self._base):
            logger.warning("file_ops_traversal_blocked", filename=filename)
            raise ToolAuthorizationError(f"Path '{filename}' escapes the files directory")
        return path

    def _read(self, path: Path, filename: str) -> str:
        if not path.is_file():
            return f"File not found: {filename}"
        size = path.stat().st_size
        if size > self._max_bytes:
            raise ToolExecutionError(
                f"File too large ({size // 1024} KB). Max allowed: {self._max_bytes // 1024} KB"
            )
        try:
            content = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ToolExecutionError(f"'{filename}' is not a UTF-8 text file") from exc
        logger.info("file_read", filename=filename, size=len(content))
        return content

    def _write(self, path: Path, filename: str, content: Any, append: bool) -> str:
        extension = path.suffix.lower().lstrip(".")
        if extension not in self._allowed_extensions:
            raise ToolAuthorizationError(
                f"Extension '.{extension}' not allowed. Allowed: {sorted(self._allowed_extensions)}"
            )
        if not isinstance(content, str):
            raise ToolExecutionError("'content' is required")
        encoded = content.encode("utf-8")
        existing = path.stat().st_size if append and path.is_file() else 0
        if existing + len(encoded) > self._max_bytes:
            raise ToolExecutionError(
                f"Content too large ({existing + len(encoded)} bytes). Max: {self._max_bytes // 1024} KB"
            )

        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a" if append else "w", encoding="utf-8") as fh:
            fh.write(content)

        action = "Appended" if append else "Written"
        logger.info("file_written", filename=filename, size=len(encoded), append=append)
        return f"{action} successfully to '{filename}' ({len(encoded)} bytes)"

    def _list(self) -> str:
        entries = []
        for entry in sorted(self._base.rglob("*")):
            if not entry.is_file():
                continue
            stat = entry.stat()
            modified = datetime.fromtimestamp(stat.st_mtime).strftime("%Y-%m-%d %H:%M")
            entries.append(f"  {entry.relative_to(self._base).as_posix()} ({_format_size(stat.st_size)}, {modified})")
        if not entries:
            return "No files yet."
        return f"Files ({len(entries)}):\n" + "\n".join(entries)

    def _delete(self, path: Path, filename: str) -> str:
        if not path.is_file():
            return f"File not found: {filename}"
        path.unlink()
        logger.info("file_deleted", filename=filename)
        return f"Deleted '{filename}'"


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GB"

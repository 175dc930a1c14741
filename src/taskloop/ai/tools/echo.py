"""Smoke-test tool: echoes its input."""

from __future__ import annotations

from typing import Any

from taskloop.ai.tools.base import Tool
from taskloop.errors import ToolExecutionError


class EchoTool(Tool):
    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echoes back the provided message. Use this to check that tools are working."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "The message to echo back"},
            },
            "required": ["message"],
        }

    async def execute(self, **kwargs: Any) -> str:
        message = kwargs.get("message")
        if message is None:
            raise ToolExecutionError("'message' argument is required")
        return f"Echo: {message}"

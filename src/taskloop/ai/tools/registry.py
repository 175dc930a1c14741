"""Tool registry: name-indexed dispatch table that never raises."""

from __future__ import annotations

import time

from taskloop.ai.tools.base import Tool, ToolDefinition
from taskloop.core.models import ToolCall
from taskloop.errors import ToolAuthorizationError, ToolExecutionError
from taskloop.log import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of all available tools.

    Populated once at startup and then frozen; the table is shared read-only
    by every concurrent run.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._frozen = False

    def register(self, tool: Tool) -> None:
        if self._frozen:
            raise RuntimeError(f"Tool registry is frozen; cannot register '{tool.name}'")
        if tool.name in self._tools:
            raise ValueError(f"Duplicate tool name: {tool.name}")
        self._tools[tool.name] = tool
        logger.info("tool_registered", tool_name=tool.name)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition() for tool in self._tools.values()]

    async def dispatch(self, call: ToolCall) -> str:
        """Execute *call* and return its observation. Failures become ``ERROR: ...`` strings."""
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning("unknown_tool", tool=call.name)
            return f"ERROR: Unknown tool '{call.name}'. Available tools: {self.names()}"

        start = time.monotonic()
        try:
            result = await tool.execute(**call.arguments)
        except ToolAuthorizationError as exc:
            logger.warning("tool_denied", tool=call.name, reason=str(exc))
            return f"ERROR: Permission denied: {exc}"
        except ToolExecutionError as exc:
            logger.warning("tool_failed", tool=call.name, error=str(exc))
            return f"ERROR: {exc}"
        except Exception as exc:
            logger.exception("tool_crashed", tool=call.name)
            return f"ERROR: Tool execution failed: {exc}"

        logger.info(
            "tool_executed",
            tool=call.name,
            latency_ms=int((time.monotonic() - start) * 1000),
            result_len=len(result),
        )
        return result

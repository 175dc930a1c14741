"""Construction of the built-in tool table."""

from __future__ import annotations

from typing import Optional

from taskloop.ai.tools.base import Tool
from taskloop.ai.tools.database import DatabaseQueryTool
from taskloop.ai.tools.echo import EchoTool
from taskloop.ai.tools.filesystem import FileOpsTool
from taskloop.ai.tools.http_caller import HttpCallerTool
from taskloop.ai.tools.memory import SaveMemoryTool, SearchMemoryTool
from taskloop.ai.tools.registry import ToolRegistry
from taskloop.config import ToolsConfig
from taskloop.errors import ConfigurationError
from taskloop.log import get_logger
from taskloop.memory.facts import FactStore
from taskloop.memory.semantic import SemanticIndex
from taskloop.storage.database import Database

logger = get_logger(__name__)


def build_tool_registry(
    config: ToolsConfig,
    facts: FactStore,
    index: SemanticIndex,
    workspace_db: Optional[Database] = None,
) -> ToolRegistry:
    """Register every enabled built-in tool and freeze the registry."""
    factories = {
        "echo": lambda: EchoTool(),
        "file_ops": lambda: FileOpsTool(config.file_ops),
        "call_api": lambda: HttpCallerTool(config.call_api),
        "save_memory": lambda: SaveMemoryTool(facts),
        "search_memory": lambda: SearchMemoryTool(facts, index),
    }
    if workspace_db is not None:
        factories["query_database"] = lambda: DatabaseQueryTool(workspace_db, config.query_database)

    registry = ToolRegistry()
    for name in config.enabled:
        factory = factories.get(name)
        if factory is None:
            if name == "query_database":
                raise ConfigurationError("query_database is enabled but no workspace database was provided")
            raise ConfigurationError(f"Unknown tool in tools.enabled: {name}")
        tool: Tool = factory()
        registry.register(tool)
    registry.freeze()
    logger.info("tool_registry_ready", tools=registry.names())
    return registry

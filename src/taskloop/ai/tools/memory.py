"""Tools that let the model save and search the current owner's long-term memory."""

from __future__ import annotations

from typing import Any

from taskloop.ai.tools.base import Tool
from taskloop.core.scope import RunScope, current_scope
from taskloop.core.types import FactTag
from taskloop.errors import ToolAuthorizationError, ToolExecutionError
from taskloop.log import get_logger
from taskloop.memory.facts import FactStore
from taskloop.memory.semantic import SemanticIndex
from taskloop.storage.models import MemoryFact

logger = get_logger(__name__)

TAGS = [str(tag) for tag in FactTag]


def _require_scope() -> RunScope:
    # The owner always comes from the run, never from model-supplied arguments.
    scope = current_scope()
    if scope is None:
        raise ToolAuthorizationError("Memory tools can only be used inside an agent run")
    return scope


class SaveMemoryTool(Tool):
    def __init__(self, facts: FactStore):
        self._facts = facts

    @property
    def name(self) -> str:
        return "save_memory"

    @property
    def description(self) -> str:
        return (
            "Save an important fact about the user to long-term memory for future sessions. "
            "Use it when the user shares a preference, a personal fact, an ongoing project "
            "or context worth remembering. Do not use it for one-off requests."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "content": {
                    "type": "string",
                    "description": "The fact as a clear statement, e.g. 'Prefers concise bullet-point answers'",
                },
                "tag": {
                    "type": "string",
                    "enum": TAGS,
                    "description": (
                        "fact (personal/professional info), preference (likes/dislikes), "
                        "task (ongoing work), context (background info)"
                    ),
                },
            },
            "required": ["content", "tag"],
        }

    async def execute(self, **kwargs: Any) -> str:
        scope = _require_scope()
        content = kwargs.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ToolExecutionError("'content' is required to save memory")
        tag = FactTag.normalize(kwargs.get("tag"))
        fact = await self._facts.store(scope.owner_id, content.strip(), tag, source_session_id=scope.session_id)
        logger.info("memory_saved_by_agent", fact_id=fact.id, tag=fact.tag)
        return f"Memory saved successfully [id={fact.id}, tag={fact.tag}]: {fact.content}"


class SearchMemoryTool(Tool):
    def __init__(self, facts: FactStore, index: SemanticIndex):
        self._facts = facts
        self._index = index

    @property
    def name(self) -> str:
        return "search_memory"

    @property
    def description(self) -> str:
        return (
            "Search your long-term memory about the user. Mode 'semantic' (default) finds related "
            "memories even when phrased differently, 'keyword' matches exact terms, 'tag' filters "
            "by category and 'all' returns everything."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "mode": {
                    "type": "string",
                    "enum": ["semantic", "keyword", "tag", "all"],
                    "description": "Search mode",
                },
                "query": {
                    "type": "string",
                    "description": "Text for semantic/keyword search, or the tag name for tag mode",
                },
            },
            "required": ["mode"],
        }

    async def execute(self, **kwargs: Any) -> str:
        scope = _require_scope()
        owner_id = scope.owner_id
        mode = str(kwargs.get("mode") or "semantic").lower()
        query = str(kwargs.get("query") or "").strip()

        match mode:
            case "semantic":
                if query:
                    results = [hit.fact for hit in await self._index.semantic_search(owner_id, query)]
                else:
                    results = await self._facts.load_all(owner_id)
            case "keyword":
                results = await self._facts.keyword_search(owner_id, query) if query else []
            case "tag":
                if query.lower() not in TAGS:
                    raise ToolExecutionError(f"Unknown tag '{query}'. Use one of: {TAGS}")
                results = await self._facts.load_by_tag(owner_id, query)
            case "all":
                results = await self._facts.load_all(owner_id)
            case _:
                raise ToolExecutionError(f"Unknown mode '{mode}'. Use: semantic, keyword, tag, all")

        if not results:
            return "No memories found" + (f" for query '{query}'." if query else ".")
        return _format_results(results)


def _format_results(facts: list[MemoryFact]) -> str:
    lines = [f"Found {len(facts)} memories:"]
    lines.extend(f"  [{fact.tag}] {fact.content} (id={fact.id})" for fact in facts)
    return "\n".join(lines)

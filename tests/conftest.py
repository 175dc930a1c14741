"""Shared fixtures: temporary databases, a controllable clock and scripted collaborators."""

from __future__ import annotations

from typing import Any, Iterable, Union

import pytest

from taskloop.ai.gateway import ModelGateway, ModelResponse
from taskloop.ai.tools.base import ToolDefinition
from taskloop.core.models import ConversationMessage, ToolCall
from taskloop.errors import TransientProviderError
from taskloop.memory.embeddings import EmbeddingProvider
from taskloop.services.dispatcher import BackgroundWorkDispatcher
from taskloop.storage.database import Database


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Scripted = Union[ModelResponse, Exception]


class ScriptedGateway(ModelGateway):
    """Replays a fixed list of responses (or raises the scripted exceptions)."""

    def __init__(self, script: Iterable[Scripted] = (), default: ModelResponse | None = None):
        self.script: list[Scripted] = list(script)
        self.default = default or ModelResponse(content="done")
        self.calls: list[list[ConversationMessage]] = []
        self.tool_sets: list[list[ToolDefinition] | None] = []

    @property
    def model_name(self) -> str:
        return "scripted"

    async def chat(self, messages, tools=None) -> ModelResponse:
        self.calls.append(list(messages))
        self.tool_sets.append(tools)
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        return item


def answer(text: str, prompt_tokens: int = 10, completion_tokens: int = 5) -> ModelResponse:
    return ModelResponse(content=text, prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)


def tool_call(name: str, call_id: str = "call_1", **arguments: Any) -> ModelResponse:
    return ModelResponse(
        tool_call=ToolCall(id=call_id, name=name, arguments=arguments),
        prompt_tokens=10,
        completion_tokens=5,
    )


class FakeEmbeddingProvider(EmbeddingProvider):
    """Looks vectors up by exact text; unknown text maps to ``default``."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, default: list[float] | None = None):
        self.vectors = vectors or {}
        self.default = default or [0.0, 0.0, 1.0]
        self.calls: list[str] = []
        self.fail = False

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise TransientProviderError("embedding provider down")
        return list(self.vectors.get(text, self.default))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "taskloop-test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
async def dispatcher():
    pool = BackgroundWorkDispatcher(workers=2, queue_size=50, shutdown_timeout=5)
    await pool.start()
    yield pool
    await pool.stop()

"""Per-run trace collection and best-effort persistence."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

import aiosqlite

from taskloop.core.models import ToolInvocation
from taskloop.core.types import RunStatus
from taskloop.errors import BackgroundTaskError
from taskloop.log import get_logger
from taskloop.storage.models import RunRecord, ToolCallSummary
from taskloop.storage.trace_repo import TraceRepository

logger = get_logger(__name__)

MAX_INPUT_CHARS = 4000
MAX_ANSWER_CHARS = 8000
MAX_PREVIEW_CHARS = 200
TRUNCATION_MARKER = "...[truncated]"


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


@dataclass
class RunContext:
    """Mutable accumulator owned by exactly one run."""

    owner_id: str
    session_id: str
    input: str
    started: float = field(default_factory=time.monotonic)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    iterations: int = 0
    invocations: list[ToolInvocation] = field(default_factory=list)
    answer: Optional[str] = None
    max_iterations_reached: bool = False
    degraded: bool = False
    error: Optional[BaseException] = None

    def add_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens

    def record_tool(self, invocation: ToolInvocation) -> None:
        self.invocations.append(invocation)

    @property
    def latency_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    @property
    def status(self) -> RunStatus:
        if self.error is not None:
            return RunStatus.ERROR
        if self.max_iterations_reached:
            return RunStatus.MAX_ITERATIONS
        return RunStatus.SUCCESS


class TraceRecorder:
    def __init__(self, repo: TraceRepository):
        self._repo = repo

    def build_record(self, ctx: RunContext) -> RunRecord:
        return RunRecord(
            session_id=ctx.session_id,
            owner_id=ctx.owner_id,
            input=truncate(ctx.input, MAX_INPUT_CHARS) or "",
            answer=truncate(ctx.answer, MAX_ANSWER_CHARS),
            status=str(ctx.status),
            iterations_used=ctx.iterations,
            latency_ms=ctx.latency_ms,
            prompt_tokens=ctx.prompt_tokens,
            completion_tokens=ctx.completion_tokens,
            tool_calls=[
                ToolCallSummary(
                    name=inv.name,
                    latency_ms=inv.latency_ms,
                    result_preview=truncate(inv.result, MAX_PREVIEW_CHARS) or "",
                )
                for inv in ctx.invocations
            ],
            error=str(ctx.error) if ctx.error is not None else None,
        )

    async def persist(self, record: RunRecord) -> int:
        try:
            trace_id = await self._repo.save(record)
        except aiosqlite.Error as exc:
            raise BackgroundTaskError(f"Run trace not persisted: {exc}") from exc
        logger.info(
            "run_trace_saved",
            trace_id=trace_id,
            status=record.status,
            latency_ms=record.latency_ms,
            total_tokens=record.total_tokens,
        )
        return trace_id

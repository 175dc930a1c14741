"""Bounded Reason -> Act -> Observe agent loop."""

from __future__ import annotations

import time
import uuid
from typing import Optional

from taskloop.ai.gateway import ModelGateway, ModelResponse
from taskloop.ai.recovery import new_call_id
from taskloop.ai.tools.registry import ToolRegistry
from taskloop.config import DEFAULT_SYSTEM_PROMPT
from taskloop.core.models import ConversationMessage, RunResult, ToolCall, ToolInvocation
from taskloop.core.scope import run_scope
from taskloop.core.types import RunStatus
from taskloop.errors import AgentError, ConfigurationError, ProtocolRecoveryError, SessionOwnershipError
from taskloop.log import bind_run, get_logger
from taskloop.memory.extraction import FactExtractor
from taskloop.memory.facts import FactStore
from taskloop.memory.session_window import SessionWindow
from taskloop.observability.trace import RunContext, TraceRecorder
from taskloop.resilience.gateway import PROTOCOL_FALLBACK
from taskloop.resilience.idempotency import IdempotencyGuard, owner_key
from taskloop.services.dispatcher import BackgroundWorkDispatcher
from taskloop.storage.session_repo import SessionRepository

logger = get_logger(__name__)

MAX_ITERATIONS_ANSWER = "I was unable to complete the task within the allowed steps."
GENERIC_ERROR_ANSWER = "An unexpected error occurred while processing your request. Please try again."


def safe_error_answer(exc: BaseException) -> str:
    """Caller-facing text for a failed run; internal details only for our own error types."""
    if isinstance(exc, ConfigurationError):
        return f"Configuration error: {exc}"
    if isinstance(exc, SessionOwnershipError):
        return str(exc)
    if isinstance(exc, AgentError):
        return f"An error occurred: {exc}"
    return GENERIC_ERROR_ANSWER


class AgentLoop:
    """Orchestrates one run: session, memory, model/tool iterations and background follow-ups.

    Each run is a single coroutine; tool calls inside a run execute strictly
    one after another. ``run`` never raises for failures inside the run.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        tools: ToolRegistry,
        sessions: SessionRepository,
        windows: SessionWindow,
        facts: FactStore,
        traces: TraceRecorder,
        dispatcher: BackgroundWorkDispatcher,
        extractor: Optional[FactExtractor] = None,
        idempotency: Optional[IdempotencyGuard] = None,
        max_iterations: int = 10,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ):
        self._gateway = gateway
        self._tools = tools
        self._sessions = sessions
        self._windows = windows
        self._facts = facts
        self._traces = traces
        self._dispatcher = dispatcher
        self._extractor = extractor
        self._idempotency = idempotency
        self._max_iterations = max_iterations
        self._system_prompt = system_prompt

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    async def run(
        self,
        owner_id: str,
        user_input: str,
        session_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RunResult:
        claimed = False
        stored_key = owner_key(owner_id, idempotency_key) if idempotency_key else None
        if stored_key and self._idempotency is not None:
            try:
                cached = await self._idempotency.get_cached(stored_key)
                if cached is not None:
                    logger.info("idempotent_replay", idempotency_key=idempotency_key)
                    return RunResult.model_validate_json(cached)
                claimed = await self._idempotency.try_claim(stored_key)
            except Exception:
                logger.exception("idempotency_check_failed", idempotency_key=idempotency_key)

        session_id = session_id.strip() if session_id and session_id.strip() else str(uuid.uuid4())
        with bind_run(session_id, owner_id), run_scope(owner_id, session_id):
            result = await self._run(owner_id, session_id, user_input)

        if claimed:
            await self._settle_idempotency(stored_key, result)
        return result

    async def _run(self, owner_id: str, session_id: str, user_input: str) -> RunResult:
        ctx = RunContext(owner_id=owner_id, session_id=session_id, input=user_input)
        messages: list[ConversationMessage] = []
        executed: list[ToolCall] = []
        session_ready = False
        result: Optional[RunResult] = None
        logger.info("run_started", input_len=len(user_input))

        try:
            await self._sessions.upsert_session(session_id, owner_id)
            session_ready = True

            history = await self._windows.load(session_id)
            if history:
                messages.extend(history)
            else:
                messages.append(await self._build_system_message(owner_id))
            messages.append(ConversationMessage.user(user_input))

            result = await self._iterate(ctx, messages, executed)
        except Exception as exc:
            ctx.error = exc
            logger.exception("run_failed", error_type=type(exc).__name__)
            result = RunResult(
                answer=safe_error_answer(exc),
                tool_calls_executed=list(executed),
                iterations_used=ctx.iterations,
                max_iterations_reached=False,
                session_id=session_id,
                status=RunStatus.ERROR,
            )
        finally:
            ctx.answer = result.answer if result is not None else None
            await self._finish(ctx, messages, session_ready)

        logger.info(
            "run_finished",
            status=str(result.status),
            iterations=result.iterations_used,
            latency_ms=ctx.latency_ms,
            tokens=ctx.prompt_tokens + ctx.completion_tokens,
        )
        return result

    async def _iterate(
        self,
        ctx: RunContext,
        messages: list[ConversationMessage],
        executed: list[ToolCall],
    ) -> RunResult:
        definitions = self._tools.definitions()

        for iteration in range(1, self._max_iterations + 1):
            ctx.iterations = iteration
            logger.debug("iteration_started", iteration=iteration, max_iterations=self._max_iterations)

            try:
                response = await self._gateway.chat(messages, definitions)
            except ProtocolRecoveryError as exc:
                logger.warning("protocol_error_degraded", error=str(exc))
                response = ModelResponse(content=PROTOCOL_FALLBACK, fallback=True)

            ctx.add_usage(response.prompt_tokens, response.completion_tokens)
            if response.fallback:
                ctx.degraded = True

            if response.tool_call is None:
                answer = response.content or ""
                messages.append(ConversationMessage.assistant(answer))
                return RunResult(
                    answer=answer,
                    tool_calls_executed=list(executed),
                    iterations_used=iteration,
                    max_iterations_reached=False,
                    session_id=ctx.session_id,
                    status=RunStatus.SUCCESS,
                    degraded=ctx.degraded,
                )

            call = response.tool_call
            if not call.id:
                call = call.model_copy(update={"id": new_call_id()})
            executed.append(call)
            logger.info("tool_requested", tool=call.name, call_id=call.id, iteration=iteration)

            started = time.monotonic()
            observation = await self._tools.dispatch(call)
            ctx.record_tool(
                ToolInvocation(
                    id=call.id,
                    name=call.name,
                    arguments=call.arguments,
                    result=observation,
                    latency_ms=int((time.monotonic() - started) * 1000),
                )
            )
            messages.append(ConversationMessage.assistant_tool_call(call))
            messages.append(ConversationMessage.tool_result(call, observation))

        ctx.max_iterations_reached = True
        logger.warning("max_iterations_reached", max_iterations=self._max_iterations)
        return RunResult(
            answer=MAX_ITERATIONS_ANSWER,
            tool_calls_executed=list(executed),
            iterations_used=self._max_iterations,
            max_iterations_reached=True,
            session_id=ctx.session_id,
            status=RunStatus.MAX_ITERATIONS,
            degraded=ctx.degraded,
        )

    async def _build_system_message(self, owner_id: str) -> ConversationMessage:
        remembered = await self._facts.format_for_prompt(owner_id)
        content = self._system_prompt
        if remembered:
            content = f"{content}\n\n{remembered}"
        return ConversationMessage.system(content)

    async def _finish(self, ctx: RunContext, messages: list[ConversationMessage], session_ready: bool) -> None:
        """Save the window and hand extraction and the trace to the background pool."""
        if session_ready and messages:
            try:
                await self._windows.save(ctx.session_id, messages)
            except Exception:
                logger.exception("session_window_save_failed")

            if self._extractor is not None:
                extractor, snapshot = self._extractor, list(messages)
                owner_id, session_id = ctx.owner_id, ctx.session_id
                self._dispatcher.submit(
                    f"extract_facts:{session_id}",
                    lambda: extractor.extract_and_store(owner_id, session_id, snapshot),
                )

        try:
            record = self._traces.build_record(ctx)
        except Exception:
            logger.exception("run_trace_build_failed")
            return
        traces = self._traces
        self._dispatcher.submit(f"persist_trace:{ctx.session_id}", lambda: traces.persist(record))

    async def _settle_idempotency(self, key: str, result: RunResult) -> None:
        try:
            if result.status != RunStatus.ERROR and not result.degraded:
                await self._idempotency.store(key, result.model_dump_json())
            else:
                await self._idempotency.release(key)
        except Exception:
            logger.exception("idempotency_settle_failed", idempotency_key=key)

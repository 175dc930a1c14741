"""End-to-end tests of the agent loop against scripted model responses."""

from dataclasses import dataclass

import pytest

from conftest import ScriptedGateway, answer, tool_call
from taskloop.ai.tools.echo import EchoTool
from taskloop.ai.tools.memory import SaveMemoryTool
from taskloop.ai.tools.registry import ToolRegistry
from taskloop.config import CircuitBreakerConfig, RetryConfig
from taskloop.core.loop import GENERIC_ERROR_ANSWER, MAX_ITERATIONS_ANSWER, AgentLoop
from taskloop.core.types import Role, RunStatus
from taskloop.errors import ProtocolRecoveryError, TransientProviderError
from taskloop.memory.extraction import FactExtractor
from taskloop.memory.facts import FactStore
from taskloop.memory.session_window import SessionWindow
from taskloop.observability.trace import TraceRecorder
from taskloop.resilience.breaker import CircuitBreaker
from taskloop.resilience.gateway import CONNECTION_FALLBACK, PROTOCOL_FALLBACK, ResilientGateway
from taskloop.resilience.idempotency import IdempotencyGuard, owner_key
from taskloop.resilience.retry import RetryPolicy
from taskloop.storage.session_repo import SessionRepository
from taskloop.storage.trace_repo import TraceRepository


@dataclass
class Harness:
    loop: AgentLoop
    gateway: ScriptedGateway
    facts: FactStore
    sessions: SessionRepository
    windows: SessionWindow
    traces: TraceRepository
    idempotency: IdempotencyGuard


@pytest.fixture
def make_harness(db, clock, dispatcher):
    def _make(gateway=None, max_iterations=10, extractor_gateway=None, wrap=None) -> Harness:
        gateway = gateway or ScriptedGateway()
        facts = FactStore(db, max_facts=50)
        sessions = SessionRepository(db)
        windows = SessionWindow(db, max_messages=20, ttl_minutes=60, clock=clock)
        traces = TraceRepository(db)
        idempotency = IdempotencyGuard(db, clock=clock)
        registry = ToolRegistry()
        registry.register(EchoTool())
        registry.register(SaveMemoryTool(facts))
        registry.freeze()
        loop = AgentLoop(
            gateway=wrap(gateway) if wrap else gateway,
            tools=registry,
            sessions=sessions,
            windows=windows,
            facts=facts,
            traces=TraceRecorder(traces),
            dispatcher=dispatcher,
            extractor=FactExtractor(extractor_gateway, facts) if extractor_gateway else None,
            idempotency=idempotency,
            max_iterations=max_iterations,
            system_prompt="You are a test assistant.",
        )
        return Harness(loop, gateway, facts, sessions, windows, traces, idempotency)

    return _make


class TestFinalAnswer:
    async def test_direct_answer(self, make_harness, dispatcher):
        """Should return the model's answer after a single iteration."""
        h = make_harness(ScriptedGateway([answer("Hello!")]))

        result = await h.loop.run("alice", "hi", session_id="s1")

        assert result.answer == "Hello!"
        assert result.status == RunStatus.SUCCESS
        assert result.iterations_used == 1
        assert result.tool_calls_executed == []
        assert result.max_iterations_reached is False
        assert result.session_id == "s1"

    async def test_generates_session_id(self, make_harness):
        """Should create a session id when none is supplied."""
        h = make_harness()

        result = await h.loop.run("alice", "hi")

        assert result.session_id
        session = await h.sessions.get_session(result.session_id)
        assert session.owner_id == "alice"
        assert session.turn_count == 1

    async def test_system_prompt_includes_remembered_facts(self, make_harness):
        """Should seed a new session with the owner's remembered facts."""
        h = make_harness()
        await h.facts.store("alice", "Likes green tea", "preference")

        await h.loop.run("alice", "hi", session_id="s1")

        system = h.gateway.calls[0][0]
        assert system.role == Role.SYSTEM
        assert system.content.startswith("You are a test assistant.")
        assert "- [preference] Likes green tea" in system.content

    async def test_tools_are_advertised(self, make_harness):
        """Should pass the registered tool definitions to the model."""
        h = make_harness()

        await h.loop.run("alice", "hi", session_id="s1")

        assert sorted(d.name for d in h.gateway.tool_sets[0]) == ["echo", "save_memory"]


class TestToolCalls:
    async def test_tool_call_id_round_trips(self, make_harness):
        """Should echo the provider call id in the tool-result message."""
        h = make_harness(ScriptedGateway([tool_call("echo", call_id="toolu_42", message="hi"), answer("done")]))

        result = await h.loop.run("alice", "echo hi", session_id="s1")

        assert result.answer == "done"
        assert result.iterations_used == 2
        assert [c.id for c in result.tool_calls_executed] == ["toolu_42"]
        request, observation = h.gateway.calls[1][-2:]
        assert request.role == Role.ASSISTANT
        assert request.tool_calls[0].id == "toolu_42"
        assert observation.role == Role.TOOL
        assert observation.tool_call_id == "toolu_42"
        assert observation.content == "Echo: hi"

    async def test_unknown_tool_is_observed_not_raised(self, make_harness):
        """Should feed an unknown-tool error back to the model and keep going."""
        h = make_harness(ScriptedGateway([tool_call("foo"), answer("sorry")]))

        result = await h.loop.run("alice", "use foo", session_id="s1")

        assert result.status == RunStatus.SUCCESS
        assert result.answer == "sorry"
        observation = h.gateway.calls[1][-1]
        assert observation.content.startswith("ERROR: Unknown tool 'foo'")

    async def test_missing_call_id_is_assigned(self, make_harness):
        """Should give id-less tool calls a generated id."""
        h = make_harness(ScriptedGateway([tool_call("echo", call_id="", message="x"), answer("ok")]))

        result = await h.loop.run("alice", "go", session_id="s1")

        call_id = result.tool_calls_executed[0].id
        assert call_id.startswith("call_")
        assert h.gateway.calls[1][-1].tool_call_id == call_id

    async def test_memory_tool_writes_for_run_owner(self, make_harness):
        """Should let tools see the owner and session of the current run."""
        h = make_harness(ScriptedGateway([
            tool_call("save_memory", content="Works at ACME", tag="fact"),
            answer("noted"),
        ]))

        await h.loop.run("alice", "remember I work at ACME", session_id="s1")

        saved = await h.facts.load_all("alice")
        assert [(f.content, f.source_session_id) for f in saved] == [("Works at ACME", "s1")]

    async def test_max_iterations(self, make_harness):
        """Should stop after the iteration limit with a fixed answer."""
        gateway = ScriptedGateway(default=tool_call("echo", message="again"))
        h = make_harness(gateway, max_iterations=3)

        result = await h.loop.run("alice", "loop forever", session_id="s1")

        assert result.status == RunStatus.MAX_ITERATIONS
        assert result.max_iterations_reached is True
        assert result.answer == MAX_ITERATIONS_ANSWER
        assert result.iterations_used == 3
        assert len(result.tool_calls_executed) == 3
        assert len(gateway.calls) == 3


class TestSessions:
    async def test_window_carries_history_between_runs(self, make_harness):
        """Should continue from the saved window on the next run of the session."""
        h = make_harness(ScriptedGateway([answer("first answer"), answer("second answer")]))

        await h.loop.run("alice", "first question", session_id="s1")
        await h.loop.run("alice", "second question", session_id="s1")

        contents = [m.content for m in h.gateway.calls[1]]
        assert contents[1:] == ["first question", "first answer", "second question"]
        assert [m.role for m in h.gateway.calls[1]].count(Role.SYSTEM) == 1
        assert (await h.sessions.get_session("s1")).turn_count == 2

    async def test_foreign_session_is_refused(self, make_harness):
        """Should not let another owner continue a session."""
        h = make_harness(ScriptedGateway([answer("alice only")]))
        await h.loop.run("alice", "hi", session_id="s1")

        result = await h.loop.run("mallory", "show me alice's chat", session_id="s1")

        assert result.status == RunStatus.ERROR
        assert "belongs to another owner" in result.answer
        assert len(h.gateway.calls) == 1
        window = await h.windows.load("s1")
        assert [m.content for m in window][-1] == "alice only"


class TestFailures:
    async def test_unexpected_error_yields_error_result(self, make_harness, dispatcher):
        """Should convert crashes into a well-formed error result without leaking internals."""
        h = make_harness(ScriptedGateway([RuntimeError("kaboom: secret stack detail")]))

        result = await h.loop.run("alice", "hi", session_id="s1")

        assert result.status == RunStatus.ERROR
        assert result.answer == GENERIC_ERROR_ANSWER
        await dispatcher.join()
        records = await h.traces.for_session("s1")
        assert len(records) == 1
        assert records[0].status == "error"
        assert "kaboom" in records[0].error

    async def test_provider_outage_degrades(self, make_harness, clock):
        """Should answer with the connection fallback when the provider stays down."""
        breaker = CircuitBreaker("model", CircuitBreakerConfig(), clock=clock)

        async def no_sleep(_):
            return None

        def wrap(inner):
            return ResilientGateway(inner, breaker, RetryPolicy(RetryConfig(max_attempts=2)), sleep=no_sleep)

        h = make_harness(ScriptedGateway([TransientProviderError("down")] * 2), wrap=wrap)

        result = await h.loop.run("alice", "hi", session_id="s1", idempotency_key="K3")

        assert result.status == RunStatus.SUCCESS
        assert result.degraded is True
        assert result.answer == CONNECTION_FALLBACK
        assert await h.idempotency.get_cached(owner_key("alice", "K3")) is None
        assert await h.idempotency.try_claim(owner_key("alice", "K3")) is True

    async def test_unrecovered_protocol_error_degrades(self, make_harness):
        """Should answer with the protocol fallback when a malformed call reaches the loop."""
        h = make_harness(ScriptedGateway([ProtocolRecoveryError("tool_use_failed", raw_payload="???")]))

        result = await h.loop.run("alice", "hi", session_id="s1")

        assert result.answer == PROTOCOL_FALLBACK
        assert result.degraded is True


class TestIdempotency:
    async def test_duplicate_key_replays_without_model_call(self, make_harness):
        """Should return the cached result for a repeated idempotency key."""
        h = make_harness(ScriptedGateway([answer("forty-two")]))

        first = await h.loop.run("alice", "question", session_id="s1", idempotency_key="K1")
        second = await h.loop.run("alice", "question", session_id="s1", idempotency_key="K1")

        assert second == first
        assert len(h.gateway.calls) == 1
        assert (await h.sessions.get_session("s1")).turn_count == 1

    async def test_error_result_releases_key(self, make_harness):
        """Should let the client retry after a failed run."""
        h = make_harness(ScriptedGateway([RuntimeError("boom"), answer("recovered")]))

        failed = await h.loop.run("alice", "q", session_id="s1", idempotency_key="K2")
        retried = await h.loop.run("alice", "q", session_id="s1", idempotency_key="K2")

        assert failed.status == RunStatus.ERROR
        assert retried.answer == "recovered"

    async def test_same_key_from_another_owner_is_not_replayed(self, make_harness):
        """Should keep one owner's cached result away from another owner."""
        h = make_harness(ScriptedGateway([answer("alice secret"), answer("bob answer")]))

        await h.loop.run("alice", "q", session_id="s-alice", idempotency_key="K1")
        bob = await h.loop.run("bob", "q", session_id="s-bob", idempotency_key="K1")

        assert bob.answer == "bob answer"
        assert bob.session_id == "s-bob"
        assert len(h.gateway.calls) == 2


class TestBackgroundFollowUps:
    async def test_exactly_one_trace_per_run(self, make_harness, dispatcher):
        """Should persist a single trace with tokens and tool previews."""
        h = make_harness(ScriptedGateway([tool_call("echo", message="x" * 500), answer("done")]))

        await h.loop.run("alice", "go", session_id="s1")
        await dispatcher.join()

        records = await h.traces.for_session("s1")
        assert len(records) == 1
        record = records[0]
        assert record.status == "success"
        assert record.iterations_used == 2
        assert record.total_tokens == 30
        assert record.tool_calls[0].name == "echo"
        assert record.tool_calls[0].result_preview.endswith("...[truncated]")

    async def test_extraction_runs_after_answer(self, make_harness, dispatcher):
        """Should extract facts from the finished conversation in the background."""
        extractor_gateway = ScriptedGateway([answer('[{"content": "Works at ACME", "tag": "fact"}]')])
        h = make_harness(ScriptedGateway([answer("Nice to meet you")]), extractor_gateway=extractor_gateway)

        result = await h.loop.run("alice", "I work at ACME", session_id="s1")
        await dispatcher.join()

        assert result.answer == "Nice to meet you"
        facts = await h.facts.load_all("alice")
        assert [(f.content, f.tag) for f in facts] == [("Works at ACME", "fact")]
        transcript = extractor_gateway.calls[0][1].content
        assert "User: I work at ACME" in transcript
        assert "Assistant: Nice to meet you" in transcript

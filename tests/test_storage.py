"""Tests for session and run-trace persistence."""

import asyncio

import pytest

from taskloop.core.models import ToolInvocation
from taskloop.errors import BackgroundTaskError, SessionOwnershipError
from taskloop.observability.trace import (
    MAX_ANSWER_CHARS,
    MAX_INPUT_CHARS,
    TRUNCATION_MARKER,
    RunContext,
    TraceRecorder,
    truncate,
)
from taskloop.storage.models import RunRecord, ToolCallSummary
from taskloop.storage.session_repo import SessionRepository
from taskloop.storage.trace_repo import TraceRepository


@pytest.fixture
def sessions(db):
    return SessionRepository(db)


@pytest.fixture
def traces(db):
    return TraceRepository(db)


class TestSessionRepository:
    async def test_first_upsert_creates_session(self, sessions):
        """Should create the session with one turn."""
        info = await sessions.upsert_session("s1", "alice")

        assert info.owner_id == "alice"
        assert info.turn_count == 1

    async def test_upsert_increments_turns(self, sessions):
        """Should count every run of the session."""
        await sessions.upsert_session("s1", "alice")
        info = await sessions.upsert_session("s1", "alice")

        assert info.turn_count == 2

    async def test_concurrent_upserts_count_every_turn(self, sessions):
        """Should not lose increments under concurrency."""
        await asyncio.gather(*(sessions.upsert_session("s1", "alice") for _ in range(10)))

        assert (await sessions.get_session("s1")).turn_count == 10

    async def test_other_owner_is_rejected(self, sessions):
        """Should refuse a session id owned by someone else and leave it untouched."""
        await sessions.upsert_session("s1", "alice")

        with pytest.raises(SessionOwnershipError):
            await sessions.upsert_session("s1", "mallory")

        info = await sessions.get_session("s1")
        assert (info.owner_id, info.turn_count) == ("alice", 1)

    async def test_listing_and_summary(self, sessions):
        """Should list an owner's sessions and update summaries owner-scoped."""
        await sessions.upsert_session("s1", "alice")
        await sessions.upsert_session("s2", "alice")
        await sessions.upsert_session("s3", "bob")

        assert await sessions.count_for_owner("alice") == 2
        assert {s.session_id for s in await sessions.list_for_owner("alice")} == {"s1", "s2"}
        assert await sessions.update_summary("s1", "bob", "hijack") is False
        assert await sessions.update_summary("s1", "alice", "planning") is True
        assert (await sessions.get_session("s1")).summary == "planning"


def _record(session_id="s1", owner_id="alice", status="success", prompt=100, completion=20, latency=300):
    return RunRecord(
        session_id=session_id,
        owner_id=owner_id,
        input="question",
        answer="answer",
        status=status,
        iterations_used=1,
        latency_ms=latency,
        prompt_tokens=prompt,
        completion_tokens=completion,
        tool_calls=[ToolCallSummary(name="echo", latency_ms=3, result_preview="Echo: hi")],
    )


class TestTraceRepository:
    async def test_save_and_load(self, traces):
        """Should round-trip the record including tool summaries."""
        trace_id = await traces.save(_record())

        [loaded] = await traces.for_session("s1")

        assert loaded.id == trace_id
        assert loaded.total_tokens == 120
        assert loaded.tool_calls == [ToolCallSummary(name="echo", latency_ms=3, result_preview="Echo: hi")]

    async def test_for_owner_lists_newest_first(self, traces):
        """Should return only the owner's runs, most recent first, up to the limit."""
        first = await traces.save(_record(session_id="s1"))
        second = await traces.save(_record(session_id="s2"))
        await traces.save(_record(session_id="s3", owner_id="bob"))

        records = await traces.for_owner("alice")

        assert [record.id for record in records] == [second, first]
        assert [record.id for record in await traces.for_owner("alice", limit=1)] == [second]

    async def test_analytics(self, traces):
        """Should aggregate latency, recent tokens and statuses per owner."""
        await traces.save(_record(latency=100))
        await traces.save(_record(latency=300, status="error", prompt=10, completion=0))
        await traces.save(_record(owner_id="bob", latency=5000))

        stats = await traces.analytics("alice")

        assert stats["total_runs"] == 2
        assert stats["avg_latency_ms"] == 200.0
        assert stats["tokens_last_24h"] == 130
        assert stats["status_breakdown"] == {"success": 1, "error": 1}

    async def test_analytics_for_unknown_owner(self, traces):
        """Should report zeros instead of failing."""
        stats = await traces.analytics("nobody")

        assert stats["total_runs"] == 0
        assert stats["avg_latency_ms"] == 0.0
        assert stats["tokens_last_24h"] == 0
        assert stats["status_breakdown"] == {}


class TestTraceRecorder:
    def test_truncate(self):
        """Should cut long text and mark the cut."""
        assert truncate("short", 10) == "short"
        assert truncate(None, 10) is None
        assert truncate("x" * 12, 10) == "x" * 10 + TRUNCATION_MARKER

    def test_build_record_truncates_fields(self, traces):
        """Should bound input, answer and tool previews."""
        ctx = RunContext(owner_id="alice", session_id="s1", input="q" * (MAX_INPUT_CHARS + 1))
        ctx.answer = "a" * (MAX_ANSWER_CHARS + 5)
        ctx.add_usage(7, 3)
        ctx.iterations = 2
        ctx.record_tool(ToolInvocation(id="c1", name="echo", result="r" * 500, latency_ms=4))

        record = TraceRecorder(traces).build_record(ctx)

        assert record.input.endswith(TRUNCATION_MARKER)
        assert len(record.input) == MAX_INPUT_CHARS + len(TRUNCATION_MARKER)
        assert record.answer.endswith(TRUNCATION_MARKER)
        assert record.tool_calls[0].result_preview.endswith(TRUNCATION_MARKER)
        assert (record.status, record.total_tokens, record.iterations_used) == ("success", 10, 2)

    def test_status_precedence(self, traces):
        """Should report errors over iteration exhaustion."""
        ctx = RunContext(owner_id="alice", session_id="s1", input="q")
        ctx.max_iterations_reached = True
        assert TraceRecorder(traces).build_record(ctx).status == "max_iterations"

        ctx.error = RuntimeError("boom")
        record = TraceRecorder(traces).build_record(ctx)
        assert record.status == "error"
        assert record.error == "boom"

    async def test_persist_wraps_storage_errors(self, db, traces):
        """Should raise a background-task error when the trace cannot be written."""
        await db.conn.execute("DROP TABLE run_traces")
        recorder = TraceRecorder(traces)

        with pytest.raises(BackgroundTaskError):
            await recorder.persist(_record())

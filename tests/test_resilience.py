"""Tests for the circuit breaker, retry schedule, resilient gateway and protocol recovery."""

import asyncio

import pytest

from conftest import ScriptedGateway, answer
from taskloop.ai.gateway import ModelGateway
from taskloop.ai.recovery import recover_tool_call
from taskloop.ai.tools.base import ToolDefinition
from taskloop.config import CircuitBreakerConfig, RetryConfig
from taskloop.core.models import ConversationMessage
from taskloop.errors import (
    ConfigurationError,
    ProtocolRecoveryError,
    ProviderRequestError,
    TransientProviderError,
)
from taskloop.resilience.breaker import BreakerState, CircuitBreaker
from taskloop.resilience.gateway import (
    CONNECTION_FALLBACK,
    PROTOCOL_FALLBACK,
    ResilientGateway,
)
from taskloop.resilience.retry import RetryPolicy

ECHO = ToolDefinition(
    name="echo",
    description="Echo a message",
    input_schema={"type": "object", "properties": {"message": {"type": "string"}}},
)
MESSAGES = [ConversationMessage.user("hi")]


@pytest.fixture
def breaker(clock):
    config = CircuitBreakerConfig(window_size=10, minimum_calls=5, failure_rate_threshold=0.5, cooldown_seconds=30)
    return CircuitBreaker("model", config, clock=clock)


class HangingGateway(ModelGateway):
    """Blocks every call until cancelled."""

    def __init__(self):
        self.entered = asyncio.Event()

    @property
    def model_name(self) -> str:
        return "hanging"

    async def chat(self, messages, tools=None):
        self.entered.set()
        await asyncio.Event().wait()


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _resilient(gateway, breaker, max_attempts=3):
    sleep = FakeSleep()
    policy = RetryPolicy(RetryConfig(max_attempts=max_attempts))
    return ResilientGateway(gateway, breaker, policy, sleep=sleep), sleep


class TestCircuitBreaker:
    def test_stays_closed_below_minimum_calls(self, breaker):
        """Should not open before the minimum number of calls is recorded."""
        for _ in range(4):
            breaker.record_failure("boom")
        assert breaker.state == BreakerState.CLOSED

    def test_opens_at_failure_threshold(self, breaker):
        """Should open once half of the window has failed."""
        for _ in range(3):
            breaker.record_success()
        for _ in range(3):
            breaker.record_failure("boom")

        assert breaker.state == BreakerState.OPEN
        assert breaker.allow_request() is False

    def test_half_open_after_cooldown_then_closes(self, breaker, clock):
        """Should admit a trial call after the cooldown and close on its success."""
        for _ in range(5):
            breaker.record_failure("boom")
        clock.advance(30)

        assert breaker.state == BreakerState.HALF_OPEN
        assert breaker.allow_request() is True
        assert breaker.allow_request() is False
        breaker.record_success()

        assert breaker.state == BreakerState.CLOSED
        assert breaker.failure_rate() == 0.0

    def test_half_open_failure_reopens(self, breaker, clock):
        """Should re-open and restart the cooldown when the trial call fails."""
        for _ in range(5):
            breaker.record_failure("boom")
        clock.advance(31)
        assert breaker.allow_request() is True
        breaker.record_failure("still down")

        assert breaker.state == BreakerState.OPEN
        clock.advance(29)
        assert breaker.state == BreakerState.OPEN

    def test_status_reports_window(self, breaker):
        """Should expose state and failure rate for diagnostics."""
        breaker.record_success()
        breaker.record_failure("boom")

        status = breaker.status()

        assert status["state"] == "closed"
        assert status["calls_in_window"] == 2
        assert status["failure_rate"] == 0.5
        assert status["last_error"] == "boom"


class TestRetryPolicy:
    def test_exponential_schedule_is_capped(self):
        """Should wait 2, 4, 8 and never more than the cap."""
        policy = RetryPolicy(RetryConfig())
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 8.0]

    def test_jitter_stays_in_bounds(self):
        """Should add at most jitter_seconds on top of the base delay."""
        policy = RetryPolicy(RetryConfig(jitter_seconds=0.5))
        delay = policy.delay_for(1)
        assert 2.0 <= delay <= 2.5


class TestResilientGateway:
    async def test_passes_through_success(self, breaker):
        """Should return the provider response untouched."""
        gateway, sleep = _resilient(ScriptedGateway([answer("hello")]), breaker)

        response = await gateway.chat(MESSAGES)

        assert response.content == "hello"
        assert response.fallback is False
        assert sleep.delays == []

    async def test_cancelled_trial_call_returns_its_permit(self, breaker, clock):
        """Should admit a new trial call after a half-open call is cancelled."""
        for _ in range(5):
            breaker.record_failure("boom")
        clock.advance(30)
        hanging = HangingGateway()
        gateway, _ = _resilient(hanging, breaker)

        task = asyncio.create_task(gateway.chat(MESSAGES))
        await hanging.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        inner = ScriptedGateway([answer("back")])
        recovered, _ = _resilient(inner, breaker)
        response = await recovered.chat(MESSAGES)

        assert response.content == "back"
        assert len(inner.calls) == 1
        assert breaker.state == BreakerState.CLOSED

    async def test_retries_transient_errors(self, breaker):
        """Should back off and retry until the provider recovers."""
        inner = ScriptedGateway([
            TransientProviderError("503", status_code=503),
            TransientProviderError("timeout"),
            answer("finally"),
        ])
        gateway, sleep = _resilient(inner, breaker)

        response = await gateway.chat(MESSAGES)

        assert response.content == "finally"
        assert sleep.delays == [2.0, 4.0]
        assert len(inner.calls) == 3

    async def test_exhausted_retries_return_connection_fallback(self, breaker):
        """Should answer with the connection fallback instead of raising."""
        inner = ScriptedGateway([TransientProviderError("down")] * 3)
        gateway, _ = _resilient(inner, breaker)

        response = await gateway.chat(MESSAGES)

        assert response.content == CONNECTION_FALLBACK
        assert response.fallback is True

    async def test_open_breaker_short_circuits(self, breaker):
        """Should not call the provider while the breaker is open."""
        for _ in range(5):
            breaker.record_failure("boom")
        inner = ScriptedGateway([answer("unused")])
        gateway, _ = _resilient(inner, breaker)

        response = await gateway.chat(MESSAGES)

        assert response.fallback is True
        assert "30 seconds" in response.content
        assert inner.calls == []

    @pytest.mark.parametrize("error", [ConfigurationError("bad key"), ProviderRequestError("bad request", 400)])
    async def test_non_retryable_errors_propagate_uncounted(self, breaker, error):
        """Should re-raise configuration and request errors without retrying or counting them."""
        inner = ScriptedGateway([error])
        gateway, sleep = _resilient(inner, breaker)

        with pytest.raises(type(error)):
            await gateway.chat(MESSAGES)

        assert len(inner.calls) == 1
        assert sleep.delays == []
        assert breaker.status()["calls_in_window"] == 0

    async def test_recovers_malformed_tool_call(self, breaker):
        """Should turn a rejected text-encoded tool call into a real one."""
        raw = '<function=echo>{"message": "hi"}</function>'
        inner = ScriptedGateway([ProtocolRecoveryError("tool_use_failed", raw_payload=raw)])
        gateway, _ = _resilient(inner, breaker)

        response = await gateway.chat(MESSAGES, [ECHO])

        assert response.is_tool_call
        assert response.tool_call.name == "echo"
        assert response.tool_call.arguments == {"message": "hi"}
        assert response.tool_call.id.startswith("call_")

    async def test_unrecoverable_payload_returns_protocol_fallback(self, breaker):
        """Should fall back when the payload names no registered tool."""
        raw = '<function=rm_rf>{"path": "/"}</function>'
        inner = ScriptedGateway([ProtocolRecoveryError("tool_use_failed", raw_payload=raw)])
        gateway, _ = _resilient(inner, breaker)

        response = await gateway.chat(MESSAGES, [ECHO])

        assert response.content == PROTOCOL_FALLBACK
        assert response.fallback is True


class TestRecoverToolCall:
    @pytest.mark.parametrize(
        "payload",
        [
            '<function=echo>{"message": "hi"}</function>',
            '<function=echo{"message": "hi"}</function>',
            '<tool_call>{"tool": "echo", "input": {"message": "hi"}}</tool_call>',
            '{"name": "echo", "arguments": "{\\"message\\": \\"hi\\"}"}',
            'Sure! {"name": "echo", "parameters": {"message": "hi"}}',
        ],
    )
    def test_known_encodings(self, payload):
        """Should extract the call from every encoding seen in practice."""
        call = recover_tool_call(payload, ["echo"], call_id="call_x")

        assert call.id == "call_x"
        assert call.name == "echo"
        assert call.arguments == {"message": "hi"}

    def test_bare_arguments_with_known_tool_name(self):
        """Should accept bare arguments when the provider reported the tool name."""
        call = recover_tool_call('{"message": "hi"}', ["echo"], tool_name="echo")

        assert call.name == "echo"
        assert call.arguments == {"message": "hi"}

    @pytest.mark.parametrize("payload", ["", "   ", "no json here", '<function=echo>{"message": </function>'])
    def test_garbage_is_unrecoverable(self, payload):
        """Should return None when nothing well-formed can be found."""
        assert recover_tool_call(payload, ["echo"]) is None

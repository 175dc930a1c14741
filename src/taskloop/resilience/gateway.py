"""ModelGateway wrapper adding retry, circuit breaking, fallback answers and protocol recovery."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from taskloop.ai.gateway import ModelGateway, ModelResponse
from taskloop.ai.recovery import recover_tool_call
from taskloop.ai.tools.base import ToolDefinition
from taskloop.core.models import ConversationMessage
from taskloop.errors import (
    ConfigurationError,
    ProtocolRecoveryError,
    ProviderRequestError,
    TransientProviderError,
)
from taskloop.log import get_logger
from taskloop.resilience.breaker import CircuitBreaker
from taskloop.resilience.retry import RetryPolicy

logger = get_logger(__name__)

CONNECTION_FALLBACK = (
    "I'm temporarily unable to process your request due to a connection issue. "
    "Please try again in a moment."
)
PROTOCOL_FALLBACK = (
    "I couldn't complete that step because the model produced a malformed tool request. "
    "Please try rephrasing your request."
)


def circuit_open_fallback(cooldown_seconds: float) -> str:
    return (
        "The AI service is currently experiencing issues. "
        f"Please try again in about {int(cooldown_seconds)} seconds."
    )


class ResilientGateway(ModelGateway):
    """Never raises for availability problems; answers with a fixed fallback instead.

    Configuration errors and non-retryable request errors still propagate: they
    are neither retried nor counted against the breaker.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        breaker: CircuitBreaker,
        retry: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._gateway = gateway
        self._breaker = breaker
        self._retry = retry
        self._sleep = sleep

    @property
    def model_name(self) -> str:
        return self._gateway.model_name

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def chat(
        self,
        messages: list[ConversationMessage],
        tools: list[ToolDefinition] | None = None,
    ) -> ModelResponse:
        attempts = self._retry.max_attempts
        for attempt in range(1, attempts + 1):
            if not self._breaker.allow_request():
                logger.warning("circuit_open_short_circuit", breaker=self._breaker.name)
                return ModelResponse(
                    content=circuit_open_fallback(self._breaker.cooldown_seconds),
                    fallback=True,
                )
            try:
                response = await self._gateway.chat(messages, tools)
            except TransientProviderError as exc:
                self._breaker.record_failure(str(exc))
                if attempt >= attempts:
                    logger.error(
                        "model_retries_exhausted",
                        breaker=self._breaker.name,
                        attempts=attempt,
                        error=str(exc),
                    )
                    return ModelResponse(content=CONNECTION_FALLBACK, fallback=True)
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "model_call_retry",
                    breaker=self._breaker.name,
                    attempt=attempt,
                    delay_seconds=delay,
                    status_code=exc.status_code,
                    error=str(exc),
                )
                await self._sleep(delay)
                continue
            except ProtocolRecoveryError as exc:
                # The provider answered; only the encoding was wrong.
                self._breaker.record_success()
                return self._recover(exc, tools)
            except (ConfigurationError, ProviderRequestError):
                self._breaker.release()
                raise
            except Exception as exc:
                self._breaker.record_failure(repr(exc))
                raise
            except BaseException:
                # Cancelled mid-call: no outcome, so hand the trial permit back.
                self._breaker.release()
                raise

            self._breaker.record_success()
            return response

        # max_attempts >= 1, every iteration returns or continues
        raise AssertionError("unreachable")

    def _recover(self, exc: ProtocolRecoveryError, tools: list[ToolDefinition] | None) -> ModelResponse:
        known = [tool.name for tool in tools or []]
        call = recover_tool_call(exc.raw_payload, known, call_id=exc.call_id, tool_name=exc.tool_name)
        if call is not None:
            return ModelResponse(tool_call=call)
        logger.warning("protocol_recovery_failed", error=str(exc))
        return ModelResponse(content=PROTOCOL_FALLBACK, fallback=True)

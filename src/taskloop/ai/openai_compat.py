"""OpenAI-compatible chat completions backend (OpenAI, Groq, Gemini's compat endpoint)."""

from __future__ import annotations

import json
from typing import Any

import httpx

from taskloop.ai.gateway import ModelGateway, ModelResponse
from taskloop.ai.tools.base import ToolDefinition
from taskloop.config import GatewayConfig, OpenAIConfig
from taskloop.core.models import ConversationMessage, ToolCall, drop_orphaned_tool_results
from taskloop.core.types import Role
from taskloop.errors import (
    ConfigurationError,
    ProtocolRecoveryError,
    ProviderRequestError,
    TransientProviderError,
)
from taskloop.log import get_logger

logger = get_logger(__name__)


def to_openai_messages(messages: list[ConversationMessage]) -> list[dict[str, Any]]:
    formatted: list[dict[str, Any]] = []
    for message in drop_orphaned_tool_results(messages):
        if message.role == Role.ASSISTANT and message.tool_calls:
            formatted.append(
                {
                    "role": "assistant",
                    "content": message.content,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments),
                            },
                        }
                        for call in message.tool_calls
                    ],
                }
            )
        elif message.role == Role.TOOL:
            formatted.append(
                {
                    "role": "tool",
                    "tool_call_id": message.tool_call_id,
                    "name": message.name,
                    "content": message.content or "",
                }
            )
        else:
            formatted.append({"role": str(message.role), "content": message.content or ""})
    return formatted


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else {}


def _parse_tool_call(raw_call: dict[str, Any]) -> ToolCall:
    function = raw_call.get("function") or {}
    call_id = raw_call.get("id") or ""
    name = function.get("name") or ""
    arguments = function.get("arguments")

    if isinstance(arguments, dict):
        return ToolCall(id=call_id, name=name, arguments=arguments)
    if not arguments or not str(arguments).strip():
        return ToolCall(id=call_id, name=name, arguments={})
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise ProtocolRecoveryError(
            f"Tool call arguments are not valid JSON: {exc}",
            raw_payload=str(arguments),
            call_id=call_id or None,
            tool_name=name or None,
        ) from exc
    if not isinstance(parsed, dict):
        raise ProtocolRecoveryError(
            "Tool call arguments are not a JSON object",
            raw_payload=str(arguments),
            call_id=call_id or None,
            tool_name=name or None,
        )
    return ToolCall(id=call_id, name=name, arguments=parsed)


class OpenAICompatGateway(ModelGateway):
    """Chat completions over plain HTTP with ``httpx``."""

    def __init__(
        self,
        config: OpenAIConfig,
        gateway_config: GatewayConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not config.api_key:
            raise ConfigurationError("openai.api_key is not set")
        self._gateway_config = gateway_config
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {config.api_key}"},
            timeout=httpx.Timeout(config.read_timeout, connect=config.connect_timeout),
            transport=transport,
        )

    @property
    def model_name(self) -> str:
        return self._gateway_config.model

    async def aclose(self) -> None:
        await self._client.aclose()

    async def chat(
        self,
        messages: list[ConversationMessage],
        tools: list[ToolDefinition] | None = None,
    ) -> ModelResponse:
        payload: dict[str, Any] = {
            "model": self.model_name,
            "messages": to_openai_messages(messages),
            "max_tokens": self._gateway_config.max_tokens,
            "temperature": self._gateway_config.temperature,
        }
        if tools:
            payload["tools"] = [tool.to_openai() for tool in tools]
            payload["tool_choice"] = "auto"

        logger.debug("api_request", model=self.model_name, message_count=len(payload["messages"]))
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Model provider timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransientProviderError(f"Connection to model provider failed: {exc}") from exc

        self._raise_for_status(response)
        body = response.json()

        usage = body.get("usage") or {}
        choices = body.get("choices") or []
        if not choices:
            raise TransientProviderError("Model provider returned no choices")
        choice = choices[0]
        message = choice.get("message") or {}

        logger.debug(
            "api_response",
            model=self.model_name,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            finish_reason=choice.get("finish_reason"),
        )

        tool_call = None
        raw_calls = message.get("tool_calls") or []
        if raw_calls:
            tool_call = _parse_tool_call(raw_calls[0])

        return ModelResponse(
            content=message.get("content"),
            tool_call=tool_call,
            prompt_tokens=usage.get("prompt_tokens", 0) or 0,
            completion_tokens=usage.get("completion_tokens", 0) or 0,
            raw=body,
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        error = _error_body(response)
        detail = error.get("message") or response.text[:500]
        if status in (401, 403, 404):
            raise ConfigurationError(f"Model provider rejected credentials or model ({status}): {detail}")
        if status == 429 or status >= 500:
            raise TransientProviderError(f"Model provider unavailable ({status}): {detail}", status_code=status)
        if status == 400 and error.get("code") == "tool_use_failed":
            raise ProtocolRecoveryError(
                f"Provider rejected a malformed tool call: {detail}",
                raw_payload=error.get("failed_generation") or "",
            )
        raise ProviderRequestError(f"Model provider rejected request ({status}): {detail}", status_code=status)

"""Model gateway abstraction with the Anthropic API backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import anthropic

from taskloop.ai.tools.base import ToolDefinition
from taskloop.config import AnthropicConfig, GatewayConfig
from taskloop.core.models import ConversationMessage, ToolCall, drop_orphaned_tool_results
from taskloop.core.types import Role
from taskloop.errors import ConfigurationError, ProviderRequestError, TransientProviderError
from taskloop.log import get_logger

logger = get_logger(__name__)


@dataclass
class ModelResponse:
    """Unified response from any model backend.

    Exactly one of ``content`` / ``tool_call`` drives the loop; when the model
    both talks and requests a tool, the tool call wins.
    """

    content: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    fallback: bool = False  # synthesised locally, the provider was not (successfully) consulted
    raw: Any = None

    @property
    def is_tool_call(self) -> bool:
        return self.tool_call is not None


class ModelGateway(ABC):
    """Abstract chat-completion backend."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    async def chat(
        self,
        messages: list[ConversationMessage],
        tools: list[ToolDefinition] | None = None,
    ) -> ModelResponse:
        """Send the conversation and return a final answer or a tool-call decision.

        Raises the ``taskloop.errors`` taxonomy, never SDK-specific exceptions.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources held by the backend."""
        return None


def to_anthropic_messages(
    messages: list[ConversationMessage],
) -> tuple[str, list[dict[str, Any]]]:
    """Convert the conversation to the Anthropic ``(system, messages)`` pair."""
    system_parts: list[str] = []
    formatted: list[dict[str, Any]] = []

    for message in drop_orphaned_tool_results(messages):
        if message.role == Role.SYSTEM:
            if message.content:
                system_parts.append(message.content)
            continue

        if message.role == Role.USER:
            formatted.append({"role": "user", "content": message.content or ""})
            continue

        # The API requires the first turn to come from the user.
        if not formatted:
            continue

        if message.role == Role.ASSISTANT:
            if message.tool_calls:
                blocks: list[dict[str, Any]] = []
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                for call in message.tool_calls:
                    blocks.append(
                        {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
                    )
                formatted.append({"role": "assistant", "content": blocks})
            elif message.content:
                formatted.append({"role": "assistant", "content": message.content})
            continue

        # Role.TOOL
        block = {
            "type": "tool_result",
            "tool_use_id": message.tool_call_id,
            "content": message.content or "",
        }
        previous = formatted[-1]
        if (
            previous["role"] == "user"
            and isinstance(previous["content"], list)
            and all(item.get("type") == "tool_result" for item in previous["content"])
        ):
            previous["content"].append(block)
        else:
            formatted.append({"role": "user", "content": [block]})

    return "\n\n".join(system_parts), formatted


def _translate_anthropic_error(exc: anthropic.APIError) -> Exception:
    if isinstance(exc, (anthropic.APITimeoutError, anthropic.APIConnectionError)):
        return TransientProviderError(f"Connection to model provider failed: {exc}")
    if isinstance(
        exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError, anthropic.NotFoundError)
    ):
        return ConfigurationError(f"Model provider rejected credentials or model: {exc}")
    if isinstance(exc, anthropic.APIStatusError):
        status = exc.status_code
        if status == 429 or status >= 500:
            return TransientProviderError(f"Model provider unavailable: {exc}", status_code=status)
        return ProviderRequestError(f"Model provider rejected request: {exc}", status_code=status)
    return TransientProviderError(f"Model provider error: {exc}")


class AnthropicGateway(ModelGateway):
    """Anthropic API backend using the official SDK."""

    def __init__(
        self,
        config: AnthropicConfig,
        gateway_config: GatewayConfig,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        if client is None and not config.api_key:
            raise ConfigurationError("anthropic.api_key is not set")
        self._client = client or anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )
        self._gateway_config = gateway_config

    @property
    def model_name(self) -> str:
        return self._gateway_config.model

    async def aclose(self) -> None:
        await self._client.close()

    async def chat(
        self,
        messages: list[ConversationMessage],
        tools: list[ToolDefinition] | None = None,
    ) -> ModelResponse:
        system, formatted = to_anthropic_messages(messages)
        kwargs: dict[str, Any] = {
            "model": self._gateway_config.model,
            "max_tokens": self._gateway_config.max_tokens,
            "messages": formatted,
            "temperature": self._gateway_config.temperature,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [tool.to_anthropic() for tool in tools]

        logger.debug("api_request", model=self.model_name, message_count=len(formatted))
        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIError as exc:
            raise _translate_anthropic_error(exc) from exc

        logger.debug(
            "api_response",
            model=self.model_name,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=response.stop_reason,
        )

        text_parts: list[str] = []
        tool_call: ToolCall | None = None
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use" and tool_call is None:
                tool_call = ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))

        return ModelResponse(
            content="\n".join(text_parts) if text_parts else None,
            tool_call=tool_call,
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
            raw=response,
        )

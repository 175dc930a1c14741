"""Conversation and run models exchanged between the loop, gateways and caches."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from taskloop.core.types import Role, RunStatus


class ToolCall(BaseModel):
    """A model-issued request to invoke a named tool.

    ``id`` is the provider's call id and must be echoed unchanged in the
    matching tool-result message.
    """

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ConversationMessage(BaseModel):
    role: Role
    content: Optional[str] = None
    tool_calls: Optional[list[ToolCall]] = None  # assistant turns that requested a tool
    tool_call_id: Optional[str] = None  # tool turns
    name: Optional[str] = None  # tool turns

    @classmethod
    def system(cls, content: str) -> "ConversationMessage":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "ConversationMessage":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "ConversationMessage":
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def assistant_tool_call(cls, call: ToolCall) -> "ConversationMessage":
        return cls(role=Role.ASSISTANT, content=None, tool_calls=[call])

    @classmethod
    def tool_result(cls, call: ToolCall, observation: str) -> "ConversationMessage":
        return cls(role=Role.TOOL, content=observation, tool_call_id=call.id, name=call.name)


class ToolInvocation(BaseModel):
    """One executed tool call as recorded for the run trace."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: str = ""
    latency_ms: int = 0


class RunResult(BaseModel):
    """Caller-visible outcome of one agent run. Always well formed."""

    answer: str
    tool_calls_executed: list[ToolCall] = Field(default_factory=list)
    iterations_used: int = 0
    max_iterations_reached: bool = False
    session_id: str
    status: RunStatus = RunStatus.SUCCESS
    degraded: bool = False


def drop_orphaned_tool_results(messages: list[ConversationMessage]) -> list[ConversationMessage]:
    """Remove tool results whose call id was never issued earlier in *messages*.

    A sliding-window cut can leave a tool result at the front of the history
    without the assistant turn that requested it; providers reject that.
    """
    issued: set[str] = set()
    kept: list[ConversationMessage] = []
    for message in messages:
        if message.role == Role.ASSISTANT and message.tool_calls:
            issued.update(call.id for call in message.tool_calls)
        if message.role == Role.TOOL and message.tool_call_id not in issued:
            continue
        kept.append(message)
    return kept

"""Exception taxonomy shared by gateways, tools and the agent loop.

The resilience layer decides retry and circuit-breaker accounting purely by
exception class, so gateways must translate SDK/HTTP failures into these types.
"""

from __future__ import annotations

from typing import Optional


class AgentError(Exception):
    """Base class for all runtime errors raised by taskloop."""


class ConfigurationError(AgentError):
    """Bad credentials, unknown model or missing settings. Never retried."""


class TransientProviderError(AgentError):
    """Timeout, connection failure, 5xx or rate limit from the model provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderRequestError(AgentError):
    """Non-retryable 4xx rejection that is not a credentials problem."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolRecoveryError(AgentError):
    """The provider produced a tool call that could not be decoded.

    ``raw_payload`` holds whatever the provider generated so that a local
    parser can try to salvage a valid call from it.
    """

    def __init__(
        self,
        message: str,
        raw_payload: str = "",
        call_id: Optional[str] = None,
        tool_name: Optional[str] = None,
    ):
        super().__init__(message)
        self.raw_payload = raw_payload
        self.call_id = call_id
        self.tool_name = tool_name


class ToolExecutionError(AgentError):
    """A tool failed; converted into an ``ERROR: ...`` observation by the registry."""


class ToolAuthorizationError(ToolExecutionError):
    """A tool refused an operation before performing any side effect."""


class BackgroundTaskError(AgentError):
    """Failure inside extraction, embedding or trace persistence. Logged only."""


class SessionOwnershipError(AgentError):
    """A session id already belongs to a different owner."""

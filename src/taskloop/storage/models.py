"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse the ISO text written by SQLite ``strftime`` as an aware UTC datetime."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class SessionInfo:
    session_id: str
    owner_id: str
    turn_count: int = 0
    summary: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class MemoryFact:
    owner_id: str
    content: str
    tag: str  # "fact" | "preference" | "task" | "context"
    source_session_id: Optional[str] = None
    embedding: Optional[list[float]] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class ToolCallSummary:
    name: str
    latency_ms: int
    result_preview: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "latencyMs": self.latency_ms,
            "resultPreview": self.result_preview,
        }


@dataclass
class RunRecord:
    session_id: str
    owner_id: str
    input: str
    answer: Optional[str]
    status: str  # "success" | "max_iterations" | "error"
    iterations_used: int = 0
    latency_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tool_calls: list[ToolCallSummary] = field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

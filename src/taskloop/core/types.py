"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FactTag(StrEnum):
    FACT = "fact"
    PREFERENCE = "preference"
    TASK = "task"
    CONTEXT = "context"

    @classmethod
    def normalize(cls, value: str | None) -> "FactTag":
        """Map free-form tags from the model onto a known tag, defaulting to FACT."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.FACT


class RunStatus(StrEnum):
    SUCCESS = "success"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"

"""Per-run scope visible to tools executing inside that run."""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass(frozen=True)
class RunScope:
    owner_id: str
    session_id: str


_current: ContextVar[Optional[RunScope]] = ContextVar("taskloop_run_scope", default=None)


def current_scope() -> Optional[RunScope]:
    return _current.get()


@contextmanager
def run_scope(owner_id: str, session_id: str) -> Iterator[RunScope]:
    scope = RunScope(owner_id=owner_id, session_id=session_id)
    token = _current.set(scope)
    try:
        yield scope
    finally:
        _current.reset(token)

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context-local (safe for async & threads)
_current_run_id: ContextVar[Optional[str]] = ContextVar("current_run_id", default=None)
_current_cycle_id: ContextVar[Optional[str]] = ContextVar(
    "current_cycle_id", default=None
)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def set_run_id(run_id: str) -> None:
    _current_run_id.set(run_id)


def get_run_id() -> Optional[str]:
    return _current_run_id.get()


def get_cycle_id() -> Optional[str]:
    return _current_cycle_id.get()


@contextmanager
def scheduler_cycle(cycle_id: Optional[str] = None) -> Iterator[str]:
    """Binds a fresh cycle id for one scheduler tick (evaluation or queue pass)."""
    cid = cycle_id or new_id()
    token = _current_cycle_id.set(cid)
    try:
        yield cid
    finally:
        _current_cycle_id.reset(token)

# app/core/run_context.py
from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

# One id per ingestion or tracker run; stamped on every log line.
_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("mention_run_id", default=None)


def new_run_id() -> str:
    return uuid.uuid4().hex[:16]


def get_run_id() -> Optional[str]:
    return _run_id.get()


@contextmanager
def with_run_id(run_id: Optional[str] = None) -> Iterator[str]:
    """
    Scope a worker run:

        with with_run_id() as rid:
            await run_ingest(...)
    """
    token = _run_id.set(run_id or new_run_id())
    try:
        yield _run_id.get()
    finally:
        _run_id.reset(token)

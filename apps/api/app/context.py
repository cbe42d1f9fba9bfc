from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def correlation_scope(prefix: str = "job") -> Iterator[str]:
    """Reuse the current correlation id, or bind a fresh one for background work."""
    current = get_correlation_id()
    if current:
        yield current
        return
    token = set_correlation_id(f"{prefix}-{uuid.uuid4().hex}")
    try:
        yield correlation_id_var.get() or ""
    finally:
        reset_correlation_id(token)

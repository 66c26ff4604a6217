"""
Correlation IDs for fleet operations.

Every log line written while handling one status report, one command send or one
CLI run carries the same ID. The ID lives in a ContextVar, so each member send of
a gathered group command sees its own value.
"""

from __future__ import annotations

import contextvars
import secrets
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

__all__ = [
    "correlation_context",
    "ensure_correlation_id",
    "generate_correlation_id",
    "generate_request_id",
    "get_correlation_id",
    "set_correlation_id",
]

_active_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("fleet_correlation_id", default=None)

REQUEST_ID_PREFIX = "req"
REQUEST_ID_SUFFIX_LEN = 9


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def generate_request_id() -> str:
    """
    New request id for an outbound command: ``req_<epoch ms>_<9 hex chars>``.

    Sorting by id roughly sorts by send time.
    """
    millis = time.time_ns() // 1_000_000
    suffix = secrets.token_hex(REQUEST_ID_SUFFIX_LEN // 2 + 1)[:REQUEST_ID_SUFFIX_LEN]
    return f"{REQUEST_ID_PREFIX}_{millis}_{suffix}"


def get_correlation_id() -> str | None:
    return _active_id.get()


def set_correlation_id(value: str | None) -> None:
    """Replace the current context's ID; None clears it."""
    _ = _active_id.set(value)


@contextmanager
def correlation_context(
    correlation_id: str | None = None,
    auto_generate: bool = True,
) -> Iterator[str | None]:
    """
    Bind a correlation ID for the duration of a ``with`` block.

    Args:
        correlation_id: Value to bind, e.g. a device id or a command request id
        auto_generate: When ``correlation_id`` is None, bind a fresh UUID instead of None

    The previous binding is restored on exit, including when the block raises.
    """
    if correlation_id is None and auto_generate:
        correlation_id = generate_correlation_id()
    token = _active_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _active_id.reset(token)


def ensure_correlation_id() -> str:
    """Current ID, binding a new one first if nothing is bound."""
    existing = _active_id.get()
    if existing is not None:
        return existing
    created = generate_correlation_id()
    _ = _active_id.set(created)
    return created

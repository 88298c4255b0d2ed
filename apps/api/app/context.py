from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
# Set while automation steps run: the depth any event they cause will carry.
trigger_depth_var: ContextVar[int | None] = ContextVar("trigger_depth", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_trigger_depth() -> int | None:
    return trigger_depth_var.get()


@contextmanager
def trigger_scope(depth: int, correlation_id: str | None = None) -> Iterator[None]:
    """Run a block on behalf of an automation run.

    Events emitted inside the block are stamped with ``depth`` and, when given,
    the run's correlation id replaces the ambient one.
    """
    depth_token = trigger_depth_var.set(depth)
    correlation_token = correlation_id_var.set(correlation_id) if correlation_id else None
    try:
        yield
    finally:
        if correlation_token is not None:
            correlation_id_var.reset(correlation_token)
        trigger_depth_var.reset(depth_token)


def get_log_context() -> dict[str, str | int | None]:
    return {"correlation_id": get_correlation_id(), "trigger_depth": get_trigger_depth()}

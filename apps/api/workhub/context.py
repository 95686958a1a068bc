from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
field_scope_var: ContextVar[str | None] = ContextVar("field_scope", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_field_scope() -> str | None:
    return field_scope_var.get()


@contextmanager
def bind_field_scope(label: str) -> Iterator[str]:
    """Tags log records and audit entries emitted inside the block with a scope label such as ``project:p1``."""
    token = field_scope_var.set(label)
    try:
        yield label
    finally:
        field_scope_var.reset(token)


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "scope": get_field_scope()}

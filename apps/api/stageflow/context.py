from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
actor_user_id_var: ContextVar[str | None] = ContextVar("actor_user_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_actor_user_id(value: str | None) -> Token[str | None]:
    return actor_user_id_var.set(value)


def get_actor_user_id() -> str | None:
    return actor_user_id_var.get()


@contextmanager
def bound_context(*, correlation_id: str | None = None, actor_user_id: str | None = None) -> Iterator[None]:
    """Bind log context outside a request, e.g. inside a Celery task."""
    correlation_token = correlation_id_var.set(correlation_id)
    actor_token = actor_user_id_var.set(actor_user_id)
    try:
        yield
    finally:
        actor_user_id_var.reset(actor_token)
        correlation_id_var.reset(correlation_token)

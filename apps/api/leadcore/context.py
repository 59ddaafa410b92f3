from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
provider_id_var: ContextVar[str | None] = ContextVar("provider_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_provider_id(value: str | None) -> Token[str | None]:
    return provider_id_var.set(value)


def reset_provider_id(token: Token[str | None]) -> None:
    provider_id_var.reset(token)


def get_provider_id() -> str | None:
    return provider_id_var.get()


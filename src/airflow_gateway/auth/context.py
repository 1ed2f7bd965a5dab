"""Request-scoped authentication context."""

from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field

from .principal import Principal


@dataclass(frozen=True)
class RequestContext:
    """Immutable request-scoped context.

    Holds only the resolved principal; the bearer token and raw claims are
    dropped once the principal has been built.
    """

    principal: Principal
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def user_id(self) -> str:
        return self.principal.subject_id

    def __repr__(self) -> str:
        return (
            f"RequestContext("
            f"user_id={self.principal.subject_id!r}, "
            f"username={self.principal.username!r}, "
            f"roles={self.principal.roles!r}, "
            f"request_id={self.request_id!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


_request_context: ContextVar[RequestContext | None] = ContextVar(
    "request_context",
    default=None,
)


def set_request_context(ctx: RequestContext) -> Token[RequestContext | None]:
    """Set context and return reset token."""
    return _request_context.set(ctx)


def reset_request_context(token: Token[RequestContext | None]) -> None:
    """Reset context using token from set_request_context()."""
    _request_context.reset(token)


def get_request_context() -> RequestContext:
    """Get context or raise RuntimeError."""
    ctx = _request_context.get()
    if ctx is None:
        raise RuntimeError("No request context set")
    return ctx

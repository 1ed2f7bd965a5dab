"""Error taxonomy shared by the gateway components.

Every error raised towards a client derives from ``GatewayError`` and knows
its HTTP status, a short title and a human-readable detail. The HTTP layer
renders them as ``{"status", "message", "detail"}``.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    status: int = 500
    title: str = "Unexpected Error"

    def __init__(self, detail: str, *, kind: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.kind = kind

    def to_body(self) -> dict[str, Any]:
        return {"status": self.status, "message": self.title, "detail": self.detail}


class AuthError(GatewayError):
    """Authentication failure.

    Kinds: ``unauthenticated``, ``invalid_credentials``, ``client_misconfigured``.
    """

    status = 401
    KINDS = frozenset({"unauthenticated", "invalid_credentials", "client_misconfigured"})

    def __init__(self, kind: str, detail: str) -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown auth error kind: {kind}")
        super().__init__(detail, kind=kind)

    @property
    def title(self) -> str:  # type: ignore[override]
        if self.kind == "client_misconfigured":
            return "Authentication Failed"
        return "Authentication Error"


class AccessDenied(GatewayError):
    status = 403
    title = "Access Denied"

    def __init__(
        self, detail: str = "You don't have permission to access this resource"
    ) -> None:
        super().__init__(detail)


class NotFound(GatewayError):
    status = 404
    title = "Resource Not Found"

    def __init__(self, resource: str, resource_id: str, detail: str | None = None) -> None:
        super().__init__(detail or f"{resource} not found: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class Conflict(GatewayError):
    status = 409
    title = "Conflict"

    def __init__(
        self,
        resource: str,
        resource_id: str,
        action: str,
        detail: str | None = None,
    ) -> None:
        super().__init__(detail or f"Conflict on {action} {resource}: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id
        self.action = action


class BadRequest(GatewayError):
    status = 400
    title = "Bad Request"


class UpstreamError(GatewayError):
    """Upstream unavailable or misconfigured.

    Kinds: ``transport``, ``timeout``, ``credentials``, ``invalid_response``.
    Always surfaces as a 500; a rejected upstream credential is our
    misconfiguration, not the caller's.
    """

    status = 500
    title = "Upstream Error"

    def __init__(self, kind: str, detail: str) -> None:
        super().__init__(detail, kind=kind)


class StorageError(GatewayError):
    status = 500
    title = "Storage Error"

    def __init__(self, kind: str, detail: str) -> None:
        super().__init__(detail, kind=kind)


class InternalError(GatewayError):
    status = 500
    title = "Unexpected Error"

    def __init__(
        self,
        detail: str = "Your request could not be processed. Please try again later.",
    ) -> None:
        super().__init__(detail)

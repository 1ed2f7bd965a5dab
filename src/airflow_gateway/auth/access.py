"""Route gate and audit query gate."""

from __future__ import annotations

from .principal import Principal

API_PREFIX = "/api/v1"

PUBLIC_PATHS = frozenset(
    {
        "/health",
        "/ready",
        f"{API_PREFIX}/auth/login",
        f"{API_PREFIX}/auth/token",
    }
)

# API documentation
PUBLIC_PREFIXES = ("/api-docs", "/swagger-ui")


def is_public_path(path: str) -> bool:
    """True when ``path`` may be served without a bearer token."""
    if path in PUBLIC_PATHS:
        return True
    return any(path == prefix or path.startswith(prefix + "/") for prefix in PUBLIC_PREFIXES)


def audit_subject_filter(principal: Principal) -> str | None:
    """Subject to restrict audit queries to; ``None`` means unrestricted."""
    return None if principal.is_admin else principal.subject_id

"""Shared HTTP utilities."""

from __future__ import annotations

from urllib.parse import urlparse

from starlette.requests import Request

_BASE_URL_ALLOWED_SCHEMES = frozenset({"http", "https"})


def normalize_base_url(value: str, *, label: str = "base_url") -> str:
    """Normalize and validate a configured service base URL."""
    candidate = value.strip()
    if not candidate:
        raise ValueError(f"{label} must not be empty")

    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in _BASE_URL_ALLOWED_SCHEMES:
        raise ValueError(f"{label} must use http or https")
    if not parsed.netloc:
        raise ValueError(f"{label} must include host")
    if parsed.query or parsed.fragment:
        raise ValueError(f"{label} must not include query or fragment")
    if parsed.username or parsed.password:
        raise ValueError(f"{label} must not include userinfo")

    normalized_path = parsed.path.rstrip("/")
    return f"{parsed.scheme.lower()}://{parsed.netloc}{normalized_path}"


def get_client_ip(request: Request) -> str:
    """Peer address for request logs. Forwarded headers are not trusted."""
    if request.client:
        return request.client.host
    return "unknown"

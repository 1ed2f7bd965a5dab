"""Sensitive-field names and the placeholder used when redacting them."""

from __future__ import annotations

REDACTED = "[PROTECTED]"

# Fields that must never appear in logs
SENSITIVE_FIELDS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "secret",
        "client_secret",
        "password",
        "credential",
        "authorization",
    }
)

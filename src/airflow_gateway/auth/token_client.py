"""Keycloak token-endpoint client: password login, refresh and admin tokens."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from airflow_gateway.errors import AuthError, UpstreamError
from airflow_gateway.utils.masking import REDACTED

logger = logging.getLogger(__name__)

ADMIN_CLIENT_ID = "admin-cli"

_ALLOWED_TOKEN_FIELDS = frozenset(
    {
        "access_token",
        "refresh_token",
        "expires_in",
        "refresh_expires_in",
        "token_type",
        "scope",
    }
)

_CLIENT_ERROR_MARKERS = ("unauthorized_client", "invalid_client", "Invalid client")
_GRANT_ERROR_MARKERS = ("invalid_grant", "Invalid user credentials")


def _filter_token_response(payload: dict[str, Any]) -> dict[str, Any]:
    """Return only standard OAuth fields from an upstream token response."""
    return {k: v for k, v in payload.items() if k in _ALLOWED_TOKEN_FIELDS}


@dataclass(frozen=True)
class TokenPair:
    access_token: str = field(repr=False)
    refresh_token: str | None = field(repr=False)
    expires_in_seconds: int
    token_type: str = "Bearer"
    refresh_expires_in_seconds: int | None = None
    scope: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenPair":
        filtered = _filter_token_response(payload)
        access_token = filtered.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise UpstreamError("invalid_response", "Token response has no access token")
        try:
            expires_in = int(filtered.get("expires_in") or 0)
            refresh_expires_in = filtered.get("refresh_expires_in")
            refresh_expires = int(refresh_expires_in) if refresh_expires_in is not None else None
        except (TypeError, ValueError) as exc:
            raise UpstreamError("invalid_response", "Token response has invalid expiry") from exc
        return cls(
            access_token=access_token,
            refresh_token=filtered.get("refresh_token"),
            expires_in_seconds=expires_in,
            token_type=filtered.get("token_type") or "Bearer",
            refresh_expires_in_seconds=refresh_expires,
            scope=filtered.get("scope"),
        )

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in_seconds,
            "token_type": self.token_type,
        }
        return {k: v for k, v in body.items() if v is not None}

    def __repr__(self) -> str:
        return (
            f"TokenPair(access_token={REDACTED}, refresh_token={REDACTED}, "
            f"expires_in_seconds={self.expires_in_seconds!r}, "
            f"token_type={self.token_type!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


class TokenClient:
    """Exchanges credentials or refresh tokens at the realm token endpoint."""

    def __init__(
        self,
        token_endpoint: str,
        client_id: str,
        client_secret: str,
        admin_token_endpoint: str,
        admin_username: str,
        admin_password: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.token_endpoint = token_endpoint
        self.admin_token_endpoint = admin_token_endpoint
        self._client_id = client_id
        self._client_secret = client_secret
        self._admin_username = admin_username
        self._admin_password = admin_password
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    def __repr__(self) -> str:
        return f"TokenClient(token_endpoint={self.token_endpoint!r}, client_id={self._client_id!r})"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def login(self, username: str, password: str) -> TokenPair:
        form = {
            "grant_type": "password",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "username": username,
            "password": password,
        }
        payload = await self._request_token(self.token_endpoint, form, operation="login")
        logger.debug("Login succeeded for %s", username)
        return TokenPair.from_payload(payload)

    async def refresh(self, refresh_token: str) -> TokenPair:
        form = {
            "grant_type": "refresh_token",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
        }
        payload = await self._request_token(self.token_endpoint, form, operation="refresh")
        return TokenPair.from_payload(payload)

    async def admin_token(self) -> str:
        """Admin-scoped access token for the user-sync worker."""
        form = {
            "grant_type": "password",
            "client_id": ADMIN_CLIENT_ID,
            "username": self._admin_username,
            "password": self._admin_password,
        }
        payload = await self._request_token(self.admin_token_endpoint, form, operation="admin")
        return TokenPair.from_payload(payload).access_token

    async def _request_token(
        self,
        endpoint: str,
        form: dict[str, str],
        *,
        operation: str,
    ) -> dict[str, Any]:
        try:
            resp = await self._client.post(endpoint, data=form)
        except httpx.TimeoutException as exc:
            logger.warning("IdP token request timed out: operation=%s", operation)
            raise UpstreamError("timeout", "Identity provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("IdP token request failed: operation=%s error=%s", operation, exc)
            raise UpstreamError("transport", "Identity provider is unreachable") from exc

        if resp.status_code != 200:
            raise _map_token_error(resp.status_code, resp.text, operation)

        try:
            payload = resp.json()
        except ValueError as exc:
            logger.warning("IdP token endpoint returned non-JSON response: operation=%s", operation)
            raise UpstreamError("invalid_response", "Identity provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise UpstreamError("invalid_response", "Identity provider returned invalid JSON")
        return payload


def _map_token_error(status_code: int, body: str, operation: str) -> Exception:
    """Translate a non-200 token-endpoint response. The body is never logged."""
    if status_code >= 500:
        logger.warning("IdP token endpoint error: operation=%s status=%s", operation, status_code)
        return UpstreamError("transport", f"Identity provider error (status {status_code})")

    if any(marker in body for marker in _CLIENT_ERROR_MARKERS):
        logger.warning(
            "IdP rejected client credentials: operation=%s status=%s", operation, status_code
        )
        return AuthError("client_misconfigured", "Invalid client credentials")

    if any(marker in body for marker in _GRANT_ERROR_MARKERS):
        logger.debug("IdP rejected grant: operation=%s status=%s", operation, status_code)
        if operation == "refresh":
            return AuthError("invalid_credentials", "Refresh token is invalid or expired")
        return AuthError("invalid_credentials", "Invalid username or password")

    logger.debug("IdP token request rejected: operation=%s status=%s", operation, status_code)
    return AuthError("invalid_credentials", "Login failed. Please check your credentials.")

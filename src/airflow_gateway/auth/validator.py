"""JWT bearer-token validator backed by the IdP's published signing keys."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

import httpx
import jwt

logger = logging.getLogger(__name__)


class TokenValidationError(Exception):
    """Token validation failure with error code."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class JWKSClient:
    """Signing-key cache keyed by ``kid``.

    The key map is replaced wholesale on refresh, so lookups never need the
    lock; only fetches are serialized.
    """

    def __init__(
        self,
        jwks_uri: str,
        ttl_seconds: int = 3600,
        failure_backoff_seconds: int = 60,
        max_retries: int = 3,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.jwks_uri = jwks_uri
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self.ttl_seconds = ttl_seconds
        self.failure_backoff_seconds = failure_backoff_seconds
        self.max_retries = max(1, max_retries)
        self._keys: Mapping[str | None, Any] = MappingProxyType({})
        self._last_fetch: datetime | None = None
        self._last_failure: datetime | None = None
        self._lock = asyncio.Lock()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_signing_key(self, kid: str | None) -> Any:
        """Get signing key by kid, refreshing on TTL expiry or kid miss."""
        if self._should_refresh():
            async with self._lock:
                if self._should_refresh():
                    await self._refresh_jwks()

        keys = self._keys
        if not keys:
            raise TokenValidationError("No keys in JWKS", "jwks_error")

        if kid is None:
            # No kid in header, use first key
            return next(iter(keys.values()))

        if kid in keys:
            return keys[kid]

        # Kid not found, likely key rotation
        async with self._lock:
            if kid not in self._keys:
                await self._refresh_jwks(force=True)
        key = self._keys.get(kid)
        if key is None:
            raise TokenValidationError("Signing key not found", "key_not_found")
        return key

    @staticmethod
    def _jwk_to_key(jwk: dict[str, Any]) -> Any:
        """Convert JWK to appropriate key object based on key type."""
        kty = str(jwk.get("kty", "")).upper()

        if kty == "RSA":
            return jwt.algorithms.RSAAlgorithm.from_jwk(jwk)
        if kty == "EC":
            return jwt.algorithms.ECAlgorithm.from_jwk(jwk)
        raise TokenValidationError(
            f"Unsupported key type: {kty}. Supported: RSA, EC",
            "unsupported_key_type",
        )

    def _should_refresh(self) -> bool:
        if not self._keys or self._last_fetch is None:
            return self._can_retry()
        age = (datetime.now(timezone.utc) - self._last_fetch).total_seconds()
        return age >= self.ttl_seconds

    def _can_retry(self) -> bool:
        if self._last_failure is None:
            return True
        elapsed = (datetime.now(timezone.utc) - self._last_failure).total_seconds()
        return elapsed >= self.failure_backoff_seconds

    async def _refresh_jwks(self, force: bool = False) -> None:
        """Refresh JWKS from remote. Caller holds the lock."""
        if not force and not self._can_retry():
            logger.debug("JWKS refresh skipped (backoff)")
            return

        for attempt in range(self.max_retries):
            try:
                resp = await self._client.get(self.jwks_uri)
                resp.raise_for_status()
                document = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("JWKS fetch attempt %d failed: %s", attempt + 1, e)
                if attempt == self.max_retries - 1:
                    self._last_failure = datetime.now(timezone.utc)
                    if not self._keys:
                        raise TokenValidationError(
                            f"JWKS fetch failed: {e}", "jwks_error"
                        ) from e
                    return
                await asyncio.sleep(min(2**attempt, 30))
                continue

            keys: dict[str | None, Any] = {}
            for jwk in document.get("keys", []) if isinstance(document, dict) else []:
                if jwk.get("use", "sig") != "sig":
                    continue
                try:
                    keys[jwk.get("kid")] = self._jwk_to_key(jwk)
                except (TokenValidationError, ValueError, KeyError) as e:
                    logger.debug("Skipping unusable JWK %s: %s", jwk.get("kid"), e)
            self._keys = MappingProxyType(keys)
            self._last_fetch = datetime.now(timezone.utc)
            self._last_failure = None
            logger.info("JWKS refreshed from %s (%d keys)", self.jwks_uri, len(keys))
            return


class TokenValidator:
    """
    Validator for bearer tokens issued by a single IdP realm.

    - JWT format detection (rejects opaque tokens)
    - alg=none rejection and algorithm allowlist
    - signature check against keys from the discovery document's ``jwks_uri``
    - ``iss`` must equal the configured issuer
    - exp/nbf/iat windows with configurable leeway
    """

    def __init__(
        self,
        issuer: str,
        allowed_algorithms: tuple[str, ...] = ("RS256",),
        clock_skew_seconds: int = 30,
        jwks_ttl_seconds: int = 3600,
        jwks_uri: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.issuer = issuer.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self.allowed_algorithms = allowed_algorithms
        self.clock_skew_seconds = clock_skew_seconds
        self._jwks_ttl_seconds = jwks_ttl_seconds
        self._jwks_uri = jwks_uri
        self._jwks_client: JWKSClient | None = None
        self._init_lock = asyncio.Lock()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def initialize(self) -> None:
        """Discover the JWKS URI (if needed) and build the key cache."""
        if self._jwks_client is not None:
            return

        async with self._init_lock:
            if self._jwks_client is not None:
                return
            if not self._jwks_uri:
                self._jwks_uri = await self._discover_jwks_uri()
            self._jwks_client = JWKSClient(
                self._jwks_uri,
                ttl_seconds=self._jwks_ttl_seconds,
                http_client=self._client,
            )
            logger.info("Token validator initialized for issuer %s", self.issuer)

    async def _discover_jwks_uri(self) -> str:
        url = f"{self.issuer}/.well-known/openid-configuration"

        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
            doc = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TokenValidationError(f"OIDC discovery failed: {e}", "discovery_error") from e

        jwks_uri = doc.get("jwks_uri") if isinstance(doc, dict) else None
        if not jwks_uri:
            raise TokenValidationError("Missing jwks_uri in discovery", "discovery_error")

        logger.info("Discovered JWKS URI for %s: %s", self.issuer, jwks_uri)
        return str(jwks_uri)

    @staticmethod
    def _is_jwt_format(token: str) -> bool:
        """Check if token is in JWT format (3 dot-separated base64 parts)."""
        if not token:
            return False

        parts = token.split(".")
        if len(parts) != 3:
            return False

        for part in parts[:2]:
            if not part:
                return False
            remainder = len(part) % 4
            if remainder:
                part += "=" * (4 - remainder)
            try:
                json.loads(base64.urlsafe_b64decode(part))
            except (binascii.Error, ValueError):
                return False

        return True

    async def validate(self, token: str) -> dict[str, Any]:
        """
        Validate a bearer token and return its claims.

        Raises TokenValidationError on any validation failure.
        """
        if not self._is_jwt_format(token):
            raise TokenValidationError("Token is not in JWT format", "invalid_token")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.exceptions.DecodeError as e:
            raise TokenValidationError(f"Invalid token header: {e}", "invalid_token") from e

        alg = str(header.get("alg", ""))
        if alg.lower() == "none":
            raise TokenValidationError("Algorithm 'none' is not allowed", "invalid_algorithm")
        if alg not in self.allowed_algorithms:
            raise TokenValidationError(f"Algorithm '{alg}' not allowed", "invalid_algorithm")

        await self.initialize()
        if self._jwks_client is None:
            raise TokenValidationError("Validator not initialized", "internal_error")

        try:
            key = await self._jwks_client.get_signing_key(header.get("kid"))
        except TokenValidationError:
            raise
        except Exception as e:
            raise TokenValidationError(f"Failed to get signing key: {e}", "key_error") from e

        # Keycloak access tokens carry aud=account or none at all; audience is not checked.
        try:
            return jwt.decode(
                token,
                key,
                algorithms=list(self.allowed_algorithms),
                issuer=self.issuer,
                leeway=self.clock_skew_seconds,
                options={
                    "require": ["iss", "sub", "exp"],
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iat": True,
                    "verify_iss": True,
                    "verify_aud": False,
                },
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenValidationError("Token expired", "token_expired") from e
        except jwt.InvalidIssuerError as e:
            raise TokenValidationError("Invalid issuer", "invalid_issuer") from e
        except jwt.ImmatureSignatureError as e:
            raise TokenValidationError("Token not yet valid", "token_immature") from e
        except jwt.InvalidTokenError as e:
            raise TokenValidationError(f"Invalid token: {e}", "invalid_token") from e

"""Principal resolution from validated token claims."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from airflow_gateway.errors import AuthError

logger = logging.getLogger(__name__)

ADMIN_ROLE = "airflow-admin"
USER_ROLE = "airflow-user"
KNOWN_ROLES = frozenset({ADMIN_ROLE, USER_ROLE})

UNKNOWN_USERNAME = "unknown"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller. Roles are read fresh from each token."""

    subject_id: str
    username: str
    roles: tuple[str, ...] = ()

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return self.has_role(ADMIN_ROLE)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def extract_roles(claims: Mapping[str, Any]) -> tuple[str, ...]:
    """Union of ``realm_access.roles`` and top-level ``roles``, first-seen order.

    Comparison is case-sensitive; unknown roles are kept.
    """
    realm_access = claims.get("realm_access")
    realm_roles = (
        _string_list(realm_access.get("roles")) if isinstance(realm_access, Mapping) else []
    )
    roles: list[str] = []
    for role in realm_roles + _string_list(claims.get("roles")):
        if role not in roles:
            roles.append(role)
    return tuple(roles)


def resolve_principal(claims: Mapping[str, Any]) -> Principal:
    subject_id = claims.get("sub")
    if not isinstance(subject_id, str) or not subject_id:
        raise AuthError("unauthenticated", "Token does not identify a subject")

    username = claims.get("preferred_username")
    if not isinstance(username, str) or not username.strip():
        username = UNKNOWN_USERNAME

    roles = extract_roles(claims)
    unknown = [role for role in roles if role not in KNOWN_ROLES]
    if unknown:
        logger.debug("Principal %s carries roles without access effect: %s", subject_id, unknown)
    return Principal(subject_id=subject_id, username=username, roles=roles)

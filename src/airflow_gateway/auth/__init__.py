"""Authentication: token issuance, bearer validation and principal resolution."""

from airflow_gateway.auth.context import (
    RequestContext,
    get_request_context,
    reset_request_context,
    set_request_context,
)
from airflow_gateway.auth.principal import (
    ADMIN_ROLE,
    USER_ROLE,
    Principal,
    resolve_principal,
)

__all__ = [
    "ADMIN_ROLE",
    "Principal",
    "RequestContext",
    "USER_ROLE",
    "get_request_context",
    "reset_request_context",
    "resolve_principal",
    "set_request_context",
]

"""Request logging middleware with sensitive field masking."""

from __future__ import annotations

import logging
import re
import time
import uuid
from functools import lru_cache
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..utils.http import get_client_ip
from ..utils.masking import SENSITIVE_FIELDS

logger = logging.getLogger(__name__)

_MASK = "***MASKED***"

# Control character pattern for log injection prevention.
_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


def _sanitize_log_value(value: str) -> str:
    """Replace control characters (newlines, tabs, etc.) to prevent log injection."""
    return _CONTROL_CHAR_RE.sub("_", value)


@lru_cache(maxsize=128)
def _get_mask_pattern(field: str) -> re.Pattern:
    return re.compile(
        rf'(["\']?{re.escape(field)}["\']?\s*[:=]\s*)'
        rf'(?:"[^"]*"|\'[^\']*\'|(?:bearer\s+)?[^\s,;}}]+)',
        re.IGNORECASE,
    )


def mask_exception_message(message: str, mask_fields: frozenset[str]) -> str:
    """Mask ``field=value`` / ``"field": "value"`` pairs in a message."""
    masked = message
    for field in sorted(mask_fields):
        masked = _get_mask_pattern(field).sub(rf"\1{_MASK}", masked)
    return masked


class RequestLogMiddleware(BaseHTTPMiddleware):
    """
    Emits one REQUEST_START and one REQUEST_END line per request.

    The authenticated subject is read from ``request.state.user_id``, which
    the bearer middleware sets further down the stack.
    """

    EXEMPT_PATHS = frozenset({"/health", "/ready"})

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        request_id = _sanitize_log_value(request.headers.get("x-request-id", str(uuid.uuid4())))
        request.state.request_id = request_id
        start_time = time.time()

        client_ip = get_client_ip(request)
        safe_path = _sanitize_log_value(request.url.path)
        safe_ip = _sanitize_log_value(client_ip)

        logger.info(
            "REQUEST_START request_id=%s method=%s path=%s client_ip=%s",
            request_id,
            request.method,
            safe_path,
            safe_ip,
        )

        error_message: str | None = None
        status_code: int = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response

        except Exception as e:
            error_message = mask_exception_message(str(e), SENSITIVE_FIELDS)
            raise

        finally:
            duration_ms = int((time.time() - start_time) * 1000)
            user_id = getattr(request.state, "user_id", None) or "anonymous"
            safe_user_id = _sanitize_log_value(str(user_id))

            if error_message:
                logger.error(
                    "REQUEST_END request_id=%s user_id=%s method=%s path=%s "
                    "status=%s duration_ms=%d error=%s",
                    request_id,
                    safe_user_id,
                    request.method,
                    safe_path,
                    status_code,
                    duration_ms,
                    error_message,
                )
            else:
                logger.info(
                    "REQUEST_END request_id=%s user_id=%s method=%s path=%s "
                    "status=%s duration_ms=%d",
                    request_id,
                    safe_user_id,
                    request.method,
                    safe_path,
                    status_code,
                    duration_ms,
                )

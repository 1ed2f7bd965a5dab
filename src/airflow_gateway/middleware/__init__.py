"""HTTP middleware for the gateway."""

from .request_log import RequestLogMiddleware

__all__ = ["RequestLogMiddleware"]

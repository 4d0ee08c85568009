"""Middleware package for the governor."""

from governor.app.middleware.auth import require_admin
from governor.app.middleware.quota import QuotaGovernorMiddleware, get_client_key
from governor.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_admin",
    "QuotaGovernorMiddleware",
    "get_client_key",
    "RequestIdMiddleware",
    "get_request_id",
]

"""API endpoints package for the governor."""

from governor.app.api.ai import router as ai_router
from governor.app.api.quota import router as quota_router

__all__ = [
    "ai_router",
    "quota_router",
]

"""Services package for the governor.

This package provides the governed client for the downstream
generative-AI API.
"""

from governor.app.services.ai_client import (
    GeminiClient,
    GeminiResponse,
    GeminiUsage,
    translate_error,
)

__all__ = [
    "GeminiClient",
    "GeminiResponse",
    "GeminiUsage",
    "translate_error",
]

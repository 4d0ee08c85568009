"""Custom exceptions for the quota governor application."""

import math


class GovernorException(Exception):
    """Base class for governor exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code and error_code for consistent HTTP
    response handling.
    """
    status_code: int = 500
    error_code: str = "governor_error"

    def __init__(self, message: str = "Governor error", user_message: str | None = None):
        self.message = message
        self.user_message = user_message or message
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API response format."""
        return {
            "error": self.error_code,
            "message": self.user_message,
        }


class ConfigurationError(GovernorException, ValueError):
    """Raised when a governor is constructed or reconfigured with invalid limits.

    This is a programmer error and is raised eagerly at construction time.
    """
    status_code = 500
    error_code = "configuration_error"


class RateLimitError(GovernorException):
    """Raised when a governed call is refused locally.

    ``retry_after_seconds`` is the time until the governor admits again.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, retry_after_seconds: float, message: str = "Rate limit exceeded"):
        seconds = float(retry_after_seconds)
        if not math.isfinite(seconds):
            raise ValueError(f"retry_after_seconds must be finite, got {retry_after_seconds!r}")
        self.retry_after_seconds = max(0.0, seconds)
        minutes = max(1, math.ceil(self.retry_after_seconds / 60))
        unit = "minute" if minutes == 1 else "minutes"
        super().__init__(
            message,
            f"AI service is temporarily busy. Please try again in {minutes} {unit}.",
        )

    @property
    def retry_after(self) -> int:
        """Whole seconds suitable for a Retry-After header."""
        return math.ceil(self.retry_after_seconds)

    def to_response(self) -> dict:
        response = super().to_response()
        response["retry_after"] = self.retry_after
        return response


class QuotaExceededError(GovernorException):
    """Raised when the downstream API reports its daily quota is used up.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "quota_exceeded"

    def __init__(self, message: str = "API quota exceeded"):
        super().__init__(
            message,
            "Daily API quota has been exceeded. Try again tomorrow.",
        )


class AIServiceError(GovernorException):
    """Raised when the downstream AI service fails or is not configured.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error_code = "ai_service_error"

    def __init__(
        self,
        message: str = "AI service error",
        user_message: str = "AI service is temporarily unavailable.",
    ):
        super().__init__(message, user_message)

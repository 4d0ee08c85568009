"""Quota governor data models.

This module contains dataclasses for governor configuration, admission
results and status snapshots.
"""

import math
from dataclasses import dataclass
from enum import Enum

from governor.app.exceptions import ConfigurationError

DEFAULT_BLOCK_SECONDS = 1800.0


@dataclass(frozen=True)
class GovernorConfig:
    """Limits for one governor.

    Attributes:
        max_requests: Admissions allowed within any rolling window
        window_seconds: Length of the rolling window
        block_seconds: Default block after the downstream reports exhaustion
    """
    max_requests: int
    window_seconds: float
    block_seconds: float = DEFAULT_BLOCK_SECONDS

    def __post_init__(self) -> None:
        if isinstance(self.max_requests, bool) or not isinstance(self.max_requests, int):
            raise ConfigurationError(
                f"max_requests must be an integer, got {self.max_requests!r}"
            )
        if self.max_requests <= 0:
            raise ConfigurationError(
                f"max_requests must be positive, got {self.max_requests}"
            )
        if not math.isfinite(self.window_seconds) or self.window_seconds <= 0:
            raise ConfigurationError(
                f"window_seconds must be a finite positive number, got {self.window_seconds}"
            )
        if not math.isfinite(self.block_seconds) or self.block_seconds <= 0:
            raise ConfigurationError(
                f"block_seconds must be a finite positive number, got {self.block_seconds}"
            )


@dataclass(frozen=True)
class AcquireResult:
    """Result of an admission attempt."""
    admitted: bool
    retry_after_seconds: float = 0.0
    remaining: int = 0

    def to_dict(self) -> dict:
        return {
            "admitted": self.admitted,
            "retry_after_seconds": self.retry_after_seconds,
            "remaining": self.remaining,
        }


@dataclass(frozen=True)
class StatusSnapshot:
    """Read-only projection of a governor at one instant.

    ``remaining_seconds`` is the time until admission is possible again and
    is 0 whenever ``is_blocked`` is false.
    """
    is_blocked: bool
    remaining_seconds: float
    requests_in_window: int
    max_requests: int

    def is_near_limit(self, ratio: float) -> bool:
        """True when blocked or when usage has reached ``ratio`` of the cap."""
        return self.is_blocked or self.requests_in_window >= self.max_requests * ratio

    def to_dict(self) -> dict:
        return {
            "is_blocked": self.is_blocked,
            "remaining_seconds": self.remaining_seconds,
            "requests_in_window": self.requests_in_window,
            "max_requests": self.max_requests,
        }


class GovernorEvent(str, Enum):
    """Block state transitions reported to subscribers."""
    BLOCK_ENGAGED = "block_engaged"
    BLOCK_LIFTED = "block_lifted"

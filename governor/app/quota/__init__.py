"""Quota governor package.

Rolling-window admission control for calls to rate-limited downstream
APIs, with a per-key registry for multi-user servers.
"""

from governor.app.quota.models import (
    AcquireResult,
    GovernorConfig,
    GovernorEvent,
    StatusSnapshot,
)
from governor.app.quota.governor import (
    QuotaGovernor,
    is_downstream_exhaustion,
    retry_after_hint,
)
from governor.app.quota.registry import GovernorRegistry

__all__ = [
    # Models
    "AcquireResult",
    "GovernorConfig",
    "GovernorEvent",
    "StatusSnapshot",
    # Governors
    "QuotaGovernor",
    "GovernorRegistry",
    # Downstream signals
    "is_downstream_exhaustion",
    "retry_after_hint",
]

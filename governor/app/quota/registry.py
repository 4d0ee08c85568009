"""Per-key quota governors.

Keeps one independent ``QuotaGovernor`` per client key (hashed API key or
IP address) so a server can pace each user separately. Storage is bounded
with LRU eviction.
"""

import threading
from collections import OrderedDict
from typing import Dict, Optional

from governor.app.core.logging import get_log_context, get_logger
from governor.app.quota.governor import Clock, QuotaGovernor
from governor.app.quota.models import DEFAULT_BLOCK_SECONDS, GovernorConfig, StatusSnapshot

logger = get_logger(__name__)


def _is_idle(governor: QuotaGovernor) -> bool:
    status = governor.get_status()
    return status.requests_in_window == 0 and not status.is_blocked


class GovernorRegistry:
    """Registry of governors sharing one configuration and clock.

    Memory optimization:
    - Uses OrderedDict for LRU cache behavior
    - Limits max entries to prevent unbounded memory growth
    - Evicts the oldest 20% of entries when the limit is exceeded
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        block_seconds: float = DEFAULT_BLOCK_SECONDS,
        clock: Optional[Clock] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self._config = GovernorConfig(
            max_requests=max_requests,
            window_seconds=window_seconds,
            block_seconds=block_seconds,
        )
        self._clock = clock
        self._max_entries = max(1, max_entries)
        self._governors: "OrderedDict[str, QuotaGovernor]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def config(self) -> GovernorConfig:
        return self._config

    def __len__(self) -> int:
        return len(self._governors)

    def __contains__(self, key: str) -> bool:
        return key in self._governors

    def _enforce_lru_limit(self) -> None:
        if len(self._governors) > self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(min(remove_count, len(self._governors))):
                evicted, _governor = self._governors.popitem(last=False)
                logger.debug(
                    "Evicted idle governor",
                    extra=get_log_context(client_key=evicted),
                )

    def get(self, key: str) -> QuotaGovernor:
        """Return the governor for ``key``, creating it on first use."""
        with self._lock:
            governor = self._governors.get(key)
            if governor is None:
                governor = QuotaGovernor.from_config(self._config, clock=self._clock, name=key)
                self._governors[key] = governor
                self._enforce_lru_limit()
            else:
                self._governors.move_to_end(key)
            return governor

    def status(self, key: str) -> StatusSnapshot:
        """Status for ``key`` without registering a governor for unknown keys."""
        with self._lock:
            governor = self._governors.get(key)
        if governor is None:
            return StatusSnapshot(
                is_blocked=False,
                remaining_seconds=0.0,
                requests_in_window=0,
                max_requests=self._config.max_requests,
            )
        return governor.get_status()

    def reset(self, key: str) -> bool:
        """Reset one key's governor.

        Returns:
            True if the key had a governor
        """
        with self._lock:
            governor = self._governors.get(key)
        if governor is None:
            return False
        governor.reset()
        return True

    def reset_all(self) -> None:
        with self._lock:
            self._governors.clear()
        logger.info("All client governors reset")

    def cleanup(self) -> int:
        """Drop governors with an empty window and no active block.

        Returns:
            Number of governors removed
        """
        with self._lock:
            items = list(self._governors.items())

        candidates = [key for key, governor in items if _is_idle(governor)]

        removed = 0
        with self._lock:
            for key in candidates:
                governor = self._governors.get(key)
                # Admissions may have landed since the first pass
                if governor is not None and _is_idle(governor):
                    del self._governors[key]
                    removed += 1
        return removed

    def snapshot_all(self) -> Dict[str, StatusSnapshot]:
        with self._lock:
            items = list(self._governors.items())
        return {key: governor.get_status() for key, governor in items}

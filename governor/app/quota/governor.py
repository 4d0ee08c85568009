"""Rolling-window quota governor.

Tracks admissions to a rate-limited downstream API in a time-ordered log
and admits a new attempt only while fewer than ``max_requests`` admissions
fall inside the trailing ``window_seconds``. A second, independent block can
be engaged when the downstream itself reports that its quota is exhausted.

Window edge: a record admitted at ``T`` counts while ``T > now - window``,
so at exactly ``T + window`` it has expired and a new attempt is admitted.
"""

import math
import threading
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List, Optional, Tuple, TypeVar

import httpx

from governor.app.core.logging import get_log_context, get_logger
from governor.app.exceptions import RateLimitError
from governor.app.quota.models import (
    DEFAULT_BLOCK_SECONDS,
    AcquireResult,
    GovernorConfig,
    GovernorEvent,
    StatusSnapshot,
)

logger = get_logger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]
Listener = Callable[[GovernorEvent, StatusSnapshot], None]

EXHAUSTION_MARKERS = ("429", "resource exhausted")


def is_downstream_exhaustion(exc: BaseException) -> bool:
    """Check whether a downstream failure means "rate limit / quota exhausted"."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    for attr in ("status_code", "status"):
        if getattr(exc, attr, None) == 429:
            return True
    message = str(exc).lower()
    return any(marker in message for marker in EXHAUSTION_MARKERS)


def retry_after_hint(exc: BaseException) -> Optional[float]:
    """Extract a numeric Retry-After header from a downstream 429, if any."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        # HTTP-date form is not used by the AI backends we call
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return seconds


class QuotaGovernor:
    """Local, preemptive gate for calls to a rate-limited downstream API.

    One instance guards one quota. Instances are cheap and independent, so
    per-user limits use one governor per user (see ``GovernorRegistry``).

    ``try_acquire`` is the only operation that records admissions. It is
    synchronous and holds a lock across the read-prune-append sequence, so
    callers on threads or on an event loop cannot both take the last slot.

    Example:
        >>> governor = QuotaGovernor(max_requests=3, window_seconds=60)
        >>> governor.try_acquire().admitted
        True
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        block_seconds: float = DEFAULT_BLOCK_SECONDS,
        clock: Optional[Clock] = None,
        name: str = "default",
    ):
        """Initialize the governor.

        Args:
            max_requests: Admissions allowed within any rolling window
            window_seconds: Length of the rolling window in seconds
            block_seconds: Default block length after downstream exhaustion
            clock: Monotonic time source in seconds (defaults to time.monotonic)
            name: Label used in logs

        Raises:
            ConfigurationError: If any limit is not positive
        """
        self._config = GovernorConfig(
            max_requests=max_requests,
            window_seconds=window_seconds,
            block_seconds=block_seconds,
        )
        self._clock: Clock = clock or time.monotonic
        self.name = name

        self._records: Deque[float] = deque()
        self._blocked_until: Optional[float] = None
        self._last_blocked = False
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls, config: GovernorConfig, clock: Optional[Clock] = None, name: str = "default"
    ) -> "QuotaGovernor":
        return cls(
            max_requests=config.max_requests,
            window_seconds=config.window_seconds,
            block_seconds=config.block_seconds,
            clock=clock,
            name=name,
        )

    @property
    def config(self) -> GovernorConfig:
        return self._config

    # ------------------------------------------------------------------
    # Internal helpers (caller holds self._lock)
    # ------------------------------------------------------------------

    def _prune(self, now: float) -> None:
        cutoff = now - self._config.window_seconds
        records = self._records
        while records and records[0] <= cutoff:
            records.popleft()

        if self._blocked_until is not None and now >= self._blocked_until:
            self._blocked_until = None
            logger.info(
                "Downstream block expired",
                extra=get_log_context(governor=self.name),
            )

    def _window_wait(self, now: float) -> float:
        excess = len(self._records) - self._config.max_requests
        if excess < 0:
            return 0.0
        # The record at index ``excess`` must expire before the window drops below the cap
        return max(0.0, self._records[excess] + self._config.window_seconds - now)

    def _block_wait(self, now: float) -> float:
        if self._blocked_until is None:
            return 0.0
        return max(0.0, self._blocked_until - now)

    def _snapshot(self, now: float) -> StatusSnapshot:
        window_full = len(self._records) >= self._config.max_requests
        block_active = self._blocked_until is not None
        is_blocked = window_full or block_active
        remaining = max(self._window_wait(now), self._block_wait(now)) if is_blocked else 0.0
        return StatusSnapshot(
            is_blocked=is_blocked,
            remaining_seconds=remaining,
            requests_in_window=len(self._records),
            max_requests=self._config.max_requests,
        )

    def _transition(self, snapshot: StatusSnapshot) -> Optional[Tuple[GovernorEvent, StatusSnapshot]]:
        if snapshot.is_blocked == self._last_blocked:
            return None
        self._last_blocked = snapshot.is_blocked
        if snapshot.is_blocked:
            logger.warning(
                f"Quota governor '{self.name}' blocked for {snapshot.remaining_seconds:.1f}s "
                f"({snapshot.requests_in_window}/{snapshot.max_requests} requests in window)",
                extra=get_log_context(governor=self.name),
            )
            return GovernorEvent.BLOCK_ENGAGED, snapshot
        logger.info(
            f"Quota governor '{self.name}' unblocked",
            extra=get_log_context(governor=self.name),
        )
        return GovernorEvent.BLOCK_LIFTED, snapshot

    def _notify(self, transition: Optional[Tuple[GovernorEvent, StatusSnapshot]]) -> None:
        if transition is None:
            return
        event, snapshot = transition
        for listener in list(self._listeners):
            try:
                listener(event, snapshot)
            except Exception:
                logger.exception(
                    f"Quota governor listener failed on {event.value}",
                    extra=get_log_context(governor=self.name),
                )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def try_acquire(self) -> AcquireResult:
        """Admit one request if the window has room and no block is active.

        Never raises; a refusal is a normal return value carrying the time
        until admission is possible again.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)

            max_requests = self._config.max_requests
            if len(self._records) >= max_requests or self._blocked_until is not None:
                retry_after = max(self._window_wait(now), self._block_wait(now))
                result = AcquireResult(admitted=False, retry_after_seconds=retry_after, remaining=0)
                logger.debug(
                    f"Quota governor '{self.name}' refused request, retry after {retry_after:.1f}s",
                    extra=get_log_context(governor=self.name),
                )
            else:
                self._records.append(now)
                result = AcquireResult(
                    admitted=True,
                    remaining=max(0, max_requests - len(self._records)),
                )

            transition = self._transition(self._snapshot(now))

        self._notify(transition)
        return result

    def get_status(self) -> StatusSnapshot:
        """Compute the current status snapshot.

        Expired records are dropped as a side effect; nothing is cached
        between calls.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            snapshot = self._snapshot(now)
            transition = self._transition(snapshot)

        self._notify(transition)
        return snapshot

    def reset(self) -> None:
        """Forget every admission and any downstream block."""
        with self._lock:
            self._records.clear()
            self._blocked_until = None
            transition = self._transition(self._snapshot(self._clock()))
        logger.info(
            f"Quota governor '{self.name}' reset",
            extra=get_log_context(governor=self.name),
        )
        self._notify(transition)

    def configure(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        block_seconds: Optional[float] = None,
    ) -> GovernorConfig:
        """Change limits for future evaluations.

        Already admitted records are kept; they expire under the new window.

        Raises:
            ConfigurationError: If any new limit is not positive
        """
        current = self._config
        new_config = GovernorConfig(
            max_requests=current.max_requests if max_requests is None else max_requests,
            window_seconds=current.window_seconds if window_seconds is None else window_seconds,
            block_seconds=current.block_seconds if block_seconds is None else block_seconds,
        )
        with self._lock:
            self._config = new_config
        logger.info(
            f"Quota governor '{self.name}' reconfigured: "
            f"{new_config.max_requests} requests / {new_config.window_seconds}s",
            extra=get_log_context(governor=self.name),
        )
        return new_config

    def report_exhaustion(self, retry_after_seconds: Optional[float] = None) -> StatusSnapshot:
        """Block admission because the downstream reported its quota exhausted.

        The block lasts ``retry_after_seconds`` (``block_seconds`` when it is
        missing or not finite) and only ever extends an active block.
        """
        duration = retry_after_seconds
        if duration is None or not math.isfinite(duration):
            duration = self._config.block_seconds
        if duration <= 0:
            return self.get_status()

        with self._lock:
            now = self._clock()
            self._prune(now)
            until = now + duration
            if self._blocked_until is None or until > self._blocked_until:
                self._blocked_until = until
            logger.warning(
                f"Downstream quota exhausted, blocking '{self.name}' for {duration:.0f}s",
                extra=get_log_context(governor=self.name, block_seconds=duration),
            )
            snapshot = self._snapshot(now)
            transition = self._transition(snapshot)

        self._notify(transition)
        return snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a block-transition listener.

        Transitions are decided under the governor lock but delivered after
        it is released, so listeners called from different threads may see
        events out of order. Check ``get_status()`` when ordering matters.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def execute(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` only if admitted.

        A downstream rate-limit failure engages the exhaustion block before
        the exception propagates.

        Raises:
            RateLimitError: If the governor refuses the call
        """
        result = self.try_acquire()
        if not result.admitted:
            raise RateLimitError(result.retry_after_seconds)

        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            if is_downstream_exhaustion(e):
                self.report_exhaustion(retry_after_hint(e))
            raise

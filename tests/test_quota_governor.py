"""Tests for the rolling-window quota governor."""

import threading
from unittest.mock import Mock

import httpx
import pytest

from governor.app.exceptions import ConfigurationError, RateLimitError
from governor.app.quota import (
    GovernorEvent,
    QuotaGovernor,
    StatusSnapshot,
    is_downstream_exhaustion,
    retry_after_hint,
)


@pytest.fixture
def governor(clock):
    return QuotaGovernor(max_requests=3, window_seconds=60, clock=clock, name="test")


class TestScenarios:
    """Reference scenarios with max_requests=3, window_seconds=60."""

    def test_fourth_call_refused_with_retry_after(self, governor, clock):
        for _ in range(3):
            assert governor.try_acquire().admitted is True

        clock.set(10)
        result = governor.try_acquire()

        assert result.admitted is False
        assert result.retry_after_seconds == 50

    def test_status_blocked_after_third_admission(self, governor):
        for _ in range(3):
            governor.try_acquire()

        assert governor.get_status() == StatusSnapshot(
            is_blocked=True,
            remaining_seconds=60,
            requests_in_window=3,
            max_requests=3,
        )

    def test_status_clear_after_window(self, governor, clock):
        for _ in range(3):
            governor.try_acquire()

        clock.set(61)

        assert governor.get_status() == StatusSnapshot(
            is_blocked=False,
            remaining_seconds=0,
            requests_in_window=0,
            max_requests=3,
        )

    def test_reset_mid_window(self, governor, clock):
        for _ in range(3):
            governor.try_acquire()
        clock.set(30)

        governor.reset()

        status = governor.get_status()
        assert status.requests_in_window == 0
        assert status.is_blocked is False


class TestAdmission:
    """Tests for try_acquire."""

    def test_remaining_counts_down(self, governor):
        assert governor.try_acquire().remaining == 2
        assert governor.try_acquire().remaining == 1
        assert governor.try_acquire().remaining == 0

    def test_refusal_does_not_record(self, governor, clock):
        for _ in range(3):
            governor.try_acquire()
        for _ in range(5):
            assert governor.try_acquire().admitted is False

        assert governor.get_status().requests_in_window == 3

    def test_admits_after_window_plus_epsilon(self, governor, clock):
        for _ in range(3):
            governor.try_acquire()

        clock.set(60.001)

        assert governor.try_acquire().admitted is True

    def test_window_edge_is_exclusive(self, governor, clock):
        """A record admitted at T no longer counts at exactly T + window."""
        for _ in range(3):
            governor.try_acquire()

        clock.set(59.999)
        assert governor.try_acquire().admitted is False

        clock.set(60)
        assert governor.try_acquire().admitted is True

    def test_retry_after_tracks_oldest_record(self, governor, clock):
        governor.try_acquire()
        clock.set(20)
        governor.try_acquire()
        clock.set(40)
        governor.try_acquire()

        clock.set(45)
        assert governor.try_acquire().retry_after_seconds == 15

        # First record expired at 60; the window has one free slot
        clock.set(60)
        assert governor.try_acquire().admitted is True
        assert governor.try_acquire().retry_after_seconds == 20

    def test_never_exceeds_cap_in_any_trailing_window(self, clock):
        governor = QuotaGovernor(max_requests=4, window_seconds=10, clock=clock)
        admitted_at = []

        for step in range(400):
            clock.set(step * 0.37)
            if governor.try_acquire().admitted:
                admitted_at.append(clock.now)

        for t in admitted_at:
            in_window = [a for a in admitted_at if t - 10 < a <= t]
            assert len(in_window) <= 4
        assert len(admitted_at) > 4

    def test_concurrent_callers_cannot_exceed_cap(self):
        governor = QuotaGovernor(max_requests=5, window_seconds=3600)
        barrier = threading.Barrier(20)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            result = governor.try_acquire()
            with results_lock:
                results.append(result.admitted)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 5
        assert results.count(False) == 15

    def test_default_clock_is_monotonic(self):
        governor = QuotaGovernor(max_requests=1, window_seconds=3600)
        assert governor.try_acquire().admitted is True
        result = governor.try_acquire()
        assert result.admitted is False
        assert 0 < result.retry_after_seconds <= 3600


class TestStatus:
    """Tests for get_status."""

    def test_empty_governor(self, governor):
        status = governor.get_status()
        assert status.is_blocked is False
        assert status.remaining_seconds == 0
        assert status.requests_in_window == 0
        assert status.max_requests == 3

    def test_idempotent_without_elapsed_time(self, governor, clock):
        governor.try_acquire()
        governor.try_acquire()
        clock.set(5)

        assert governor.get_status() == governor.get_status()

    def test_not_blocked_below_cap_reports_zero_remaining(self, governor, clock):
        governor.try_acquire()
        clock.set(30)

        status = governor.get_status()
        assert status.is_blocked is False
        assert status.remaining_seconds == 0
        assert status.requests_in_window == 1

    def test_countdown_recomputed_on_each_poll(self, governor, clock):
        for _ in range(3):
            governor.try_acquire()

        remaining = []
        for second in range(0, 61, 15):
            clock.set(second)
            remaining.append(governor.get_status().remaining_seconds)

        assert remaining == [60, 45, 30, 15, 0]

    def test_polling_does_not_consume_slots(self, governor):
        for _ in range(100):
            governor.get_status()
        assert governor.try_acquire().admitted is True

    def test_near_limit(self, governor):
        governor.try_acquire()
        assert governor.get_status().is_near_limit(0.8) is False
        governor.try_acquire()
        governor.try_acquire()
        assert governor.get_status().is_near_limit(0.8) is True


class TestReset:
    """Tests for reset."""

    def test_reset_is_idempotent(self, governor):
        governor.try_acquire()
        governor.reset()
        governor.reset()
        assert governor.get_status().requests_in_window == 0

    def test_reset_clears_exhaustion_block(self, governor):
        governor.report_exhaustion()
        governor.reset()
        assert governor.try_acquire().admitted is True


class TestConfigure:
    """Tests for construction validation and configure."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_requests": 0},
            {"max_requests": -1},
            {"max_requests": 2.5},
            {"window_seconds": 0},
            {"window_seconds": -60},
            {"block_seconds": 0},
            {"window_seconds": float("nan")},
            {"window_seconds": float("inf")},
            {"block_seconds": float("nan")},
            {"block_seconds": float("inf")},
        ],
    )
    def test_invalid_construction_fails_fast(self, kwargs):
        with pytest.raises(ConfigurationError):
            QuotaGovernor(**kwargs)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            QuotaGovernor(max_requests=0)

    def test_raise_cap_applies_immediately(self, governor, clock):
        for _ in range(3):
            governor.try_acquire()

        governor.configure(max_requests=5)

        assert governor.try_acquire().admitted is True
        assert governor.get_status().max_requests == 5

    def test_lower_cap_keeps_admitted_records(self, governor, clock):
        governor.try_acquire()
        clock.set(10)
        governor.try_acquire()
        clock.set(20)
        governor.try_acquire()

        governor.configure(max_requests=1)

        status = governor.get_status()
        assert status.requests_in_window == 3
        assert status.is_blocked is True
        # All three must expire before the count drops below 1: the last leaves at t=80
        assert status.remaining_seconds == 60

    def test_configure_rejects_nan_window(self, governor):
        with pytest.raises(ConfigurationError):
            governor.configure(window_seconds=float("nan"))
        assert governor.config.window_seconds == 60

    def test_invalid_configure_keeps_old_config(self, governor):
        with pytest.raises(ConfigurationError):
            governor.configure(window_seconds=0)
        assert governor.config.window_seconds == 60


class TestDownstreamExhaustion:
    """Tests for the downstream exhaustion block."""

    def test_blocks_with_default_duration(self, governor, clock):
        governor.report_exhaustion()

        result = governor.try_acquire()
        assert result.admitted is False
        assert result.retry_after_seconds == 1800

        status = governor.get_status()
        assert status.is_blocked is True
        assert status.requests_in_window == 0
        assert status.remaining_seconds == 1800

    def test_block_expires(self, governor, clock):
        governor.report_exhaustion(retry_after_seconds=120)

        clock.set(119)
        assert governor.try_acquire().admitted is False
        clock.set(120)
        assert governor.try_acquire().admitted is True

    def test_only_extends_active_block(self, governor, clock):
        governor.report_exhaustion(retry_after_seconds=300)
        governor.report_exhaustion(retry_after_seconds=10)

        assert governor.get_status().remaining_seconds == 300

        governor.report_exhaustion(retry_after_seconds=600)
        assert governor.get_status().remaining_seconds == 600

    def test_non_finite_duration_uses_default_block(self, governor, clock):
        status = governor.report_exhaustion(retry_after_seconds=float("inf"))
        assert status.remaining_seconds == 1800

        clock.set(1800)
        assert governor.try_acquire().admitted is True

    def test_later_of_two_block_conditions_wins(self, governor, clock):
        for _ in range(3):
            governor.try_acquire()
        governor.report_exhaustion(retry_after_seconds=30)

        assert governor.get_status().remaining_seconds == 60

        governor.report_exhaustion(retry_after_seconds=90)
        assert governor.try_acquire().retry_after_seconds == 90


class TestEvents:
    """Tests for block transition events."""

    def test_engaged_and_lifted(self, governor, clock):
        listener = Mock()
        governor.subscribe(listener)

        for _ in range(3):
            governor.try_acquire()
        governor.get_status()

        listener.assert_called_once()
        event, snapshot = listener.call_args.args
        assert event is GovernorEvent.BLOCK_ENGAGED
        assert snapshot.is_blocked is True

        clock.set(60)
        governor.get_status()

        assert listener.call_count == 2
        assert listener.call_args.args[0] is GovernorEvent.BLOCK_LIFTED

    def test_unsubscribe(self, governor):
        listener = Mock()
        unsubscribe = governor.subscribe(listener)
        unsubscribe()

        governor.report_exhaustion()

        listener.assert_not_called()

    def test_failing_listener_does_not_break_governor(self, governor):
        governor.subscribe(Mock(side_effect=RuntimeError("boom")))
        other = Mock()
        governor.subscribe(other)

        governor.report_exhaustion()

        other.assert_called_once()
        assert governor.get_status().is_blocked is True


class TestExecute:
    """Tests for the execute wrapper."""

    @pytest.mark.asyncio
    async def test_runs_when_admitted(self, governor):
        async def call(value):
            return value * 2

        assert await governor.execute(call, 21) == 42
        assert governor.get_status().requests_in_window == 1

    @pytest.mark.asyncio
    async def test_raises_rate_limit_error_when_blocked(self, governor, clock):
        fn = Mock()

        async def call():
            fn()

        for _ in range(3):
            await governor.execute(call)
        clock.set(15)

        with pytest.raises(RateLimitError) as exc_info:
            await governor.execute(call)

        assert exc_info.value.retry_after_seconds == 45
        assert exc_info.value.retry_after == 45
        assert fn.call_count == 3

    @pytest.mark.asyncio
    async def test_downstream_429_engages_block(self, governor):
        request = httpx.Request("POST", "https://ai.example/generate")
        response = httpx.Response(429, request=request, headers={"Retry-After": "90"})

        async def call():
            raise httpx.HTTPStatusError("Too Many Requests", request=request, response=response)

        with pytest.raises(httpx.HTTPStatusError):
            await governor.execute(call)

        status = governor.get_status()
        assert status.is_blocked is True
        assert status.remaining_seconds == 90

    @pytest.mark.asyncio
    async def test_infinite_retry_after_falls_back_to_default_block(self, governor):
        request = httpx.Request("POST", "https://ai.example/generate")
        response = httpx.Response(429, request=request, headers={"Retry-After": "inf"})

        async def call():
            raise httpx.HTTPStatusError("Too Many Requests", request=request, response=response)

        with pytest.raises(httpx.HTTPStatusError):
            await governor.execute(call)

        with pytest.raises(RateLimitError) as exc_info:
            await governor.execute(call)
        assert exc_info.value.retry_after == 1800

    @pytest.mark.asyncio
    async def test_resource_exhausted_message_engages_default_block(self, governor):
        async def call():
            raise RuntimeError("Resource exhausted: try again later")

        with pytest.raises(RuntimeError):
            await governor.execute(call)

        assert governor.get_status().remaining_seconds == 1800

    @pytest.mark.asyncio
    async def test_other_failures_propagate_without_block(self, governor):
        async def call():
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            await governor.execute(call)

        status = governor.get_status()
        assert status.is_blocked is False
        # The attempt still counted against the window
        assert status.requests_in_window == 1


class TestDownstreamSignals:
    """Tests for downstream exhaustion detection helpers."""

    def test_status_attribute(self):
        error = Exception("failed")
        error.status = 429
        assert is_downstream_exhaustion(error) is True

    def test_http_500_is_not_exhaustion(self):
        request = httpx.Request("GET", "https://ai.example")
        response = httpx.Response(500, request=request)
        error = httpx.HTTPStatusError("Server error", request=request, response=response)
        assert is_downstream_exhaustion(error) is False

    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("30", 30.0),
            ("0", None),
            ("inf", None),
            ("nan", None),
            ("Wed, 21 Oct 2026 07:28:00 GMT", None),
        ],
    )
    def test_retry_after_hint(self, header, expected):
        request = httpx.Request("GET", "https://ai.example")
        response = httpx.Response(429, request=request, headers={"Retry-After": header})
        error = httpx.HTTPStatusError("Too Many Requests", request=request, response=response)
        assert retry_after_hint(error) == expected

    def test_retry_after_hint_without_response(self):
        assert retry_after_hint(RuntimeError("429")) is None

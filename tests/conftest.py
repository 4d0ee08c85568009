"""Shared fixtures for governor tests."""

import pytest

from governor.app.core.config import Settings


class ManualClock:
    """Monotonic clock advanced explicitly by tests."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, value: float) -> None:
        self.now = value


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def make_settings():
    """Build Settings isolated from the environment and .env file."""

    def _make(**overrides) -> Settings:
        values = {
            "governor_max_requests": 3,
            "governor_window_seconds": 60.0,
            "governor_block_seconds": 1800.0,
            "client_max_requests": 5,
            "client_window_seconds": 60.0,
            "gemini_api_key": "test-gemini-key",
            "admin_token": "admin-secret",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make

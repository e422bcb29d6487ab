"""Tests for cert_engine.rate_limit."""

from datetime import UTC, datetime, timedelta

import pytest

from cert_engine.errors import RateLimitError
from cert_engine.rate_limit import InMemoryRateLimiter, StoreRateLimiter


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self):
        return self.now


@pytest.fixture(params=["memory", "store"])
def make_limiter(request, store):
    def _make(limit, clock):
        if request.param == "memory":
            return InMemoryRateLimiter(limit=limit, clock=clock)
        return StoreRateLimiter(store, limit=limit, clock=clock)

    return _make


def test_forty_six_issuances_in_a_week_rejects_the_last(make_limiter):
    clock = FakeClock()
    limiter = make_limiter(45, clock)

    for i in range(45):
        limiter.check_and_record(f"host{i}.example.com")
        clock.now += timedelta(minutes=1)

    with pytest.raises(RateLimitError) as exc_info:
        limiter.check_and_record("host45.example.com")

    assert exc_info.value.registered_domain == "example.com"
    assert exc_info.value.count == 45
    assert "45/45" in str(exc_info.value)


def test_limit_is_per_registered_domain(make_limiter):
    limiter = make_limiter(1, FakeClock())

    limiter.check_and_record("a.example.com")
    limiter.check_and_record("a.example.org")

    with pytest.raises(RateLimitError):
        limiter.check_and_record("b.example.com")


def test_window_slides(make_limiter):
    clock = FakeClock()
    limiter = make_limiter(2, clock)

    limiter.check_and_record("a.example.com")
    clock.now += timedelta(days=3)
    limiter.check_and_record("b.example.com")
    with pytest.raises(RateLimitError):
        limiter.check_and_record("c.example.com")

    # The first issuance leaves the 7-day window; one slot frees up.
    clock.now += timedelta(days=4, seconds=1)
    limiter.check_and_record("c.example.com")
    with pytest.raises(RateLimitError):
        limiter.check_and_record("d.example.com")


def test_rejected_attempt_is_not_recorded(make_limiter):
    clock = FakeClock()
    limiter = make_limiter(1, clock)

    limiter.check_and_record("a.example.com")
    for _ in range(3):
        with pytest.raises(RateLimitError):
            limiter.check_and_record("a.example.com")

    clock.now += timedelta(days=7, seconds=1)
    limiter.check_and_record("a.example.com")

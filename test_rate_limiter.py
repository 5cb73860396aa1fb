"""
Tests for the vision model rate limiter.

The limiter takes an injectable clock, so refill and backoff are checked
against a fake time source instead of sleeping:
- Burst capacity of 5, refilled at 30 requests/minute
- 30s, 60s, 120s ... backoff after 429s, capped at 5 minutes
- Burst capacity shrinks after 429s and recovers on success
"""

import logging

from app.services.rate_limiter import VisionRateLimiter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def print_stats(limiter):
    stats = limiter.get_stats()
    print(f"\n📊 Rate Limiter Stats:")
    print(f"   Tokens available: {stats['tokens_available']:.2f}/{stats['max_tokens']:.1f}")
    print(f"   Is rate limited: {stats['is_rate_limited']}")
    print(f"   Consecutive 429s: {stats['consecutive_429s']}")
    print(f"   Acquired/rejected: {stats['total_acquired']}/{stats['total_rejected']}")


def test_burst_then_reject():
    """Five immediate requests succeed, the sixth is rejected without waiting."""
    clock = FakeClock()
    limiter = VisionRateLimiter(max_requests_per_minute=30, burst_capacity=5, clock=clock)

    assert all(limiter.try_acquire() for _ in range(5))
    assert not limiter.try_acquire()
    print_stats(limiter)

    stats = limiter.get_stats()
    assert stats["total_acquired"] == 5
    assert stats["total_rejected"] == 1
    logger.info("✓ Burst of 5 then rejection")


def test_refill_over_time():
    """30/min refills one token every 2 seconds, never above the burst size."""
    clock = FakeClock()
    limiter = VisionRateLimiter(max_requests_per_minute=30, burst_capacity=5, clock=clock)
    for _ in range(5):
        limiter.try_acquire()

    clock.advance(1.0)
    assert not limiter.try_acquire()
    clock.advance(1.0)
    assert limiter.try_acquire()

    clock.advance(3600)
    limiter.try_acquire()
    assert limiter.get_stats()["tokens_available"] <= 5.0
    logger.info("✓ Tokens refill at the configured rate")


def test_429_backoff_doubles_and_caps():
    clock = FakeClock()
    limiter = VisionRateLimiter(clock=clock)

    limiter.report_429()
    assert limiter.rate_limited_until == clock.now + 30
    assert not limiter.try_acquire()

    limiter.report_429()
    assert limiter.rate_limited_until == clock.now + 60

    for _ in range(10):
        limiter.report_429()
    assert limiter.rate_limited_until == clock.now + 300
    assert limiter.backoff_multiplier == 0.5
    assert limiter.max_tokens == 2.5
    print_stats(limiter)
    logger.info("✓ Backoff doubles and caps at 5 minutes")


def test_backoff_expires_and_capacity_recovers():
    clock = FakeClock()
    limiter = VisionRateLimiter(clock=clock)

    limiter.report_429()
    assert limiter.get_stats()["is_rate_limited"]
    clock.advance(31)
    assert not limiter.get_stats()["is_rate_limited"]
    assert limiter.try_acquire()

    limiter.report_success()
    assert limiter.consecutive_429s == 0
    assert limiter.max_tokens == limiter.burst_capacity * limiter.backoff_multiplier
    assert limiter.backoff_multiplier <= 1.0
    logger.info("✓ Backoff expires, capacity restored on success")


def test_report_success_without_429_is_noop():
    limiter = VisionRateLimiter(clock=FakeClock())
    limiter.report_success()
    assert limiter.backoff_multiplier == 1.0
    assert limiter.max_tokens == 5.0

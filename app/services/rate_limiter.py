"""
Rate limiter for vision model API calls.

Keeps the service inside the provider's request quota:
- Token bucket refilled at `max_requests_per_minute`
- Exponential backoff after 429 responses (30s doubling, capped at 5 minutes)
- Non-blocking: callers that cannot get a token fall back immediately
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

BASE_BACKOFF_SECONDS = 30.0
MAX_BACKOFF_SECONDS = 300.0


class VisionRateLimiter:
    """
    Thread-safe token bucket for vision model requests.

    Resize requests must complete in a few seconds, so there is no blocking
    acquire: if no token is available the orchestrator goes straight to the
    deterministic fallback planner instead of queueing.
    """

    def __init__(
        self,
        max_requests_per_minute: int = 30,
        burst_capacity: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests_per_minute = max_requests_per_minute
        self.burst_capacity = burst_capacity
        self._clock = clock

        self.tokens = float(burst_capacity)
        self.max_tokens = float(burst_capacity)
        self.refill_rate = max_requests_per_minute / 60.0
        self.last_refill = clock()

        self.rate_limited_until: float | None = None
        self.consecutive_429s = 0
        self.backoff_multiplier = 1.0
        self.total_acquired = 0
        self.total_rejected = 0

        self.lock = threading.RLock()

        logger.info(
            "Vision rate limiter initialized: %s req/min, burst %s",
            max_requests_per_minute,
            burst_capacity,
        )

    def _refill_tokens(self) -> None:
        now = self._clock()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def _is_rate_limited(self) -> bool:
        if self.rate_limited_until is None:
            return False
        if self._clock() < self.rate_limited_until:
            return True

        self.rate_limited_until = None
        logger.info("Rate limit backoff period expired, resuming normal operation")
        return False

    def _calculate_backoff(self) -> float:
        """First 429: 30s, second: 60s, third: 120s, ... capped at 5 minutes."""
        return min(BASE_BACKOFF_SECONDS * 2 ** (self.consecutive_429s - 1), MAX_BACKOFF_SECONDS)

    def try_acquire(self) -> bool:
        """Take one token if available; never blocks."""
        with self.lock:
            if self._is_rate_limited():
                self.total_rejected += 1
                logger.warning(
                    "Vision API in backoff for another %.1fs (consecutive 429s: %s)",
                    self.rate_limited_until - self._clock(),
                    self.consecutive_429s,
                )
                return False

            self._refill_tokens()
            if self.tokens < 1.0:
                self.total_rejected += 1
                logger.warning("Vision API token bucket empty (%.2f tokens)", self.tokens)
                return False

            self.tokens -= 1.0
            self.total_acquired += 1
            logger.debug("Rate limiter: token acquired (%.1f/%.1f left)", self.tokens, self.max_tokens)
            return True

    def report_429(self) -> None:
        """Record a 429 response: start backoff and shrink the burst size."""
        with self.lock:
            self.consecutive_429s += 1
            backoff = self._calculate_backoff()
            self.rate_limited_until = self._clock() + backoff

            self.backoff_multiplier = max(0.5, self.backoff_multiplier * 0.8)
            self.max_tokens = self.burst_capacity * self.backoff_multiplier
            self.tokens = min(self.tokens, self.max_tokens)

            logger.error(
                "Vision API 429 (consecutive: %s). Backing off for %.1fs, burst capacity now %.1f",
                self.consecutive_429s,
                backoff,
                self.max_tokens,
            )

    def report_success(self) -> None:
        """Gradually restore capacity after earlier 429s."""
        with self.lock:
            if self.consecutive_429s == 0:
                return
            self.backoff_multiplier = min(1.0, self.backoff_multiplier * 1.1)
            self.max_tokens = self.burst_capacity * self.backoff_multiplier
            self.consecutive_429s -= 1
            logger.info("Vision request succeeded, 429 counter now %s", self.consecutive_429s)

    def get_stats(self) -> dict:
        with self.lock:
            return {
                "tokens_available": self.tokens,
                "max_tokens": self.max_tokens,
                "max_requests_per_minute": self.max_requests_per_minute,
                "is_rate_limited": self._is_rate_limited(),
                "consecutive_429s": self.consecutive_429s,
                "backoff_multiplier": self.backoff_multiplier,
                "total_acquired": self.total_acquired,
                "total_rejected": self.total_rejected,
            }

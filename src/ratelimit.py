"""Rate limiting for OpenStack API calls."""

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Generator

from metrics import RATE_LIMIT_WAIT_SECONDS

logger = logging.getLogger(__name__)

# Waits shorter than this are not worth a histogram sample
_MIN_RECORDED_WAIT = 0.001


class RateLimiter:
    """Thread-safe limiter shared by every reconcile worker.

    kopf runs sync handlers for distinct objects in parallel threads; the
    limiter bounds both the number of in-flight cloud calls and their rate.
    """

    def __init__(
        self,
        max_concurrent: int = 10,
        requests_per_second: float = 20.0,
    ) -> None:
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._next_slot_at = 0.0
        self._lock = threading.Lock()
        self.max_concurrent = max_concurrent
        self.requests_per_second = requests_per_second

    @classmethod
    def from_env(cls) -> "RateLimiter":
        """Build a limiter from the environment.

        OPENSTACK_MAX_CONCURRENT_CALLS: Max concurrent API calls (default: 10)
        OPENSTACK_REQUESTS_PER_SECOND: Max requests/second, 0 disables (default: 20)
        """
        limiter = cls(
            max_concurrent=int(os.environ.get("OPENSTACK_MAX_CONCURRENT_CALLS", "10")),
            requests_per_second=float(
                os.environ.get("OPENSTACK_REQUESTS_PER_SECOND", "20")
            ),
        )
        logger.info("Rate limiter configured: %r", limiter)
        return limiter

    def _reserve_start(self) -> float:
        """Reserve the next start time and return how long to sleep for it."""
        with self._lock:
            now = time.monotonic()
            start = max(now, self._next_slot_at)
            self._next_slot_at = start + self._interval
            return start - now

    @contextmanager
    def acquire(self) -> Generator[None, None, None]:
        """Hold one API call slot for the duration of the block."""
        wait_start = time.monotonic()
        with self._slots:
            delay = self._reserve_start()
            if delay > 0:
                time.sleep(delay)
            waited = time.monotonic() - wait_start
            if waited > _MIN_RECORDED_WAIT:
                RATE_LIMIT_WAIT_SECONDS.observe(waited)
            yield

    def __repr__(self) -> str:
        return (
            f"RateLimiter(max_concurrent={self.max_concurrent}, "
            f"requests_per_second={self.requests_per_second})"
        )


_rate_limiter: RateLimiter | None = None
_rate_limiter_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    """Get or create the process-wide rate limiter."""
    global _rate_limiter

    with _rate_limiter_lock:
        if _rate_limiter is None:
            _rate_limiter = RateLimiter.from_env()
        return _rate_limiter

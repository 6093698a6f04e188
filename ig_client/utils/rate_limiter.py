"""
Thread-safe token-bucket rate limiter.

Admits outbound requests at a sustained rate of max_requests per period,
allowing short bursts up to burst_size.
"""

import asyncio
import time
import threading
from typing import Optional, Callable
from ..exceptions import RateLimitError, OperationCancelledError
from ..metrics import get_metrics
import logging

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Token-bucket admission control shared by every outbound call.

    Tokens refill continuously at max_requests / period_seconds and are
    capped at burst_size. Check-and-decrement happens under one lock;
    waiting happens outside it.
    """

    def __init__(
        self,
        max_requests: int = 29,
        period_seconds: float = 60.0,
        burst_size: int = 20,
        enabled: bool = True,
        poll_interval: float = 0.01,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize rate limiter.

        Args:
            max_requests: Requests allowed per period
            period_seconds: Quota period in seconds
            burst_size: Bucket capacity (max tokens)
            enabled: Whether rate limiting is enabled
            poll_interval: Upper bound on a single wait slice (default: 10ms)
            clock: Monotonic time source
            sleep: Blocking sleep used while waiting

        Raises:
            ValueError: On non-positive limits
        """
        if max_requests <= 0 or period_seconds <= 0 or burst_size <= 0:
            raise ValueError(
                "max_requests, period_seconds and burst_size must be positive"
            )

        self.enabled = enabled
        self.max_requests = max_requests
        self.period_seconds = period_seconds
        self.capacity = float(burst_size)
        self.refill_rate = max_requests / period_seconds
        self.poll_interval = poll_interval

        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = self.capacity
        self._last_refill = clock()

        self._admitted = 0
        self._waits = 0

    @classmethod
    def from_settings(cls, settings) -> "RateLimiter":
        """Build from IGSettings."""
        return cls(
            max_requests=settings.rate_limit_max_requests,
            period_seconds=settings.rate_limit_period_seconds,
            burst_size=settings.rate_limit_burst_size,
            enabled=settings.enable_rate_limiting,
            poll_interval=settings.rate_limit_poll_interval,
        )

    def _refill(self) -> None:
        """Add tokens for elapsed time. Caller holds the lock."""
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    def _try_take(self) -> float:
        """
        Consume one token if available.

        Returns:
            0.0 on success, otherwise seconds until the next token
        """
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                self._admitted += 1
                return 0.0
            return (1.0 - self._tokens) / self.refill_rate

    def admit(self) -> bool:
        """
        Non-blocking admission.

        Returns:
            True if a token was consumed
        """
        if not self.enabled:
            return True
        return self._try_take() == 0.0

    def wait_for_admission(
        self,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> None:
        """
        Block until a token is available.

        Lock held only during the check, never during the wait.

        Args:
            timeout: Max wait time in seconds (None = wait forever)
            cancel_event: Aborts the wait when set

        Raises:
            RateLimitError: If timeout exceeded while waiting
            OperationCancelledError: If cancel_event is set
        """
        if not self.enabled:
            return

        start_time = self._clock()
        waited = False

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Cancelled while waiting for admission")

            wait_time = self._try_take()
            if wait_time == 0.0:
                if waited:
                    self._record_wait(self._clock() - start_time)
                return

            if timeout is not None:
                elapsed = self._clock() - start_time
                if elapsed >= timeout:
                    raise RateLimitError(
                        "Local rate limit admission timed out",
                        retry_after=wait_time
                    )
                wait_time = min(wait_time, timeout - elapsed)

            if not waited:
                logger.debug(f"Rate limit reached, next token in {wait_time:.3f}s")
                waited = True

            # Short slices so cancellation is noticed promptly
            self._sleep(min(wait_time, self.poll_interval))

    async def wait_for_admission_async(
        self,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> None:
        """
        Async admission (same contract as wait_for_admission).

        Raises:
            RateLimitError: If timeout exceeded
            OperationCancelledError: If cancel_event is set
        """
        if not self.enabled:
            return

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        waited = False

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Cancelled while waiting for admission")

            wait_time = self._try_take()
            if wait_time == 0.0:
                if waited:
                    self._record_wait(loop.time() - start_time)
                return

            if timeout is not None:
                elapsed = loop.time() - start_time
                if elapsed >= timeout:
                    raise RateLimitError(
                        "Local rate limit admission timed out",
                        retry_after=wait_time
                    )
                wait_time = min(wait_time, timeout - elapsed)

            waited = True
            await asyncio.sleep(min(wait_time, self.poll_interval))

    def _record_wait(self, seconds: float) -> None:
        with self._lock:
            self._waits += 1
        get_metrics().track_admission_wait(seconds)

    def available_tokens(self) -> float:
        """
        Tokens currently in the bucket.

        Returns:
            Token count in [0, capacity]
        """
        if not self.enabled:
            return self.capacity
        with self._lock:
            self._refill()
            return self._tokens

    def reset(self) -> None:
        """Refill the bucket to capacity."""
        with self._lock:
            self._tokens = self.capacity
            self._last_refill = self._clock()

    def get_stats(self) -> dict:
        """
        Get rate limiter statistics.

        Returns:
            Dict with limits, current tokens and counters
        """
        tokens = self.available_tokens()
        with self._lock:
            return {
                "enabled": self.enabled,
                "max_requests": self.max_requests,
                "period_seconds": self.period_seconds,
                "capacity": self.capacity,
                "tokens": tokens,
                "admitted": self._admitted,
                "waits": self._waits,
            }

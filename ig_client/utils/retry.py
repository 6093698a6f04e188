"""
Resilient request pipeline.

Wraps every authenticated operation with rate-limiter admission,
proactive credential renewal, a single renew-and-retry on expired
credentials and fixed-delay retries on remote rate limiting.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar, Optional, Awaitable, TYPE_CHECKING
import logging

from ..exceptions import (
    IGError,
    CredentialsExpiredError,
    OperationCancelledError,
    RateLimitError,
    UnauthorizedError,
    ValidationError
)
from ..metrics import get_metrics
from ..models import Session, SessionSlot
from .rate_limiter import RateLimiter
from .structured_logging import get_logger

if TYPE_CHECKING:
    from ..auth.authenticator import Authenticator

logger = logging.getLogger(__name__)
events = get_logger(__name__)

T = TypeVar('T')

# Longest async backoff slice between cancellation checks (seconds)
CANCEL_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy for remote rate-limit rejections.

    max_attempts counts operation invocations on the rate-limit path
    (None = unbounded). The single renew-and-retry on expired credentials
    is never counted.
    """
    max_attempts: Optional[int] = None
    backoff_delay: float = 10.0

    def __post_init__(self):
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValidationError(
                f"max_attempts must be None or >= 1, got {self.max_attempts}"
            )
        if self.backoff_delay < 0:
            raise ValidationError(f"backoff_delay must be >= 0, got {self.backoff_delay}")

    @classmethod
    def infinite(cls, backoff_delay: float = 10.0) -> "RetryPolicy":
        return cls(max_attempts=None, backoff_delay=backoff_delay)

    @classmethod
    def with_max_attempts(cls, max_attempts: int, backoff_delay: float = 10.0) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff_delay=backoff_delay)

    @classmethod
    def with_delay(cls, backoff_delay: float) -> "RetryPolicy":
        return cls(backoff_delay=backoff_delay)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        """Build from IGSettings."""
        return cls(
            max_attempts=settings.max_retry_count,
            backoff_delay=settings.retry_delay_secs
        )

    def exhausted(self, attempts: int) -> bool:
        """True once no further attempt is allowed."""
        return self.max_attempts is not None and attempts >= self.max_attempts


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError("Operation cancelled")


class ResilientExecutor:
    """
    Runs operations against the session held in a SessionSlot.

    Features:
    - Local rate-limit admission before every invocation
    - Proactive renewal when the session is within refresh_margin of expiry
    - One renew-and-retry when the remote reports expired credentials
    - Fixed-delay retry on remote rate limiting, bounded by RetryPolicy
    - Anything else propagates unchanged
    """

    def __init__(
        self,
        authenticator: "Authenticator",
        rate_limiter: RateLimiter,
        retry_policy: Optional[RetryPolicy] = None,
        refresh_margin: float = 10.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize executor.

        Args:
            authenticator: Performs credential renewal
            rate_limiter: Shared admission control
            retry_policy: Default policy (default: unbounded, 10s delay)
            refresh_margin: Renew proactively this many seconds before expiry
            sleep: Blocking sleep used for backoff
        """
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.refresh_margin = refresh_margin
        self._sleep = sleep

    # ========== Renewal ==========

    def _renew_proactively(self, slot: SessionSlot) -> None:
        session = slot.session
        if not session.needs_refresh(self.refresh_margin):
            return

        logger.info(
            f"Session for {session.account_id} expires in "
            f"{session.seconds_until_expiry()}s, renewing proactively"
        )
        try:
            slot.replace(self.authenticator.renew(session))
            get_metrics().track_credential_renewal("proactive", "success")
        except IGError as e:
            # The operation may still succeed; expiry is handled reactively
            get_metrics().track_credential_renewal("proactive", "failure")
            logger.warning(f"Proactive renewal failed, continuing: {type(e).__name__}: {e}")

    def _renew_after_expiry(self, slot: SessionSlot, error: CredentialsExpiredError) -> None:
        try:
            slot.replace(self.authenticator.renew(slot.session))
        except OperationCancelledError:
            raise
        except IGError as e:
            get_metrics().track_credential_renewal("expired", "failure")
            logger.error(f"Credential renewal failed: {type(e).__name__}: {e}")
            raise UnauthorizedError(
                f"Credentials expired and could not be renewed: {e.message}",
                {"endpoint": error.endpoint, "cause": type(e).__name__}
            ) from e
        get_metrics().track_credential_renewal("expired", "success")
        events.info("credentials_renewed", endpoint=error.endpoint)

    def _on_expired(self, slot: SessionSlot, error: CredentialsExpiredError,
                    expiry_retried: bool) -> None:
        if expiry_retried:
            logger.error("Credentials rejected again right after renewal")
            raise UnauthorizedError(
                "Credentials rejected after renewal", {"endpoint": error.endpoint}
            ) from error
        logger.warning(f"Credentials expired ({error.endpoint}), renewing and retrying")
        self._renew_after_expiry(slot, error)

    def _on_rate_limited(self, error: RateLimitError, policy: RetryPolicy,
                         attempts: int) -> None:
        if policy.exhausted(attempts):
            logger.error(f"Rate limited, giving up after {attempts} attempt(s)")
            raise error
        get_metrics().track_rate_limit_retry()
        events.warning(
            "rate_limited_retry",
            attempt=attempts,
            max_attempts=policy.max_attempts,
            delay=policy.backoff_delay,
            endpoint=error.endpoint
        )

    # ========== Execution ==========

    def execute(
        self,
        slot: SessionSlot,
        operation: Callable[[Session], T],
        retry_policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> T:
        """
        Run operation(session) with admission, renewal and retries.

        Args:
            slot: Holder of the current session; replaced on renewal
            operation: Callable receiving the current session
            retry_policy: Override for the default policy
            cancel_event: Aborts admission, backoff and further attempts

        Returns:
            Operation result

        Raises:
            UnauthorizedError: Credentials expired and renewal failed or
                did not help
            RateLimitError: Remote rate limiting outlasted max_attempts
            OperationCancelledError: cancel_event was set
            Any other exception raised by the operation, unchanged
        """
        policy = retry_policy or self.retry_policy

        self._renew_proactively(slot)

        attempts = 0
        expiry_retried = False

        while True:
            _check_cancelled(cancel_event)
            self.rate_limiter.wait_for_admission(cancel_event=cancel_event)
            attempts += 1

            try:
                return operation(slot.session)

            except CredentialsExpiredError as e:
                self._on_expired(slot, e, expiry_retried)
                expiry_retried = True
                attempts -= 1

            except RateLimitError as e:
                self._on_rate_limited(e, policy, attempts)
                self._backoff(policy.backoff_delay, cancel_event)

    def _backoff(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            self._sleep(delay)
            return
        # Event.wait returns True as soon as the event is set
        if cancel_event.wait(delay):
            raise OperationCancelledError("Operation cancelled during backoff")

    async def execute_async(
        self,
        slot: SessionSlot,
        operation: Callable[[Session], Awaitable[T]],
        retry_policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> T:
        """
        Async variant of execute for coroutine operations.

        Renewal runs in the default executor; backoff uses asyncio.sleep.
        """
        policy = retry_policy or self.retry_policy
        loop = asyncio.get_running_loop()

        await loop.run_in_executor(None, self._renew_proactively, slot)

        attempts = 0
        expiry_retried = False

        while True:
            _check_cancelled(cancel_event)
            await self.rate_limiter.wait_for_admission_async(cancel_event=cancel_event)
            attempts += 1

            try:
                return await operation(slot.session)

            except CredentialsExpiredError as e:
                await loop.run_in_executor(None, self._on_expired, slot, e, expiry_retried)
                expiry_retried = True
                attempts -= 1

            except RateLimitError as e:
                self._on_rate_limited(e, policy, attempts)
                await self._backoff_async(policy.backoff_delay, cancel_event)

    async def _backoff_async(self, delay: float,
                             cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while True:
            if cancel_event.is_set():
                raise OperationCancelledError("Operation cancelled during backoff")
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, CANCEL_POLL_INTERVAL))

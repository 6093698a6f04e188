"""
Tests for the resilient request pipeline.

The authenticator is a mock; the limiter is disabled unless a test needs
admission behaviour.
"""

import asyncio
import threading
from unittest.mock import Mock, call

import pytest

from ig_client.exceptions import (
    APIError,
    AuthenticationError,
    CredentialsExpiredError,
    OperationCancelledError,
    RateLimitError,
    TransportError,
    UnauthorizedError,
    ValidationError,
)
from ig_client.models import SessionSlot
from ig_client.utils.rate_limiter import RateLimiter
from ig_client.utils.retry import ResilientExecutor, RetryPolicy


def scripted(*outcomes):
    """Operation that raises or returns each outcome in turn, recording sessions."""
    seen = []
    remaining = list(outcomes)

    def operation(session):
        seen.append(session)
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    operation.seen = seen
    return operation


def expired():
    return CredentialsExpiredError("token expired", endpoint="accounts")


def limited():
    return RateLimitError("allowance exceeded", endpoint="accounts")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def authenticator():
    return Mock()


@pytest.fixture
def executor(authenticator, sleeps):
    return ResilientExecutor(
        authenticator=authenticator,
        rate_limiter=RateLimiter(enabled=False),
        retry_policy=RetryPolicy(backoff_delay=10.0),
        refresh_margin=10.0,
        sleep=sleeps.append
    )


class TestRetryPolicy:
    """Policy construction."""

    def test_defaults(self):
        policy = RetryPolicy()

        assert policy.max_attempts is None
        assert policy.backoff_delay == 10.0

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(backoff_delay=-1)

    def test_constructors(self):
        assert RetryPolicy.infinite().max_attempts is None
        assert RetryPolicy.with_max_attempts(3).max_attempts == 3
        assert RetryPolicy.with_delay(2.5).backoff_delay == 2.5

    def test_from_settings(self, settings):
        settings.max_retry_count = 4
        settings.retry_delay_secs = 1.5

        policy = RetryPolicy.from_settings(settings)

        assert policy == RetryPolicy(max_attempts=4, backoff_delay=1.5)

    def test_exhausted(self):
        assert not RetryPolicy().exhausted(10_000)
        assert RetryPolicy(max_attempts=2).exhausted(2)
        assert not RetryPolicy(max_attempts=2).exhausted(1)


class TestExecute:
    """Pipeline behaviour."""

    def test_success_passes_current_session(self, executor, cst_session):
        slot = SessionSlot(cst_session)
        operation = scripted("ok")

        assert executor.execute(slot, operation) == "ok"
        assert operation.seen == [cst_session]

    def test_expired_credentials_renewed_once(self, executor, authenticator, cst_session):
        renewed = cst_session.with_account("ACC1")
        authenticator.renew.return_value = renewed
        slot = SessionSlot(cst_session)
        operation = scripted(expired(), "ok")

        assert executor.execute(slot, operation) == "ok"
        authenticator.renew.assert_called_once_with(cst_session)
        assert operation.seen == [cst_session, renewed]
        assert slot.session is renewed

    def test_second_expiry_is_unauthorized(self, executor, authenticator, cst_session):
        authenticator.renew.return_value = cst_session
        operation = scripted(expired(), expired(), "never")

        with pytest.raises(UnauthorizedError) as exc_info:
            executor.execute(SessionSlot(cst_session), operation)

        assert isinstance(exc_info.value.__cause__, CredentialsExpiredError)
        assert authenticator.renew.call_count == 1
        assert len(operation.seen) == 2

    def test_failed_renewal_is_unauthorized(self, executor, authenticator, oauth_session):
        authenticator.renew.side_effect = UnauthorizedError("refresh token rejected")
        operation = scripted(expired(), "never")

        with pytest.raises(UnauthorizedError) as exc_info:
            executor.execute(SessionSlot(oauth_session), operation)

        assert exc_info.value.__cause__ is authenticator.renew.side_effect
        assert exc_info.value.details["endpoint"] == "accounts"
        assert len(operation.seen) == 1

    @pytest.mark.parametrize("renew_error", [
        RateLimitError("refresh quota", endpoint="session/refresh-token"),
        APIError("server error", status_code=500),
        TransportError("connection reset"),
    ])
    def test_any_renewal_failure_is_unauthorized(self, executor, authenticator, sleeps,
                                                  oauth_session, renew_error):
        authenticator.renew.side_effect = [renew_error, oauth_session]
        operation = scripted(expired(), "ok")

        with pytest.raises(UnauthorizedError) as exc_info:
            executor.execute(SessionSlot(oauth_session), operation,
                             retry_policy=RetryPolicy(max_attempts=None))

        assert exc_info.value.__cause__ is renew_error
        assert exc_info.value.details["cause"] == type(renew_error).__name__
        assert authenticator.renew.call_count == 1
        assert len(operation.seen) == 1
        assert sleeps == []

    def test_rate_limit_retries_until_success(self, executor, sleeps, cst_session):
        operation = scripted(limited(), limited(), limited(), "ok")

        assert executor.execute(SessionSlot(cst_session), operation) == "ok"
        assert len(operation.seen) == 4
        assert sleeps == [10.0, 10.0, 10.0]

    def test_rate_limit_bounded_by_max_attempts(self, executor, sleeps, cst_session):
        operation = scripted(*[limited() for _ in range(5)])

        with pytest.raises(RateLimitError):
            executor.execute(
                SessionSlot(cst_session),
                operation,
                retry_policy=RetryPolicy(max_attempts=3, backoff_delay=1.0)
            )

        assert len(operation.seen) == 3
        assert sleeps == [1.0, 1.0]

    def test_single_attempt_never_sleeps(self, executor, sleeps, cst_session):
        with pytest.raises(RateLimitError):
            executor.execute(
                SessionSlot(cst_session),
                scripted(limited()),
                retry_policy=RetryPolicy(max_attempts=1)
            )

        assert sleeps == []

    def test_expiry_retry_not_counted(self, executor, authenticator, cst_session):
        authenticator.renew.return_value = cst_session
        operation = scripted(expired(), "ok")

        result = executor.execute(
            SessionSlot(cst_session),
            operation,
            retry_policy=RetryPolicy(max_attempts=1)
        )

        assert result == "ok"

    def test_expiry_then_rate_limits(self, executor, authenticator, sleeps, cst_session):
        authenticator.renew.return_value = cst_session
        operation = scripted(expired(), limited(), limited(), "ok")

        result = executor.execute(
            SessionSlot(cst_session),
            operation,
            retry_policy=RetryPolicy(max_attempts=3, backoff_delay=0.5)
        )

        assert result == "ok"
        assert sleeps == [0.5, 0.5]

    @pytest.mark.parametrize("error", [
        APIError("boom", status_code=500),
        AuthenticationError("forbidden"),
        ValueError("bad input"),
    ])
    def test_other_errors_propagate_unchanged(self, executor, authenticator, sleeps, cst_session, error):
        operation = scripted(error, "never")

        with pytest.raises(type(error)) as exc_info:
            executor.execute(SessionSlot(cst_session), operation)

        assert exc_info.value is error
        assert len(operation.seen) == 1
        assert sleeps == []
        authenticator.renew.assert_not_called()


class TestProactiveRenewal:
    """Renewal before the first attempt."""

    def test_expiring_session_renewed_first(self, executor, authenticator,
                                            expiring_oauth_session, oauth_session):
        authenticator.renew.return_value = oauth_session
        slot = SessionSlot(expiring_oauth_session)
        operation = scripted("ok")

        executor.execute(slot, operation)

        authenticator.renew.assert_called_once_with(expiring_oauth_session)
        assert operation.seen == [oauth_session]

    def test_failed_proactive_renewal_still_runs(self, executor, authenticator, expiring_oauth_session):
        authenticator.renew.side_effect = UnauthorizedError("refresh token rejected")
        operation = scripted("ok")

        assert executor.execute(SessionSlot(expiring_oauth_session), operation) == "ok"
        assert operation.seen == [expiring_oauth_session]

    def test_fresh_session_not_renewed(self, executor, authenticator, cst_session):
        executor.execute(SessionSlot(cst_session), scripted("ok"))

        authenticator.renew.assert_not_called()


class TestCancellation:
    """Cancellation signal."""

    def test_cancelled_before_first_attempt(self, executor, cst_session):
        cancel = threading.Event()
        cancel.set()
        operation = scripted("never")

        with pytest.raises(OperationCancelledError):
            executor.execute(SessionSlot(cst_session), operation, cancel_event=cancel)

        assert operation.seen == []

    def test_cancelled_during_backoff(self, executor, cst_session):
        cancel = threading.Event()

        def operation(session):
            cancel.set()
            raise limited()

        with pytest.raises(OperationCancelledError):
            executor.execute(SessionSlot(cst_session), operation, cancel_event=cancel)


class TestAdmission:
    """Every invocation waits for the limiter."""

    def test_admission_per_attempt(self, authenticator, cst_session):
        limiter = Mock()
        executor = ResilientExecutor(authenticator, limiter, RetryPolicy(backoff_delay=0), sleep=lambda s: None)

        executor.execute(SessionSlot(cst_session), scripted(limited(), "ok"))

        assert limiter.wait_for_admission.call_args_list == [call(cancel_event=None)] * 2


class TestExecuteAsync:
    """Coroutine operations."""

    @pytest.mark.asyncio
    async def test_expired_then_success(self, executor, authenticator, cst_session):
        renewed = cst_session.with_account("ACC1")
        authenticator.renew.return_value = renewed
        outcomes = [expired(), "ok"]
        seen = []

        async def operation(session):
            seen.append(session)
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = await executor.execute_async(SessionSlot(cst_session), operation)

        assert result == "ok"
        assert seen == [cst_session, renewed]

    @pytest.mark.asyncio
    async def test_rate_limit_bounded(self, executor, cst_session):
        calls = []

        async def operation(session):
            calls.append(session)
            raise limited()

        with pytest.raises(RateLimitError):
            await executor.execute_async(
                SessionSlot(cst_session),
                operation,
                retry_policy=RetryPolicy(max_attempts=2, backoff_delay=0)
            )

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_cancelled_during_backoff(self, executor, cst_session):
        cancel = threading.Event()
        calls = []

        async def operation(session):
            calls.append(session)
            raise limited()

        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with pytest.raises(OperationCancelledError):
            await asyncio.wait_for(
                executor.execute_async(
                    SessionSlot(cst_session),
                    operation,
                    retry_policy=RetryPolicy(backoff_delay=10.0),
                    cancel_event=cancel
                ),
                timeout=2.0
            )

        assert len(calls) == 1

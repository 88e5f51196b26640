"""Tests for the bounded retry policy."""

from unittest.mock import patch

from opi5_builder.cancel import CancellationToken
from opi5_builder.execution.retry import NON_RETRYABLE, retry_call
from opi5_builder.types import ErrorContext, ErrorKind


def _failing(kind: ErrorKind = ErrorKind.NETWORK_FAILURE):
    calls: list[int] = []

    def operation() -> ErrorContext | None:
        calls.append(1)
        return ErrorContext.create(kind, "failed")

    return operation, calls


class TestRetryCall:
    """Tests for retry_call."""

    def test_first_attempt_success(self) -> None:
        calls: list[int] = []

        def operation() -> None:
            calls.append(1)

        assert retry_call(operation, 3, delay=0) is None
        assert len(calls) == 1

    def test_exhausted_after_n_attempts(self) -> None:
        operation, calls = _failing()

        error = retry_call(operation, 3, delay=0, description="clone", command="git clone x")

        assert len(calls) == 3
        assert error.kind is ErrorKind.RETRIES_EXHAUSTED
        assert error.command == "git clone x"
        assert error.details == {"attempts": 3, "last_error": "NetworkFailure"}

    def test_success_after_failures(self) -> None:
        results = [ErrorContext.create(ErrorKind.NETWORK_FAILURE, "x"), None]

        assert retry_call(lambda: results.pop(0), 3, delay=0) is None
        assert results == []

    def test_non_retryable_short_circuits(self) -> None:
        for kind in NON_RETRYABLE:
            operation, calls = _failing(kind)
            error = retry_call(operation, 3, delay=0)
            assert error.kind is kind
            assert len(calls) == 1

    def test_invalid_attempts(self) -> None:
        operation, calls = _failing()
        error = retry_call(operation, 0, delay=0)
        assert error.kind is ErrorKind.CONFIGURATION_ERROR
        assert calls == []

    def test_sleeps_between_attempts(self) -> None:
        operation, _ = _failing()
        with patch("opi5_builder.execution.retry.time.sleep") as sleep:
            retry_call(operation, 3, delay=2.0)
        assert sleep.call_count == 2
        sleep.assert_called_with(2.0)


class TestRetryCancellation:
    """Tests for cancellation between attempts."""

    def test_cancelled_before_first_attempt(self) -> None:
        token = CancellationToken()
        token.cancel()
        operation, calls = _failing()

        error = retry_call(operation, 3, token=token, delay=0)

        assert error.kind is ErrorKind.CANCELLED
        assert calls == []

    def test_cancelled_during_pause(self) -> None:
        token = CancellationToken()

        def operation() -> ErrorContext:
            token.cancel()
            return ErrorContext.create(ErrorKind.NETWORK_FAILURE, "failed")

        error = retry_call(operation, 3, token=token, delay=60)

        assert error.kind is ErrorKind.CANCELLED
        assert error.details["attempts"] == 1

"""Bounded-attempt retry policy.

Only network-bound steps (clones, package installs, downloads) go through
this policy; deterministic steps such as compilation call the executor
directly, since retrying a compile failure only wastes time.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from opi5_builder.cancel import CancellationToken
from opi5_builder.types import ErrorContext, ErrorKind

logger = logging.getLogger(__name__)

# Pause between attempts (seconds)
RETRY_DELAY = 2.0

# Failures another attempt cannot fix
NON_RETRYABLE = frozenset(
    {ErrorKind.CONFIGURATION_ERROR, ErrorKind.PERMISSION_DENIED, ErrorKind.CANCELLED}
)


def retry_call(
    operation: Callable[[], ErrorContext | None],
    attempts: int,
    *,
    token: CancellationToken | None = None,
    delay: float = RETRY_DELAY,
    description: str = "operation",
    command: str | None = None,
) -> ErrorContext | None:
    """Invoke an operation until it succeeds or attempts run out.

    Args:
        operation: Callable returning None on success or an ErrorContext.
        attempts: Maximum number of invocations (N >= 1).
        token: Cancellation token checked before every attempt and during the pause.
        delay: Pause between attempts in seconds.
        description: Human-readable name for log messages.
        command: Command text recorded on the RetriesExhausted context.

    Returns:
        None on success, a Cancelled context if cancellation was observed,
        otherwise a RetriesExhausted context after N consecutive failures.
    """
    if attempts < 1:
        return ErrorContext.create(
            ErrorKind.CONFIGURATION_ERROR,
            f"Retry attempts must be at least 1 (got {attempts})",
            command=command,
        )

    last_error: ErrorContext | None = None
    for attempt in range(1, attempts + 1):
        if token is not None and token.cancelled:
            logger.warning("Build interrupted, not starting attempt %d: %s", attempt, description)
            return _cancelled(description, command, attempt - 1)

        error = operation()
        if error is None:
            if attempt > 1:
                logger.info("Succeeded on retry (attempt %d/%d): %s", attempt, attempts, description)
            return None

        if error.kind in NON_RETRYABLE:
            return error

        last_error = error
        if attempt < attempts:
            logger.warning(
                "Failed (attempt %d/%d), retrying in %.0fs: %s",
                attempt,
                attempts,
                delay,
                description,
            )
            if token is not None:
                if token.wait(delay):
                    return _cancelled(description, command, attempt)
            else:
                time.sleep(delay)

    return ErrorContext.create(
        ErrorKind.RETRIES_EXHAUSTED,
        f"Failed after {attempts} attempts: {description}",
        command=command,
        attempts=attempts,
        last_error=last_error.kind.value if last_error else None,
    )


def _cancelled(description: str, command: str | None, attempts_made: int) -> ErrorContext:
    return ErrorContext.create(
        ErrorKind.CANCELLED,
        f"Cancelled after {attempts_made} attempt(s): {description}",
        command=command,
        attempts=attempts_made,
    )


__all__ = ["NON_RETRYABLE", "RETRY_DELAY", "retry_call"]

"""Error propagation and exit codes.

Low-level failures are wrapped into an ErrorContext at the execution boundary.
Stage code raises BuildError to hand a fatal context to the pipeline controller,
which is the single place that decides whether the run halts.
"""

from typing import Any

from opi5_builder.types import ErrorContext, ErrorKind

SUCCESS_EXIT_CODE = 0
CANCELLED_EXIT_CODE = 130

# Stable process exit codes per failure kind
EXIT_CODES: dict[ErrorKind, int] = {
    ErrorKind.CONFIGURATION_ERROR: 2,
    ErrorKind.PERMISSION_DENIED: 3,
    ErrorKind.RESOURCE_UNAVAILABLE: 4,
    ErrorKind.NETWORK_FAILURE: 5,
    ErrorKind.PROCESS_EXITED_NON_ZERO: 6,
    ErrorKind.PROCESS_SIGNALED: 7,
    ErrorKind.RETRIES_EXHAUSTED: 8,
    ErrorKind.PRECONDITION_MISSING: 9,
    ErrorKind.CANCELLED: CANCELLED_EXIT_CODE,
    ErrorKind.UNKNOWN: 99,
}


class BuildError(Exception):
    """Raised by stage code to propagate a fatal ErrorContext."""

    def __init__(self, context: ErrorContext) -> None:
        super().__init__(context.message)
        self.context = context

    @property
    def kind(self) -> ErrorKind:
        return self.context.kind


def make_error(
    kind: ErrorKind,
    message: str,
    *,
    command: str | None = None,
    **details: Any,
) -> BuildError:
    """Create a BuildError for the current stage.

    Args:
        kind: Failure kind.
        message: Human-readable message.
        command: Optional command text for diagnosis.
        **details: Additional diagnostic values.

    Returns:
        BuildError wrapping a fresh ErrorContext.
    """
    return BuildError(ErrorContext.create(kind, message, command=command, **details))


def exit_code_for(context: ErrorContext | None) -> int:
    """Map an aggregate pipeline outcome to a process exit code.

    Args:
        context: The failing ErrorContext, or None for success.

    Returns:
        Process exit code.
    """
    if context is None:
        return SUCCESS_EXIT_CODE
    return EXIT_CODES.get(context.kind, EXIT_CODES[ErrorKind.UNKNOWN])


__all__ = [
    "CANCELLED_EXIT_CODE",
    "EXIT_CODES",
    "SUCCESS_EXIT_CODE",
    "BuildError",
    "exit_code_for",
    "make_error",
]

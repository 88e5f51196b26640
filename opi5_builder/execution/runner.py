"""Command executor for external build steps.

This module handles:
- Spawning one external command from a typed Command descriptor
- Forwarding combined stdout/stderr line by line to the log
- Classifying the outcome (exit code or terminating signal) into an ErrorContext
- Applying the bounded retry policy to network-bound commands

Every invocation leaves an INFO entry in the persistent log; failures also
produce one ERROR entry, which reaches the error log.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from functools import partial

from opi5_builder.cancel import CancellationToken
from opi5_builder.errors import BuildError
from opi5_builder.execution.command import Command
from opi5_builder.execution.retry import RETRY_DELAY, retry_call
from opi5_builder.logs import log_error_context
from opi5_builder.types import ErrorContext, ErrorKind

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one command invocation.

    Attributes:
        command: Display text of the command.
        success: Whether the command exited with status 0.
        exit_code: Exit status, or None if the process never ran or was signaled.
        signal: Terminating signal number, if any.
        output: Captured combined output (only when the command requested capture).
        error: ErrorContext describing the failure, None on success.
        attempts: Number of invocations performed.
        duration: Wall-clock seconds spent.
    """

    command: str
    success: bool
    exit_code: int | None = None
    signal: int | None = None
    output: str = ""
    error: ErrorContext | None = None
    attempts: int = 1
    duration: float = 0.0

    def raise_for_error(self) -> CommandResult:
        """Raise BuildError carrying the failure context, if any."""
        if self.error is not None:
            raise BuildError(self.error)
        return self


class CommandExecutor:
    """Runs external commands on behalf of build stages.

    Args:
        token: Cancellation token shared with the signal handlers.
        retry_delay: Pause between retry attempts in seconds.
    """

    def __init__(
        self,
        token: CancellationToken | None = None,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self.token = token or CancellationToken()
        self.retry_delay = retry_delay

    def run(
        self,
        command: Command,
        *,
        show_output: bool = False,
        cancellable: bool = True,
    ) -> CommandResult:
        """Execute a command once.

        Args:
            command: Command descriptor.
            show_output: Echo the child's output to the console as well as the log.
            cancellable: Whether a pending cancellation prevents or stops the run.
                Teardown commands pass False so they always complete.

        Returns:
            CommandResult; failures carry an ErrorContext instead of raising.
        """
        text = command.display()

        if command.is_blank:
            error = ErrorContext.create(
                ErrorKind.CONFIGURATION_ERROR,
                "Refusing to run an empty command",
                command=text,
            )
            log_error_context(error)
            return CommandResult(command=text, success=False, error=error, attempts=0)

        if cancellable and self.token.cancelled:
            error = ErrorContext.create(
                ErrorKind.CANCELLED,
                "Build cancelled before command started",
                command=text,
            )
            logger.warning("Skipping command after cancellation: %s", text)
            return CommandResult(command=text, success=False, error=error, attempts=0)

        logger.info("Executing: %s", text, extra={"echo": show_output})
        if command.cwd is not None:
            logger.debug("Working directory: %s", command.cwd)

        env: dict[str, str] | None = None
        if command.env:
            env = dict(os.environ)
            env.update(command.env)

        started = time.monotonic()
        try:
            process = subprocess.Popen(
                command.argv,
                cwd=command.cwd,
                env=env,
                stdin=subprocess.PIPE if command.input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
                # own process group: cancellation signals the child with its descendants,
                # and a terminal Ctrl-C reaches only this process
                start_new_session=True,
            )
        except FileNotFoundError as e:
            return self._spawn_failed(text, ErrorKind.RESOURCE_UNAVAILABLE, f"Program not found: {e}")
        except PermissionError as e:
            return self._spawn_failed(text, ErrorKind.PERMISSION_DENIED, f"Permission denied: {e}")
        except OSError as e:
            return self._spawn_failed(text, ErrorKind.UNKNOWN, f"Failed to execute command: {e}")

        captured: list[str] = []
        if cancellable:
            with self.token.track(process):
                returncode = self._communicate(process, command, show_output, captured)
        else:
            returncode = self._communicate(process, command, show_output, captured)
        duration = time.monotonic() - started

        output = "".join(captured)
        if returncode == 0:
            logger.debug("Command finished in %.1fs: %s", duration, text)
            return CommandResult(
                command=text,
                success=True,
                exit_code=0,
                output=output,
                duration=duration,
            )

        if cancellable and self.token.cancelled:
            error = ErrorContext.create(
                ErrorKind.CANCELLED,
                "Command interrupted by cancellation",
                command=text,
                exit_code=returncode,
            )
            logger.warning("Command interrupted by cancellation: %s", text)
        elif returncode < 0:
            error = ErrorContext.create(
                ErrorKind.PROCESS_SIGNALED,
                f"Command terminated by signal {-returncode}",
                command=text,
                signal=-returncode,
            )
            log_error_context(error)
        else:
            error = ErrorContext.create(
                ErrorKind.PROCESS_EXITED_NON_ZERO,
                f"Command failed with exit code {returncode}",
                command=text,
                exit_code=returncode,
            )
            log_error_context(error)

        return CommandResult(
            command=text,
            success=False,
            exit_code=returncode if returncode > 0 else None,
            signal=-returncode if returncode < 0 else None,
            output=output,
            error=error,
            duration=duration,
        )

    def run_with_retry(
        self,
        command: Command,
        attempts: int,
        *,
        show_output: bool = False,
        description: str | None = None,
    ) -> CommandResult:
        """Execute a network-bound command under the bounded retry policy.

        Args:
            command: Command descriptor.
            attempts: Maximum number of invocations.
            show_output: Echo output to the console.
            description: Name used in retry log messages (defaults to the command).

        Returns:
            CommandResult of the last attempt; on exhaustion the error is a
            RetriesExhausted context carrying the command text.
        """
        text = command.display()
        results: list[CommandResult] = []

        def attempt() -> ErrorContext | None:
            result = self.run(command, show_output=show_output)
            results.append(result)
            return result.error

        error = retry_call(
            attempt,
            attempts,
            token=self.token,
            delay=self.retry_delay,
            description=description or text,
            command=text,
        )

        last = results[-1] if results else CommandResult(command=text, success=False, attempts=0)
        last.attempts = len(results)
        last.duration = sum(r.duration for r in results)
        last.error = error
        last.success = error is None
        return last

    def check(self, command: Command, *, show_output: bool = False, cancellable: bool = True) -> CommandResult:
        """Run a command and raise BuildError on failure."""
        return self.run(command, show_output=show_output, cancellable=cancellable).raise_for_error()

    def check_with_retry(
        self,
        command: Command,
        attempts: int,
        *,
        show_output: bool = False,
        description: str | None = None,
    ) -> CommandResult:
        """Run a command with retries and raise BuildError on failure."""
        return self.run_with_retry(
            command,
            attempts,
            show_output=show_output,
            description=description,
        ).raise_for_error()

    def _communicate(
        self,
        process: subprocess.Popen[str],
        command: Command,
        show_output: bool,
        captured: list[str],
    ) -> int:
        assert process.stdout is not None
        if process.stdin is not None:
            try:
                process.stdin.write(command.input or "")
                process.stdin.close()
            except BrokenPipeError:
                logger.debug("Child closed stdin early: %s", command.program)

        forward = partial(logger.info, extra={"echo": show_output})
        for line in process.stdout:
            if command.capture:
                captured.append(line)
            forward("%s", line.rstrip("\n"))
        process.stdout.close()
        return process.wait()

    def _spawn_failed(self, text: str, kind: ErrorKind, message: str) -> CommandResult:
        error = ErrorContext.create(kind, message, command=text)
        log_error_context(error)
        return CommandResult(command=text, success=False, error=error)


__all__ = ["CommandExecutor", "CommandResult"]

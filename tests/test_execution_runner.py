"""Tests for execution/runner.py module.

These tests spawn real, harmless processes (sh, true, cat, sleep).
"""

import logging
import threading
from pathlib import Path

import pytest

from opi5_builder.cancel import CancellationToken
from opi5_builder.errors import BuildError
from opi5_builder.execution.command import Command, make_command
from opi5_builder.execution.runner import CommandExecutor, CommandResult
from opi5_builder.types import ErrorKind


@pytest.fixture
def runner() -> CommandExecutor:
    return CommandExecutor(retry_delay=0)


class TestCommand:
    """Tests for Command descriptors."""

    def test_of_converts_arguments(self, tmp_path: Path) -> None:
        cmd = Command.of("cp", tmp_path / "a", 3)
        assert cmd.args == (str(tmp_path / "a"), "3")

    def test_chroot(self, tmp_path: Path) -> None:
        cmd = Command.chroot(tmp_path, "apt-get", "update")
        assert cmd.argv == ["chroot", str(tmp_path), "apt-get", "update"]

    def test_display_quotes(self) -> None:
        cmd = Command.of("sh", "-c", "echo hi")
        assert cmd.display() == "sh -c 'echo hi'"

    def test_blank(self) -> None:
        assert Command("  ").is_blank
        assert not Command("true").is_blank

    def test_make_command(self, tmp_path: Path) -> None:
        cmd = make_command("arm64", "aarch64-linux-gnu-", "Image", "dtbs", cwd=tmp_path, jobs=8)
        assert cmd.argv == ["make", "ARCH=arm64", "CROSS_COMPILE=aarch64-linux-gnu-", "-j8", "Image", "dtbs"]
        assert cmd.cwd == tmp_path


class TestRun:
    """Tests for CommandExecutor.run."""

    def test_success(self, runner: CommandExecutor) -> None:
        result = runner.run(Command.of("true"))
        assert result.success
        assert result.exit_code == 0
        assert result.error is None

    def test_non_zero_exit(self, runner: CommandExecutor) -> None:
        result = runner.run(Command.of("sh", "-c", "exit 3"))

        assert not result.success
        assert result.exit_code == 3
        assert result.error.kind is ErrorKind.PROCESS_EXITED_NON_ZERO
        assert result.error.details["exit_code"] == 3
        assert result.error.command == "sh -c 'exit 3'"

    def test_signaled(self, runner: CommandExecutor) -> None:
        result = runner.run(Command.of("sh", "-c", "kill -TERM $$"))

        assert result.error.kind is ErrorKind.PROCESS_SIGNALED
        assert result.signal == 15
        assert result.exit_code is None

    def test_capture_combined_output(self, runner: CommandExecutor) -> None:
        result = runner.run(Command.of("sh", "-c", "echo out; echo err >&2", capture=True))
        assert "out\n" in result.output
        assert "err\n" in result.output

    def test_output_not_captured_by_default(self, runner: CommandExecutor) -> None:
        result = runner.run(Command.of("echo", "hello"))
        assert result.output == ""

    def test_input(self, runner: CommandExecutor) -> None:
        result = runner.run(Command.of("cat", input="user:secret\n", capture=True))
        assert result.output == "user:secret\n"

    def test_env_overrides(self, runner: CommandExecutor) -> None:
        result = runner.run(Command.of("sh", "-c", "echo $OPI5_TEST", env={"OPI5_TEST": "value"}, capture=True))
        assert result.output.strip() == "value"

    def test_cwd(self, runner: CommandExecutor, tmp_path: Path) -> None:
        result = runner.run(Command.of("pwd", cwd=tmp_path, capture=True))
        assert Path(result.output.strip()).resolve() == tmp_path.resolve()

    def test_blank_command_not_spawned(self, runner: CommandExecutor) -> None:
        result = runner.run(Command(""))
        assert result.error.kind is ErrorKind.CONFIGURATION_ERROR
        assert result.attempts == 0

    def test_missing_program(self, runner: CommandExecutor) -> None:
        result = runner.run(Command.of("opi5-no-such-program"))
        assert result.error.kind is ErrorKind.RESOURCE_UNAVAILABLE

    def test_output_logged(self, runner: CommandExecutor, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="opi5_builder"):
            runner.run(Command.of("echo", "from child"))
        messages = [r.getMessage() for r in caplog.records]
        assert "Executing: echo 'from child'" in messages
        assert "from child" in messages

    def test_failure_logged_once(self, runner: CommandExecutor, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="opi5_builder"):
            runner.run(Command.of("false"))
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "ProcessExitedNonZero" in errors[0].getMessage()


class TestCancellation:
    """Tests for cancellation handling."""

    def test_cancelled_before_start(self) -> None:
        token = CancellationToken()
        token.cancel()
        result = CommandExecutor(token).run(Command.of("true"))
        assert result.error.kind is ErrorKind.CANCELLED
        assert result.attempts == 0

    def test_teardown_runs_after_cancel(self) -> None:
        token = CancellationToken()
        token.cancel()
        result = CommandExecutor(token).run(Command.of("true"), cancellable=False)
        assert result.success

    def test_cancel_terminates_running_child(self) -> None:
        token = CancellationToken()
        timer = threading.Timer(0.2, token.cancel)
        timer.start()
        try:
            result = CommandExecutor(token).run(Command.of("sleep", "30"))
        finally:
            timer.cancel()

        assert result.error.kind is ErrorKind.CANCELLED
        assert result.duration < 30

    def test_child_ignoring_term_is_killed(self) -> None:
        token = CancellationToken(grace_period=0.5)
        timer = threading.Timer(0.2, token.cancel)
        timer.start()
        try:
            result = CommandExecutor(token).run(Command.of("sh", "-c", "trap '' TERM; sleep 30"))
        finally:
            timer.cancel()

        assert result.error.kind is ErrorKind.CANCELLED
        assert result.duration < 10

    def test_cancel_reaches_grandchildren(self) -> None:
        token = CancellationToken()
        timer = threading.Timer(0.2, token.cancel)
        timer.start()
        try:
            # the background sleep inherits the output pipe
            result = CommandExecutor(token).run(Command.of("sh", "-c", "sleep 30 & sleep 30"))
        finally:
            timer.cancel()

        assert result.error.kind is ErrorKind.CANCELLED
        assert result.duration < 10


class TestRetry:
    """Tests for run_with_retry and the check helpers."""

    def test_exhausted(self, runner: CommandExecutor) -> None:
        result = runner.run_with_retry(Command.of("false"), 3)

        assert not result.success
        assert result.attempts == 3
        assert result.error.kind is ErrorKind.RETRIES_EXHAUSTED
        assert result.error.details["attempts"] == 3
        assert result.error.command == "false"

    def test_succeeds_on_second_attempt(self, runner: CommandExecutor, tmp_path: Path) -> None:
        script = "if [ -f marker ]; then exit 0; fi; touch marker; exit 1"
        result = runner.run_with_retry(Command.of("sh", "-c", script, cwd=tmp_path), 3)

        assert result.success
        assert result.attempts == 2
        assert result.error is None

    def test_single_attempt(self, runner: CommandExecutor) -> None:
        result = runner.run_with_retry(Command.of("false"), 1)
        assert result.attempts == 1
        assert result.error.kind is ErrorKind.RETRIES_EXHAUSTED

    def test_blank_not_retried(self, runner: CommandExecutor) -> None:
        result = runner.run_with_retry(Command(""), 3)
        assert result.attempts == 1
        assert result.error.kind is ErrorKind.CONFIGURATION_ERROR

    def test_check_raises(self, runner: CommandExecutor) -> None:
        with pytest.raises(BuildError) as exc_info:
            runner.check(Command.of("false"))
        assert exc_info.value.kind is ErrorKind.PROCESS_EXITED_NON_ZERO

    def test_check_with_retry_raises(self, runner: CommandExecutor) -> None:
        with pytest.raises(BuildError) as exc_info:
            runner.check_with_retry(Command.of("false"), 2)
        assert exc_info.value.kind is ErrorKind.RETRIES_EXHAUSTED

    def test_raise_for_error_passthrough(self) -> None:
        result = CommandResult(command="true", success=True)
        assert result.raise_for_error() is result

"""Process-wide logging sinks.

Every module logs through ``logging.getLogger(__name__)``. This module attaches
three sinks to the package logger once at startup:

- a colorized, timestamped console (rich)
- the persistent full log
- the persistent error log (ERROR and above)

File lines are formatted ``[timestamp] [LEVEL] stage: message``. The stage comes
from the ``current_stage`` context variable unless the record carries one.
"""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from opi5_builder.types import ErrorContext, current_stage

PACKAGE_LOGGER = "opi5_builder"
FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(stage)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)


class StageFilter(logging.Filter):
    """Stamp the current stage name onto records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "stage"):
            record.stage = current_stage.get()
        return True


class EchoFilter(logging.Filter):
    """Drop subprocess output records that were not requested on the console."""

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "echo", True)


class LogSinks:
    """Handle on the attached sinks; close() runs exactly once."""

    def __init__(self, target: logging.Logger, handlers: list[logging.Handler]) -> None:
        self._target = target
        self._handlers = handlers
        self.closed = False

    @property
    def handlers(self) -> list[logging.Handler]:
        return list(self._handlers)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for handler in self._handlers:
            self._target.removeHandler(handler)
            handler.close()

    def __enter__(self) -> "LogSinks":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def configure_logging(
    level: str | int,
    log_file: Path | None,
    error_log_file: Path | None,
    console: Console | None = None,
) -> LogSinks:
    """Attach console and persistent sinks to the package logger.

    Args:
        level: Process-wide threshold (name or numeric level).
        log_file: Full log path (append mode); None disables it.
        error_log_file: Error-only log path (append mode); None disables it.
        console: Rich console for colorized output (stderr by default).

    Returns:
        LogSinks to close at shutdown.
    """
    target = logging.getLogger(PACKAGE_LOGGER)
    target.setLevel(level if isinstance(level, int) else level.upper())

    stage_filter = StageFilter()
    file_formatter = logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT)

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=False,
        log_time_format="[%X]",
    )
    console_handler.setFormatter(logging.Formatter("%(stage)s: %(message)s"))
    console_handler.addFilter(stage_filter)
    console_handler.addFilter(EchoFilter())
    handlers: list[logging.Handler] = [console_handler]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(file_formatter)
        file_handler.addFilter(stage_filter)
        handlers.append(file_handler)

    if error_log_file is not None:
        error_log_file.parent.mkdir(parents=True, exist_ok=True)
        error_handler = logging.FileHandler(error_log_file, mode="a", encoding="utf-8")
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_formatter)
        error_handler.addFilter(stage_filter)
        handlers.append(error_handler)

    for handler in handlers:
        target.addHandler(handler)

    return LogSinks(target, handlers)


def log_error_context(context: ErrorContext, log: logging.Logger | None = None) -> None:
    """Write one ERROR record for a failure, grouped under its stage.

    Args:
        context: The failure to record.
        log: Logger to use (defaults to this module's logger).
    """
    log = log or logger
    message = f"[{context.kind.value}] {context.message}"
    if context.command:
        message += f" (command: {context.command})"
    log.error(message, extra={"stage": context.stage, "error_kind": context.kind.value})


__all__ = [
    "DATE_FORMAT",
    "FILE_FORMAT",
    "PACKAGE_LOGGER",
    "EchoFilter",
    "LogSinks",
    "StageFilter",
    "configure_logging",
    "log_error_context",
]

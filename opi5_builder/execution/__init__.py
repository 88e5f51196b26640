"""External command execution.

This module handles:
- Typed command descriptors (program + argument list, no shell)
- Running one command and classifying its outcome
- Bounded retries for network-bound commands
"""

from opi5_builder.execution.command import Command, make_command
from opi5_builder.execution.retry import NON_RETRYABLE, RETRY_DELAY, retry_call
from opi5_builder.execution.runner import CommandExecutor, CommandResult

__all__ = [
    # Descriptors
    "Command",
    "make_command",
    # Retry policy
    "NON_RETRYABLE",
    "RETRY_DELAY",
    "retry_call",
    # Executor
    "CommandExecutor",
    "CommandResult",
]

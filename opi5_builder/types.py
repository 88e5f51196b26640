"""Shared type definitions for opi5_builder.

This module contains enums, dataclasses and context variables shared across
subpackages to avoid circular imports.
"""

from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Name of the stage currently executing; stamped onto log records and
# error contexts created without an explicit stage.
DEFAULT_STAGE_NAME = "builder"
current_stage: ContextVar[str] = ContextVar("current_stage", default=DEFAULT_STAGE_NAME)


class ErrorKind(str, Enum):
    """Closed taxonomy of failure kinds."""

    CONFIGURATION_ERROR = "ConfigurationError"
    PERMISSION_DENIED = "PermissionDenied"
    RESOURCE_UNAVAILABLE = "ResourceUnavailable"
    NETWORK_FAILURE = "NetworkFailure"
    PROCESS_EXITED_NON_ZERO = "ProcessExitedNonZero"
    PROCESS_SIGNALED = "ProcessSignaled"
    RETRIES_EXHAUSTED = "RetriesExhausted"
    PRECONDITION_MISSING = "PreconditionMissing"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"


class StageStatus(str, Enum):
    """Lifecycle state of a pipeline stage."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class ResourceKind(str, Enum):
    """Kinds of resources under lifecycle management."""

    DIRECTORY = "directory"
    LOOP_DEVICE = "loop-device"
    MOUNT = "mount"
    CHROOT = "chroot"


class DistroVariant(str, Enum):
    """Distribution flavour installed into the root filesystem."""

    DESKTOP = "desktop"
    SERVER = "server"
    EMULATION = "emulation"
    MINIMAL = "minimal"


@dataclass(frozen=True)
class ErrorContext:
    """Structured failure record.

    Attributes:
        kind: Failure kind from the closed taxonomy.
        message: Human-readable description.
        stage: Name of the stage the failure originated in.
        timestamp: When the failure was recorded (UTC).
        command: Literal command text, when the failure came from a process.
        details: Additional diagnostic values (exit code, signal, attempts).
    """

    kind: ErrorKind
    message: str
    stage: str
    timestamp: datetime
    command: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        stage: str | None = None,
        command: str | None = None,
        **details: Any,
    ) -> "ErrorContext":
        """Create a context stamped with the current time and stage."""
        return cls(
            kind=kind,
            message=message,
            stage=stage if stage is not None else current_stage.get(),
            timestamp=datetime.now(timezone.utc),
            command=command,
            details=details,
        )

    def summary(self) -> str:
        """One-line summary: kind, message and originating stage."""
        return f"{self.kind.value} in stage '{self.stage}': {self.message}"


__all__ = [
    "DEFAULT_STAGE_NAME",
    "DistroVariant",
    "ErrorContext",
    "ErrorKind",
    "ResourceKind",
    "StageStatus",
    "current_stage",
]

"""Stage definitions and per-run outcome records."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opi5_builder.cancel import CancellationToken
from opi5_builder.config import BuildConfig
from opi5_builder.errors import BuildError
from opi5_builder.execution.command import Command
from opi5_builder.execution.runner import CommandExecutor, CommandResult
from opi5_builder.types import ErrorContext, ErrorKind, StageStatus

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Everything a stage body needs, passed explicitly.

    Attributes:
        config: Frozen build configuration.
        executor: Command executor bound to the run's cancellation token.
        token: The run's cancellation token.
    """

    config: BuildConfig
    executor: CommandExecutor
    token: CancellationToken

    @property
    def show_output(self) -> bool:
        return self.config.verbose

    def run(self, command: Command, *, cancellable: bool = True) -> CommandResult:
        """Run a deterministic step once; raise BuildError on failure."""
        return self.executor.check(command, show_output=self.show_output, cancellable=cancellable)

    def run_with_retry(self, command: Command, description: str | None = None) -> CommandResult:
        """Run a network-bound step under the retry policy; raise on exhaustion."""
        return self.executor.check_with_retry(
            command,
            self.config.max_retries,
            show_output=self.show_output,
            description=description,
        )

    def optional(self, command: Command, description: str, *, retry: bool = False) -> bool:
        """Run a step whose failure is logged and tolerated.

        Cancellation still propagates as a BuildError.

        Returns:
            True if the step succeeded.
        """
        if retry:
            result = self.executor.run_with_retry(
                command,
                self.config.max_retries,
                show_output=self.show_output,
                description=description,
            )
        else:
            result = self.executor.run(command, show_output=self.show_output)
        if result.error is None:
            return True
        if result.error.kind is ErrorKind.CANCELLED:
            raise BuildError(result.error)
        logger.warning("Optional step failed, continuing: %s (%s)", description, result.error.kind.value)
        return False

    def check_cancelled(self) -> None:
        """Raise a Cancelled BuildError if cancellation was requested."""
        if self.token.cancelled:
            raise BuildError(ErrorContext.create(ErrorKind.CANCELLED, "Build cancelled"))


StageBody = Callable[[StageContext], None]
ArtifactCheck = Callable[[BuildConfig], bool]


@dataclass(frozen=True)
class Stage:
    """One statically defined unit of the build pipeline.

    Attributes:
        name: Stable identifier used in logs and dependency lists.
        ordinal: Position in the fixed order (1-based).
        title: Human-readable title.
        run: Stage body; raises BuildError on fatal failure.
        gate: Name of the BuildConfig flag enabling the stage (None: always runs).
        requires: Names of upstream stages whose output this stage consumes.
        artifact_check: Detects output left on disk by an earlier run, letting a
            skipped stage still satisfy its dependents.
        description: One-line summary for listings.
    """

    name: str
    ordinal: int
    title: str
    run: StageBody
    gate: str | None = None
    requires: tuple[str, ...] = ()
    artifact_check: ArtifactCheck | None = None
    description: str = ""

    def enabled(self, config: BuildConfig) -> bool:
        if self.gate is None:
            return True
        return bool(getattr(config, self.gate))

    def has_artifacts(self, config: BuildConfig) -> bool:
        if self.artifact_check is None:
            return False
        return self.artifact_check(config)


@dataclass
class StageOutcome:
    """State of one stage within a pipeline run."""

    name: str
    title: str
    status: StageStatus = StageStatus.PENDING
    error: ErrorContext | None = None
    started_at: datetime | None = None
    duration: float = 0.0


@dataclass
class PipelineResult:
    """Aggregate outcome of a pipeline run.

    Attributes:
        outcomes: One entry per stage, in pipeline order.
        error: First fatal failure (or Cancelled); None means success.
    """

    outcomes: list[StageOutcome] = field(default_factory=list)
    error: ErrorContext | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return self.error is not None and self.error.kind is ErrorKind.CANCELLED

    def outcome(self, name: str) -> StageOutcome:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    def statuses(self) -> dict[str, StageStatus]:
        return {o.name: o.status for o in self.outcomes}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": None
            if self.error is None
            else {
                "kind": self.error.kind.value,
                "message": self.error.message,
                "stage": self.error.stage,
            },
            "stages": [
                {
                    "name": o.name,
                    "status": o.status.value,
                    "duration": round(o.duration, 1),
                    "error": o.error.kind.value if o.error else None,
                }
                for o in self.outcomes
            ],
        }


__all__ = [
    "ArtifactCheck",
    "PipelineResult",
    "Stage",
    "StageBody",
    "StageContext",
    "StageOutcome",
]

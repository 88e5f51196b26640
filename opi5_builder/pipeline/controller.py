"""Pipeline controller.

Runs the statically defined stages in order. This is the single place that
decides whether a fatal failure halts the run (continue-on-error policy) and
the single place a stage failure is written to the error log.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import datetime, timezone

from opi5_builder.cancel import CancellationToken
from opi5_builder.config import BuildConfig
from opi5_builder.errors import BuildError
from opi5_builder.execution.runner import CommandExecutor
from opi5_builder.logs import log_error_context
from opi5_builder.pipeline.registry import STAGES
from opi5_builder.pipeline.stage import PipelineResult, Stage, StageContext, StageOutcome
from opi5_builder.types import ErrorContext, ErrorKind, StageStatus, current_stage

logger = logging.getLogger(__name__)


def run_pipeline(
    config: BuildConfig,
    token: CancellationToken | None = None,
    executor: CommandExecutor | None = None,
    stages: Sequence[Stage] = STAGES,
) -> PipelineResult:
    """Run the build pipeline.

    Args:
        config: Frozen build configuration.
        token: Cancellation token (shared with signal handlers).
        executor: Command executor; one bound to the token is created if omitted.
        stages: Stage definitions in execution order.

    Returns:
        PipelineResult whose ``error`` is the first fatal ErrorContext (or the
        Cancelled context) and None when every stage succeeded or was skipped.
    """
    if executor is None:
        executor = CommandExecutor(token, retry_delay=config.retry_delay)
    if token is None:
        token = executor.token
    ctx = StageContext(config=config, executor=executor, token=token)

    result = PipelineResult(outcomes=[StageOutcome(s.name, s.title) for s in stages])
    by_name = {s.name: s for s in stages}
    total = len(stages)

    for stage, outcome in zip(stages, result.outcomes):
        if token.cancelled:
            _report_cancellation(token)
            result.error = _cancelled_at(stage)
            logger.warning("Build cancelled before stage %s", stage.name)
            break

        if not stage.enabled(config):
            outcome.status = StageStatus.SKIPPED
            logger.info("Skipping stage %d/%d: %s (%s disabled)", stage.ordinal, total, stage.title, stage.gate)
            continue

        error = _run_stage(stage, outcome, ctx, result, by_name, total)
        if error is None:
            continue

        if token.cancelled and error.kind is not ErrorKind.CANCELLED:
            # a step that ignores cancellation can still be killed by the same signal
            log_error_context(error)
            error = ErrorContext.create(
                ErrorKind.CANCELLED,
                f"Build cancelled during stage {stage.name}",
                stage=stage.name,
                cause=error.kind.value,
            )
            outcome.error = error

        if error.kind is ErrorKind.CANCELLED:
            _report_cancellation(token)
            logger.warning("Build cancelled during stage %s", stage.name)
            result.error = error
            break

        log_error_context(error)
        if result.error is None:
            result.error = error
        if not config.continue_on_error:
            logger.error("Build halted at stage %s", stage.name)
            break
        logger.warning("Continuing after failure in stage %s", stage.name)

    if result.success:
        logger.info("Build pipeline completed successfully")
    return result


def _run_stage(
    stage: Stage,
    outcome: StageOutcome,
    ctx: StageContext,
    result: PipelineResult,
    by_name: dict[str, Stage],
    total: int,
) -> ErrorContext | None:
    reset = current_stage.set(stage.name)
    outcome.status = StageStatus.RUNNING
    outcome.started_at = datetime.now(timezone.utc)
    started = time.monotonic()
    try:
        logger.info("Stage %d/%d: %s", stage.ordinal, total, stage.title)
        error = _check_preconditions(stage, ctx.config, result, by_name)
        if error is None:
            try:
                stage.run(ctx)
            except BuildError as e:
                error = e.context
            except PermissionError as e:
                error = ErrorContext.create(ErrorKind.PERMISSION_DENIED, str(e))
            except OSError as e:
                logger.exception("Unexpected I/O failure in stage %s", stage.name)
                error = ErrorContext.create(ErrorKind.UNKNOWN, str(e))
    finally:
        outcome.duration = time.monotonic() - started
        current_stage.reset(reset)

    outcome.error = error
    if error is None:
        outcome.status = StageStatus.SUCCEEDED
        logger.info("Stage %s completed in %.1fs", stage.name, outcome.duration)
    else:
        outcome.status = StageStatus.FAILED
    return error


def _check_preconditions(
    stage: Stage,
    config: BuildConfig,
    result: PipelineResult,
    by_name: dict[str, Stage],
) -> ErrorContext | None:
    """Verify every required upstream stage produced its output.

    A dependency is satisfied when it succeeded in this run, or when it was
    skipped and its artifacts from an earlier run are present.
    """
    for name in stage.requires:
        upstream = by_name.get(name)
        status = result.outcome(name).status if upstream is not None else None

        if status is StageStatus.SUCCEEDED:
            continue
        if status is StageStatus.SKIPPED and upstream is not None and upstream.has_artifacts(config):
            logger.info("Using existing output of skipped stage %s", name)
            continue

        if status is StageStatus.SKIPPED:
            reason = "was skipped and left no output"
        elif status is StageStatus.FAILED:
            reason = "failed"
        else:
            reason = "did not run"
        return ErrorContext.create(
            ErrorKind.PRECONDITION_MISSING,
            f"Stage {stage.name} requires output of stage {name}, which {reason}",
            upstream=name,
        )
    return None


def _report_cancellation(token: CancellationToken) -> None:
    if not token.reported:
        token.reported = True
        logger.warning("Received %s, cancelling build and cleaning up...", token.reason)


def _cancelled_at(stage: Stage) -> ErrorContext:
    return ErrorContext.create(
        ErrorKind.CANCELLED,
        f"Build cancelled before stage {stage.name}",
        stage=stage.name,
    )


__all__ = ["run_pipeline"]

"""Stage pipeline.

This module handles:
- Static stage definitions in dependency order
- Gating, precondition checks and continue-on-error policy
- Aggregating per-stage outcomes into one result
"""

from opi5_builder.pipeline.stage import (
    PipelineResult,
    Stage,
    StageContext,
    StageOutcome,
)

__all__ = ["PipelineResult", "Stage", "StageContext", "StageOutcome"]

# The controller and the stage registry import the stage modules, which in
# turn import this package; access them via opi5_builder.pipeline.controller.

"""Pipeline module - DAG scheduling, stage execution and ephemeral targets."""

from convoy.pipeline.domain.models import (
    ActionDefinition,
    PipelineDefinition,
    PipelineResult,
    RunRecord,
    StageDefinition,
    TargetSpec,
)
from convoy.pipeline.domain.enums import GatePolicy, PipelineVerdict, StageStatus
from convoy.pipeline.application.engine import PipelineEngine

__all__ = [
    "ActionDefinition",
    "PipelineDefinition",
    "PipelineResult",
    "RunRecord",
    "StageDefinition",
    "TargetSpec",
    "GatePolicy",
    "PipelineVerdict",
    "StageStatus",
    "PipelineEngine",
]

"""
Pipeline domain models.

Definitions (PipelineDefinition, StageDefinition, ActionDefinition,
TargetSpec) are immutable once loaded. Run-time records (RunRecord,
PipelineResult) are mutable and serialize into the run report.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from convoy.pipeline.domain.enums import (
    GatePolicy,
    PipelineVerdict,
    ProbeType,
    StageStatus,
    TargetMode,
)
from convoy.pipeline.domain.templates import referenced_names
from convoy.shared.domain.base_model import BaseDomainModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutputSpec:
    """
    Where a declared artifact's value comes from.

    Exactly one of: `path` (file that must exist once the action succeeds),
    `value` (string, placeholders rendered) or `stdout` (trimmed stdout).
    """

    path: Optional[str] = None
    value: Optional[str] = None
    stdout: bool = False

    @property
    def source(self) -> str:
        if self.path is not None:
            return "path"
        if self.value is not None:
            return "value"
        return "stdout"


@dataclass(frozen=True)
class ActionDefinition:
    """A single external-tool invocation."""

    name: str
    run: Tuple[str, ...]
    secrets: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    inputs: Tuple[str, ...] = ()
    outputs: Mapping[str, OutputSpec] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = None

    def templated_texts(self) -> List[str]:
        texts = list(self.run) + list(self.env.values())
        if self.cwd:
            texts.append(self.cwd)
        for spec in self.outputs.values():
            if spec.path is not None:
                texts.append(spec.path)
            if spec.value is not None:
                texts.append(spec.value)
        return texts

    def required_artifacts(self) -> List[str]:
        """Declared inputs plus every ${artifacts.*} reference."""
        names = list(self.inputs)
        for name in referenced_names(self.templated_texts(), "artifacts"):
            if name not in names:
                names.append(name)
        return names


@dataclass(frozen=True)
class ReadinessProbe:
    """How to decide that an ephemeral target accepts work."""

    type: ProbeType
    host: str = "127.0.0.1"
    port: Optional[int] = None
    url: Optional[str] = None
    expected_status: Optional[int] = None  # None: any status below 400
    command: Tuple[str, ...] = ()
    timeout: float = 60.0  # Overall readiness budget
    interval: float = 1.0  # First delay between attempts
    backoff: float = 1.5  # Delay multiplier per failed attempt
    max_interval: float = 10.0
    attempt_timeout: float = 5.0  # Budget of a single probe attempt


@dataclass(frozen=True)
class TargetSpec:
    """Ephemeral target started for a stage and torn down when it ends."""

    start: Tuple[str, ...]
    stop: Tuple[str, ...] = ()
    mode: TargetMode = TargetMode.PROCESS
    probe: Optional[ReadinessProbe] = None
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    stop_timeout: float = 30.0

    def templated_texts(self) -> List[str]:
        texts = list(self.start) + list(self.stop) + list(self.env.values())
        if self.probe is not None:
            texts.extend(self.probe.command)
            if self.probe.url:
                texts.append(self.probe.url)
        return texts


@dataclass(frozen=True)
class StageDefinition:
    """Named unit of pipeline work."""

    id: str
    actions: Tuple[ActionDefinition, ...]
    needs: Tuple[str, ...] = ()
    gate: GatePolicy = GatePolicy.BLOCKING
    timeout: Optional[float] = None
    target: Optional[TargetSpec] = None

    def secret_names(self) -> List[str]:
        names: List[str] = []
        declared = [a.secrets for a in self.actions]
        if self.target is not None:
            declared.append(self.target.secrets)
        for group in declared:
            for name in group:
                if name not in names:
                    names.append(name)
        return names


@dataclass(frozen=True)
class PipelineDefinition:
    """Ordered set of stages whose `needs` relation forms a DAG."""

    name: str
    stages: Tuple[StageDefinition, ...]
    parallel_limit: Optional[int] = None
    fail_fast: bool = False

    @property
    def stage_ids(self) -> List[str]:
        return [s.id for s in self.stages]

    def stage(self, stage_id: str) -> StageDefinition:
        for s in self.stages:
            if s.id == stage_id:
                return s
        raise KeyError(stage_id)

    def secret_names(self) -> List[str]:
        """Every secret name declared anywhere in the pipeline."""
        names: List[str] = []
        for s in self.stages:
            for name in s.secret_names():
                if name not in names:
                    names.append(name)
        return names


# ---------------------------------------------------------------------------
# Run-time records
# ---------------------------------------------------------------------------


@dataclass
class ActionRecord(BaseDomainModel):
    """Outcome of one action invocation."""

    name: str
    command: str = ""
    exit_code: Optional[int] = None
    duration: float = 0.0
    timed_out: bool = False
    log_path: Optional[str] = None


@dataclass
class RunRecord(BaseDomainModel):
    """
    Per-stage execution outcome.

    Created pending when the run starts, finalized when the stage's actions
    complete or the stage is skipped.
    """

    stage_id: str
    status: StageStatus = StageStatus.PENDING
    gate: GatePolicy = GatePolicy.BLOCKING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration: float = 0.0
    actions: List[ActionRecord] = field(default_factory=list)
    artifacts: Dict[str, str] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None
    error: Optional[str] = None
    output: str = ""
    skip_reason: Optional[str] = None
    target_handle: Optional[str] = None
    teardown_error: Optional[str] = None

    def start(self) -> None:
        """Mark stage as running."""
        self.status = StageStatus.RUNNING
        self.started_at = utcnow()

    def succeed(self) -> None:
        """Mark stage as succeeded."""
        self.status = StageStatus.SUCCEEDED
        self.mark_finished()

    def fail(self, kind: str, error: str, output: str = "") -> None:
        """Mark stage as failed with diagnosis."""
        self.status = StageStatus.FAILED
        self.error_kind = kind
        self.error = error
        if output:
            self.output = output
        self.mark_finished()

    def skip(self, reason: str) -> None:
        """Mark stage as skipped without running it."""
        self.status = StageStatus.SKIPPED
        self.skip_reason = reason
        self.finished_at = utcnow()

    def mark_finished(self) -> None:
        """Stamp the end time; called again once target teardown completes."""
        self.finished_at = utcnow()
        if self.started_at:
            self.duration = (self.finished_at - self.started_at).total_seconds()


@dataclass
class FailureDetail(BaseDomainModel):
    """The first failing stage, surfaced to the caller."""

    stage_id: str
    error_kind: Optional[str]
    error: Optional[str]
    output: str = ""


@dataclass
class PipelineResult(BaseDomainModel):
    """Aggregated pipeline execution result. The sole externally consumed output."""

    run_id: str
    pipeline_name: str
    verdict: PipelineVerdict
    records: List[RunRecord] = field(default_factory=list)
    first_failure: Optional[FailureDetail] = None
    warnings: List[str] = field(default_factory=list)
    artifacts: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration: float = 0.0
    report_path: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.verdict == PipelineVerdict.SUCCEEDED

    def record(self, stage_id: str) -> RunRecord:
        for r in self.records:
            if r.stage_id == stage_id:
                return r
        raise KeyError(stage_id)

    def statuses(self) -> Dict[str, StageStatus]:
        return {r.stage_id: r.status for r in self.records}

    def summary(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {s.value: 0 for s in StageStatus}
        for r in self.records:
            counts[r.status.value] += 1
        return {"verdict": self.verdict.value, "stages": len(self.records), **counts}

"""
Pipeline domain enums.

Defines stage, verdict and ephemeral target states.
"""

from enum import Enum


class StageStatus(Enum):
    """Per-stage execution status recorded on a RunRecord."""

    PENDING = "pending"  # Defined, not yet dispatched
    RUNNING = "running"  # Actions executing
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # Never ran: upstream failure, fail-fast or cancellation

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class PipelineVerdict(Enum):
    """Final pipeline verdict. Exactly one per run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class GatePolicy(Enum):
    """
    How a stage's failure affects its dependents.

    BLOCKING failures skip every downstream stage; ADVISORY failures are
    reported as warnings and dependents still run.
    """

    BLOCKING = "blocking"
    ADVISORY = "advisory"


class TargetMode(Enum):
    """How an ephemeral target is launched."""

    PROCESS = "process"  # Start command is the long-running target itself
    DETACHED = "detached"  # Start command prints an id (e.g. container id) and exits


class ProbeType(Enum):
    """Readiness probe kinds."""

    TCP = "tcp"
    HTTP = "http"
    COMMAND = "command"


class TargetState(Enum):
    """Ephemeral target lifecycle states."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    IN_USE = "in_use"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

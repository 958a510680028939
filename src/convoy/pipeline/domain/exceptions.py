"""
Pipeline error taxonomy.

Definition-time errors (PipelineDefinitionError subclasses) abort a run
before any stage executes. Stage-level errors are contained to the
owning stage; `kind` is the stable identifier written to run records.
"""

from typing import List, Optional

from convoy.shared.domain.exceptions import ConfigurationError, ConvoyError


class PipelineDefinitionError(ConfigurationError):
    """Invalid pipeline definition; no stage runs."""

    kind = "invalid_definition"


class DuplicateStage(PipelineDefinitionError):
    """Two stages share an identifier."""

    kind = "duplicate_stage"

    def __init__(self, stage_id: str):
        self.stage_id = stage_id
        super().__init__(f"Stage '{stage_id}' is defined more than once", {"stage_id": stage_id})


class UnknownDependency(PipelineDefinitionError):
    """A `needs` entry names a stage that does not exist."""

    kind = "unknown_dependency"

    def __init__(self, stage_id: str, dependency: str):
        self.stage_id = stage_id
        self.dependency = dependency
        super().__init__(
            f"Stage '{stage_id}' needs unknown stage '{dependency}'",
            {"stage_id": stage_id, "dependency": dependency},
        )


class CycleDetected(PipelineDefinitionError):
    """The `needs` relation is not acyclic."""

    kind = "cycle_detected"

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}", {"cycle": cycle})


class StageError(ConvoyError):
    """Base for errors contained to a single stage."""

    kind = "stage_error"

    def __init__(self, message: str, stage_id: Optional[str] = None, output: str = "", context: dict = None):
        super().__init__(message, context)
        self.stage_id = stage_id
        self.output = output


class ArtifactUnavailable(StageError):
    """An artifact was read before any stage published it."""

    kind = "artifact_unavailable"

    def __init__(self, key: str, stage_id: Optional[str] = None):
        self.key = key
        super().__init__(f"Artifact '{key}' has not been published", stage_id=stage_id, context={"key": key})


class SecretUnavailable(StageError):
    """A declared secret could not be resolved from the secret store."""

    kind = "secret_unavailable"

    def __init__(self, name: str, stage_id: Optional[str] = None):
        self.name = name
        super().__init__(f"Secret '{name}' is not available", stage_id=stage_id, context={"name": name})


class ActionExecutionFailed(StageError):
    """An external command returned failure."""

    kind = "action_failed"

    def __init__(self, action: str, exit_code: Optional[int], message: str, stage_id: Optional[str] = None, output: str = ""):
        self.action = action
        self.exit_code = exit_code
        super().__init__(message, stage_id=stage_id, output=output, context={"action": action, "exit_code": exit_code})


class TargetStartFailed(StageError):
    """The ephemeral target could not be launched or exited before becoming ready."""

    kind = "target_start_failed"


class ReadinessTimeout(StageError):
    """The readiness probe did not succeed within its timeout."""

    kind = "readiness_timeout"

    def __init__(self, timeout: float, attempts: int, stage_id: Optional[str] = None):
        self.timeout = timeout
        self.attempts = attempts
        super().__init__(
            f"Target not ready after {timeout}s ({attempts} probe attempts)",
            stage_id=stage_id,
            context={"timeout": timeout, "attempts": attempts},
        )


class TeardownFailed(ConvoyError):
    """Stopping an ephemeral target failed. Non-fatal; reported as a leak warning."""

    kind = "teardown_failed"

    def __init__(self, handle: str, reason: str):
        self.handle = handle
        self.reason = reason
        super().__init__(f"Teardown of target '{handle}' failed: {reason}", {"handle": handle})

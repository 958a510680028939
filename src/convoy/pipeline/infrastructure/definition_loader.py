"""
Pipeline definition loader.

Reads a YAML document, validates it with pydantic and converts it into
immutable domain definitions. Every definition-time check (schema,
placeholders, duplicate ids, unknown dependencies, cycles) happens here,
before any stage can run.
"""

import re
import shlex
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from convoy.pipeline.application.scheduler import validate_graph
from convoy.pipeline.domain.enums import GatePolicy, ProbeType, TargetMode
from convoy.pipeline.domain.exceptions import PipelineDefinitionError
from convoy.pipeline.domain.models import (
    ActionDefinition,
    OutputSpec,
    PipelineDefinition,
    ReadinessProbe,
    StageDefinition,
    TargetSpec,
)
from convoy.pipeline.domain.templates import NAMESPACES, find_references
from convoy.shared.infrastructure.config import settings
from convoy.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_NAME_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$"
_SECRET_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"

Command = Union[str, List[str]]


def _argv(command: Command) -> tuple:
    if isinstance(command, str):
        return tuple(shlex.split(command))
    return tuple(str(part) for part in command)


def _validate_secret_names(names: List[str]) -> List[str]:
    for name in names:
        if not re.match(_SECRET_PATTERN, name):
            raise ValueError(f"invalid secret name '{name}'")
    return names


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OutputModel(_Strict):
    path: Optional[str] = None
    value: Optional[str] = None
    stdout: bool = False

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "OutputModel":
        sources = [self.path is not None, self.value is not None, self.stdout]
        if sum(sources) != 1:
            raise ValueError("output needs exactly one of 'path', 'value' or 'stdout: true'")
        return self


class ActionModel(_Strict):
    name: str = Field(..., pattern=_NAME_PATTERN)
    run: Command
    secrets: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    inputs: List[str] = Field(default_factory=list)
    outputs: Dict[str, OutputModel] = Field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("run")
    @classmethod
    def _non_empty(cls, value: Command) -> Command:
        if not _argv(value):
            raise ValueError("run must not be empty")
        return value

    @field_validator("secrets")
    @classmethod
    def _secret_names(cls, value: List[str]) -> List[str]:
        return _validate_secret_names(value)


class ProbeModel(_Strict):
    type: Literal["tcp", "http", "command"]
    host: str = "127.0.0.1"
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    url: Optional[str] = None
    expected_status: Optional[int] = None
    command: Command = Field(default_factory=list)
    timeout: float = Field(default=60.0, gt=0)
    interval: float = Field(default=1.0, gt=0)
    backoff: float = Field(default=1.5, ge=1.0)
    max_interval: float = Field(default=10.0, gt=0)
    attempt_timeout: float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def _required_fields(self) -> "ProbeModel":
        if self.type == "tcp" and self.port is None:
            raise ValueError("tcp probe needs 'port'")
        if self.type == "http" and not self.url:
            raise ValueError("http probe needs 'url'")
        if self.type == "command" and not _argv(self.command):
            raise ValueError("command probe needs 'command'")
        return self


class TargetModel(_Strict):
    start: Command
    stop: Optional[Command] = None
    mode: Literal["process", "detached"] = "process"
    probe: Optional[ProbeModel] = None
    env: Dict[str, str] = Field(default_factory=dict)
    secrets: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    stop_timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("secrets")
    @classmethod
    def _secret_names(cls, value: List[str]) -> List[str]:
        return _validate_secret_names(value)

    @model_validator(mode="after")
    def _detached_needs_stop(self) -> "TargetModel":
        if self.mode == "detached" and not self.stop:
            raise ValueError("detached targets need a 'stop' command")
        return self


class StageModel(_Strict):
    id: str = Field(..., pattern=_NAME_PATTERN)
    needs: Union[str, List[str]] = Field(default_factory=list)
    gate: Literal["blocking", "advisory"] = "blocking"
    timeout: Optional[float] = Field(default=None, gt=0)
    target: Optional[TargetModel] = None
    actions: List[ActionModel] = Field(..., min_length=1)

    @field_validator("needs")
    @classmethod
    def _as_list(cls, value: Union[str, List[str]]) -> List[str]:
        return [value] if isinstance(value, str) else value


class PipelineModel(_Strict):
    name: str = "pipeline"
    parallel_limit: Optional[int] = Field(default=None, ge=1)
    fail_fast: bool = False
    stages: List[StageModel] = Field(..., min_length=1)

    @field_validator("stages", mode="before")
    @classmethod
    def _mapping_form(cls, value: Any) -> Any:
        # `stages: {build: {...}}` is accepted as well as a list
        if isinstance(value, dict):
            return [{"id": key, **(body or {})} for key, body in value.items()]
        return value


def _check_placeholders(texts: List[str], where: str, allow_target: bool) -> None:
    for text in texts:
        for namespace, name in find_references(text):
            if namespace == "secrets":
                raise PipelineDefinitionError(
                    f"{where}: '${{secrets.{name}}}' is not allowed; declare the secret and read it from the environment"
                )
            if namespace not in NAMESPACES:
                raise PipelineDefinitionError(f"{where}: unknown placeholder namespace '{namespace}'")
            if namespace == "run" and name not in ("id", "name"):
                raise PipelineDefinitionError(f"{where}: unknown placeholder '${{run.{name}}}'")
            if namespace == "stage" and name != "id":
                raise PipelineDefinitionError(f"{where}: unknown placeholder '${{stage.{name}}}'")
            if namespace == "target" and (name != "id" or not allow_target):
                raise PipelineDefinitionError(f"{where}: '${{target.{name}}}' is not available here")


def _to_probe(model: ProbeModel) -> ReadinessProbe:
    return ReadinessProbe(
        type=ProbeType(model.type),
        host=model.host,
        port=model.port,
        url=model.url,
        expected_status=model.expected_status,
        command=_argv(model.command) if model.command else (),
        timeout=model.timeout,
        interval=model.interval,
        backoff=model.backoff,
        max_interval=model.max_interval,
        attempt_timeout=model.attempt_timeout,
    )


def _to_target(stage_id: str, model: TargetModel) -> TargetSpec:
    spec = TargetSpec(
        start=_argv(model.start),
        stop=_argv(model.stop) if model.stop else (),
        mode=TargetMode(model.mode),
        probe=_to_probe(model.probe) if model.probe else None,
        env=dict(model.env),
        secrets=tuple(model.secrets),
        cwd=model.cwd,
        stop_timeout=model.stop_timeout or settings.teardown_timeout,
    )
    where = f"stage '{stage_id}' target"
    before_start = list(spec.start) + list(spec.env.values())
    if spec.cwd:
        before_start.append(spec.cwd)
    _check_placeholders(before_start, where, allow_target=False)
    after_start = list(spec.stop)
    if spec.probe is not None:
        after_start.extend(spec.probe.command)
        after_start.extend(t for t in (spec.probe.url, spec.probe.host) if t)
    _check_placeholders(after_start, where, allow_target=True)
    return spec


def _to_action(stage_id: str, model: ActionModel, has_target: bool) -> ActionDefinition:
    action = ActionDefinition(
        name=model.name,
        run=_argv(model.run),
        secrets=tuple(model.secrets),
        env=dict(model.env),
        inputs=tuple(model.inputs),
        outputs={
            key: OutputSpec(path=out.path, value=out.value, stdout=out.stdout)
            for key, out in model.outputs.items()
        },
        cwd=model.cwd,
        timeout=model.timeout,
    )
    _check_placeholders(action.templated_texts(), f"stage '{stage_id}' action '{model.name}'", allow_target=has_target)
    return action


def _to_definition(model: PipelineModel) -> PipelineDefinition:
    stages = []
    for stage in model.stages:
        names = [a.name for a in stage.actions]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise PipelineDefinitionError(f"stage '{stage.id}' has duplicate action names: {sorted(duplicates)}")
        stages.append(
            StageDefinition(
                id=stage.id,
                actions=tuple(_to_action(stage.id, a, stage.target is not None) for a in stage.actions),
                needs=tuple(dict.fromkeys(stage.needs)),
                gate=GatePolicy(stage.gate),
                timeout=stage.timeout,
                target=_to_target(stage.id, stage.target) if stage.target else None,
            )
        )
    return PipelineDefinition(
        name=model.name,
        stages=tuple(stages),
        parallel_limit=model.parallel_limit,
        fail_fast=model.fail_fast,
    )


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        lines.append(f"{location}: {item['msg']}")
    return "; ".join(lines)


def parse_definition(data: Any, source: str = "<memory>") -> PipelineDefinition:
    """
    Build a validated PipelineDefinition from already-parsed data.

    Raises:
        PipelineDefinitionError: Schema or placeholder problems
        DuplicateStage, UnknownDependency, CycleDetected: Graph problems
    """
    if not isinstance(data, dict):
        raise PipelineDefinitionError(f"{source}: pipeline definition must be a mapping")
    try:
        model = PipelineModel.model_validate(data)
    except ValidationError as e:
        raise PipelineDefinitionError(f"{source}: {_format_validation_error(e)}") from e

    definition = _to_definition(model)
    validate_graph(definition)
    logger.debug("pipeline_definition_loaded", source=source, pipeline=definition.name, stages=len(definition.stages))
    return definition


def load_definition(path: Union[str, Path]) -> PipelineDefinition:
    """
    Load a pipeline definition from a YAML file.

    Raises:
        PipelineDefinitionError: Unreadable file, invalid YAML or invalid definition
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PipelineDefinitionError(f"Cannot read pipeline definition {path}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(f"{path}: invalid YAML: {e}") from e
    return parse_definition(data, source=str(path))

"""Shared test fixtures for the Convoy test suite."""

import sys
from typing import Dict, List

import pytest

from convoy.pipeline.domain.enums import GatePolicy
from convoy.pipeline.domain.models import (
    ActionDefinition,
    OutputSpec,
    PipelineDefinition,
    StageDefinition,
)
from convoy.secrets.application.secret_store import SecretNotFound, SecretStore
from convoy.shared.infrastructure.execution.command_executor import CommandExecutor


def py(code: str) -> tuple:
    """argv running a Python snippet with the interpreter running the tests."""
    return (sys.executable, "-c", code)


def action(name: str = "step", code: str = "pass", **kwargs) -> ActionDefinition:
    outputs = kwargs.pop("outputs", {})
    return ActionDefinition(
        name=name,
        run=py(code),
        outputs={k: v if isinstance(v, OutputSpec) else OutputSpec(value=v) for k, v in outputs.items()},
        **kwargs,
    )


def stage(stage_id: str, *actions: ActionDefinition, needs=(), gate=GatePolicy.BLOCKING, **kwargs) -> StageDefinition:
    return StageDefinition(
        id=stage_id,
        actions=tuple(actions) or (action(),),
        needs=tuple(needs),
        gate=gate,
        **kwargs,
    )


def pipeline(*stages: StageDefinition, name: str = "test-pipeline", **kwargs) -> PipelineDefinition:
    return PipelineDefinition(name=name, stages=tuple(stages), **kwargs)


class RecordingSecretStore(SecretStore):
    """Stub store remembering every name it was asked for."""

    def __init__(self, values: Dict[str, str]):
        self.values = dict(values)
        self.requested: List[str] = []

    def resolve(self, name: str) -> str:
        self.requested.append(name)
        if name not in self.values:
            raise SecretNotFound(name)
        return self.values[name]


@pytest.fixture
def executor():
    """Command executor with a short default timeout."""
    return CommandExecutor(default_timeout=30)


@pytest.fixture
def secret_store():
    """Recording secret store preloaded with two credentials."""
    return RecordingSecretStore({"REGISTRY_TOKEN": "reg-s3cr3t-value", "SCANNER_TOKEN": "scan-t0ken-value"})


@pytest.fixture
def reports_dir(tmp_path):
    """Temporary reports directory."""
    path = tmp_path / "runs"
    path.mkdir()
    return path

"""
Stage Runner.

Executes one stage's actions strictly in declared order and produces a
single RunRecord. The first failing action aborts the stage; outputs are
staged locally and committed to the Artifact Bus only when every action
succeeded.
"""

import os
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import structlog

from convoy.pipeline.application.artifact_bus import ArtifactBus
from convoy.pipeline.domain.exceptions import (
    ActionExecutionFailed,
    ArtifactUnavailable,
    SecretUnavailable,
    StageError,
)
from convoy.pipeline.domain.models import ActionDefinition, ActionRecord, RunRecord, StageDefinition
from convoy.pipeline.domain.templates import render
from convoy.secrets.application.secret_store import SecretNotFound, SecretStore, mask_secrets
from convoy.shared.infrastructure.execution.command_executor import CommandExecutor, CommandResult

logger = structlog.get_logger(__name__)

_SLUG = re.compile(r"[^A-Za-z0-9_.-]+")


def _tail(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    return text if len(text) <= limit else "..." + text[-limit:]


class StageRunner:
    """
    Runs the actions of a stage.

    Args:
        executor: Command executor used for every action
        run_id: Identifier of the pipeline run (${run.id})
        pipeline_name: Pipeline name (${run.name})
        logs_dir: Root directory for per-action log files; None disables them
        protected_secrets: Every secret name declared in the pipeline; scrubbed
            from the environment each action inherits
        default_timeout: Action timeout when the action declares none
        output_tail_chars: Captured output kept on failure records
    """

    def __init__(
        self,
        executor: CommandExecutor,
        run_id: str,
        pipeline_name: str = "",
        logs_dir: Optional[Path] = None,
        protected_secrets: Sequence[str] = (),
        default_timeout: float = 1800.0,
        output_tail_chars: int = 4000,
    ):
        self.executor = executor
        self.run_id = run_id
        self.pipeline_name = pipeline_name
        self.logs_dir = Path(logs_dir) if logs_dir is not None else None
        self.protected_secrets = list(protected_secrets)
        self.default_timeout = default_timeout
        self.output_tail_chars = output_tail_chars

    async def execute(
        self,
        stage: StageDefinition,
        bus: ArtifactBus,
        secrets: SecretStore,
        record: Optional[RunRecord] = None,
        variables: Optional[Mapping[str, Mapping[str, str]]] = None,
    ) -> RunRecord:
        """
        Execute a stage and return its finalized RunRecord.

        Args:
            stage: Stage to run
            bus: Artifact bus to read inputs from and publish outputs to
            secrets: Store queried only for names each action declares
            record: Record to fill in (created when omitted)
            variables: Extra placeholder namespaces, e.g. {"target": {"id": ...}}

        Stage-level errors are recorded on the RunRecord, never raised.
        Task cancellation propagates.
        """
        record = record or RunRecord(stage_id=stage.id, gate=stage.gate)
        if record.started_at is None:
            record.start()
        log = logger.bind(stage_id=stage.id)
        staged: Dict[str, str] = {}

        try:
            for index, action in enumerate(stage.actions, start=1):
                await self._run_action(stage, action, index, bus, secrets, staged, record, variables or {})
        except StageError as e:
            log.warning("stage_failed", error_kind=e.kind, error=str(e))
            record.fail(e.kind, str(e), _tail(e.output, self.output_tail_chars))
            return record

        bus.publish(staged, producer=stage.id)
        record.artifacts = dict(staged)
        record.succeed()
        log.info("stage_succeeded", duration=record.duration, actions=len(stage.actions))
        return record

    async def _run_action(
        self,
        stage: StageDefinition,
        action: ActionDefinition,
        index: int,
        bus: ArtifactBus,
        secrets: SecretStore,
        staged: Dict[str, str],
        record: RunRecord,
        variables: Mapping[str, Mapping[str, str]],
    ) -> None:
        def artifact(key: str) -> str:
            if key in staged:
                return staged[key]
            try:
                return bus.get(key)
            except ArtifactUnavailable:
                raise ArtifactUnavailable(key, stage_id=stage.id) from None

        for key in action.required_artifacts():
            artifact(key)

        def lookup(namespace: str, name: str) -> str:
            if namespace == "artifacts":
                return artifact(name)
            if namespace == "run" and name in ("id", "name"):
                return self.run_id if name == "id" else self.pipeline_name
            if namespace == "stage" and name == "id":
                return stage.id
            scope = variables.get(namespace, {})
            if name in scope:
                return scope[name]
            raise ActionExecutionFailed(
                action.name, None, f"Unresolvable placeholder ${{{namespace}.{name}}}", stage_id=stage.id
            )

        argv = [render(arg, lookup) for arg in action.run]
        cwd = render(action.cwd, lookup) if action.cwd else None
        env = self._base_environment(secrets)
        env.update({k: render(v, lookup) for k, v in action.env.items()})

        # Just-in-time: only names this action declares are ever resolved
        resolved: List[str] = []
        for name in action.secrets:
            try:
                value = secrets.resolve(name)
            except SecretNotFound:
                raise SecretUnavailable(name, stage_id=stage.id) from None
            env[name] = value
            resolved.append(value)

        action_record = ActionRecord(name=action.name, command=mask_secrets(" ".join(argv), resolved))
        record.actions.append(action_record)
        logger.info("action_started", stage_id=stage.id, action=action.name, index=index)

        result = await self.executor.run_async(
            argv,
            cwd=cwd,
            env=env,
            timeout=action.timeout or self.default_timeout,
            inherit_env=False,
        )
        stdout = mask_secrets(result.stdout, resolved)
        stderr = mask_secrets(result.stderr, resolved)

        action_record.exit_code = result.exit_code
        action_record.duration = result.duration
        action_record.timed_out = result.is_timeout
        log_path = self._write_log(stage.id, index, action.name, action_record.command, result, stdout, stderr)
        if log_path is not None:
            action_record.log_path = str(log_path)
            record.logs.append(str(log_path))

        if not result.is_success:
            reason = "timed out" if result.is_timeout else f"exited with code {result.exit_code}"
            raise ActionExecutionFailed(
                action.name,
                result.exit_code,
                f"Action '{action.name}' {reason}",
                stage_id=stage.id,
                output="\n".join(part for part in (stdout, stderr) if part),
            )

        base_dir = Path(cwd) if cwd else Path.cwd()
        for key, spec in action.outputs.items():
            if spec.path is not None:
                path = Path(render(spec.path, lookup))
                if not path.is_absolute():
                    path = base_dir / path
                if not path.exists():
                    raise ActionExecutionFailed(
                        action.name,
                        result.exit_code,
                        f"Action '{action.name}' did not produce declared output '{key}' at {path}",
                        stage_id=stage.id,
                    )
                staged[key] = str(path.resolve())
            elif spec.value is not None:
                staged[key] = mask_secrets(render(spec.value, lookup), resolved)
            else:
                staged[key] = stdout.strip()

        logger.info("action_succeeded", stage_id=stage.id, action=action.name, duration=result.duration)

    def _base_environment(self, secrets: SecretStore) -> Dict[str, str]:
        return secrets.scrub_environment(os.environ, self.protected_secrets)

    def _write_log(
        self,
        stage_id: str,
        index: int,
        action_name: str,
        command: str,
        result: CommandResult,
        stdout: str,
        stderr: str,
    ) -> Optional[Path]:
        if self.logs_dir is None:
            return None
        path = self.logs_dir / stage_id / f"{index:02d}-{_SLUG.sub('_', action_name)}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            f"$ {command}\n"
            f"--- stdout ---\n{stdout}\n"
            f"--- stderr ---\n{stderr}\n"
            f"--- exit code: {result.exit_code}{' (timeout)' if result.is_timeout else ''}"
            f" duration: {result.duration:.2f}s ---\n",
            encoding="utf-8",
        )
        return path

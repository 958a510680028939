"""
Pipeline Engine - composition root.

Loads a pipeline definition, builds the per-run Secret Store Adapter and
Artifact Bus, drives the Job Graph Scheduler and emits one structured
report per run.
"""

import asyncio
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import structlog

from convoy.pipeline.application.artifact_bus import ArtifactBus
from convoy.pipeline.application.lifecycle import EphemeralTargetManager
from convoy.pipeline.application.probes import Probe, build_probe
from convoy.pipeline.application.report import write_report
from convoy.pipeline.application.scheduler import JobGraphScheduler, validate_graph
from convoy.pipeline.application.stage_runner import StageRunner
from convoy.pipeline.domain.exceptions import ArtifactUnavailable, SecretUnavailable, StageError
from convoy.pipeline.domain.models import PipelineDefinition, PipelineResult, RunRecord, StageDefinition
from convoy.pipeline.domain.templates import render
from convoy.pipeline.infrastructure.definition_loader import load_definition
from convoy.secrets.application.secret_store import EnvironmentSecretStore, SecretNotFound, SecretStore
from convoy.shared.infrastructure.config import settings
from convoy.shared.infrastructure.execution.command_executor import CommandExecutor

logger = structlog.get_logger(__name__)

ProbeFactory = Callable[..., Probe]


def new_run_id() -> str:
    """Sortable, unique run id: 20260101T120000-1a2b3c."""
    return f"{datetime.now().strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:6]}"


class PipelineEngine:
    """
    Runs pipelines end to end.

    Args:
        secret_store: Where declared secrets are resolved (environment by default)
        executor: Command executor shared by actions, probes and targets
        reports_dir: Root for per-run directories (logs, artifacts.json, report.json)
        parallel_limit: Max concurrent stages unless the definition overrides it
        fail_fast: Stop dispatching after the first blocking failure
        probe_factory: Builds readiness probes from definitions
    """

    def __init__(
        self,
        secret_store: Optional[SecretStore] = None,
        executor: Optional[CommandExecutor] = None,
        reports_dir: Union[str, Path, None] = None,
        parallel_limit: Optional[int] = None,
        fail_fast: bool = False,
        probe_factory: ProbeFactory = build_probe,
    ):
        self.secret_store = secret_store or EnvironmentSecretStore(prefix=settings.secret_env_prefix)
        self.executor = executor or CommandExecutor(default_timeout=settings.default_action_timeout)
        self.reports_dir = Path(reports_dir or settings.reports_dir)
        self.parallel_limit = parallel_limit or settings.parallel_limit
        self.fail_fast = fail_fast
        self.probe_factory = probe_factory

    def load(self, path: Union[str, Path]) -> PipelineDefinition:
        return load_definition(path)

    async def run(
        self,
        definition: Union[PipelineDefinition, str, Path],
        cancel_event: Optional[asyncio.Event] = None,
        run_id: Optional[str] = None,
    ) -> PipelineResult:
        """
        Execute a pipeline and write its report.

        Raises:
            PipelineDefinitionError: Before any stage runs, if the definition is invalid
            ReportError: If report.json cannot be written
        """
        if not isinstance(definition, PipelineDefinition):
            definition = self.load(definition)
        validate_graph(definition)

        run_id = run_id or new_run_id()
        run_dir = self.reports_dir / run_id
        bus = ArtifactBus()
        runner = StageRunner(
            self.executor,
            run_id=run_id,
            pipeline_name=definition.name,
            logs_dir=run_dir,
            protected_secrets=definition.secret_names(),
            default_timeout=self.executor.default_timeout,
            output_tail_chars=settings.output_tail_chars,
        )
        leaks: List[str] = []

        async def execute_stage(stage: StageDefinition, record: RunRecord) -> RunRecord:
            if stage.target is None:
                return await runner.execute(stage, bus, self.secret_store, record=record)
            return await self._execute_with_target(stage, record, runner, bus, run_id, definition, run_dir, leaks)

        scheduler = JobGraphScheduler(
            execute_stage,
            parallel_limit=self.parallel_limit,
            fail_fast=self.fail_fast,
            cancel_event=cancel_event,
        )

        structlog.contextvars.bind_contextvars(run_id=run_id)
        try:
            result = await scheduler.run(definition, run_id=run_id)
        finally:
            structlog.contextvars.unbind_contextvars("run_id")

        result.artifacts = dict(bus.snapshot())
        result.warnings.extend(leaks)
        bus.save(run_dir / "artifacts.json")
        write_report(result, run_dir / "report.json")
        return result

    async def _execute_with_target(
        self,
        stage: StageDefinition,
        record: RunRecord,
        runner: StageRunner,
        bus: ArtifactBus,
        run_id: str,
        definition: PipelineDefinition,
        run_dir: Path,
        leaks: List[str],
    ) -> RunRecord:
        target = stage.target

        def lookup(namespace: str, name: str) -> str:
            if namespace == "artifacts":
                try:
                    return bus.get(name)
                except ArtifactUnavailable:
                    raise ArtifactUnavailable(name, stage_id=stage.id) from None
            if namespace == "run":
                return run_id if name == "id" else definition.name
            if namespace == "stage":
                return stage.id
            raise KeyError(f"{namespace}.{name}")

        manager: Optional[EphemeralTargetManager] = None
        try:
            env, secret_values = self._target_environment(stage, definition, lambda text: render(text, lookup))
            manager = EphemeralTargetManager(
                target,
                self.executor,
                stage_id=stage.id,
                env=env,
                lookup=lookup,
                log_path=run_dir / stage.id / "target.log",
                secret_values=secret_values,
            )
            probe = None
            if target.probe is not None:
                probe = self.probe_factory(target.probe, self.executor, render=manager.render, env=env)

            async with manager.session(probe):
                record.target_handle = manager.handle
                await runner.execute(
                    stage, bus, self.secret_store, record=record, variables={"target": {"id": manager.handle}}
                )
        except StageError as e:
            logger.warning("stage_target_failed", stage_id=stage.id, error_kind=e.kind, error=str(e))
            record.fail(e.kind, str(e), e.output[-settings.output_tail_chars:] if e.output else "")
        finally:
            if manager is not None:
                record.target_handle = manager.handle
                if manager.teardown_error is not None:
                    record.teardown_error = str(manager.teardown_error)
                    leaks.append(f"stage '{stage.id}': {manager.teardown_error} (possible resource leak)")
                if manager.log_path is not None and manager.log_path.exists():
                    record.logs.append(str(manager.log_path))
            if record.status.is_terminal:
                # Teardown finished after the runner closed the record
                record.mark_finished()
        return record

    def _target_environment(
        self,
        stage: StageDefinition,
        definition: PipelineDefinition,
        render_text: Callable[[str], str],
    ) -> Tuple[Dict[str, str], List[str]]:
        """Environment for the target's commands, plus the secret values it carries."""
        target = stage.target
        env = self.secret_store.scrub_environment(os.environ, definition.secret_names())
        env.update({k: render_text(v) for k, v in target.env.items()})
        secret_values = []
        for name in target.secrets:
            try:
                env[name] = self.secret_store.resolve(name)
            except SecretNotFound:
                raise SecretUnavailable(name, stage_id=stage.id) from None
            secret_values.append(env[name])
        return env, secret_values

"""
Job Graph Scheduler.

Holds the DAG of stages, enforces topological ordering, dispatches
independent stages concurrently and propagates failures downstream as
skips. Stage execution itself is delegated to an injected executor.
"""

import asyncio
import heapq
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from convoy.pipeline.domain.enums import GatePolicy, PipelineVerdict, StageStatus
from convoy.pipeline.domain.exceptions import CycleDetected, DuplicateStage, UnknownDependency
from convoy.pipeline.domain.models import (
    FailureDetail,
    PipelineDefinition,
    PipelineResult,
    RunRecord,
    StageDefinition,
    utcnow,
)

logger = structlog.get_logger(__name__)

StageExecutor = Callable[[StageDefinition, RunRecord], Awaitable[RunRecord]]

SKIP_FAIL_FAST = "fail_fast"
SKIP_CANCELLED = "cancelled"


def validate_graph(definition: PipelineDefinition) -> None:
    """
    Check stage id uniqueness, dependency references and acyclicity.

    Raises:
        DuplicateStage, UnknownDependency, CycleDetected
    """
    ids = set()
    for stage in definition.stages:
        if stage.id in ids:
            raise DuplicateStage(stage.id)
        ids.add(stage.id)

    for stage in definition.stages:
        for dep in stage.needs:
            if dep not in ids:
                raise UnknownDependency(stage.id, dep)

    needs = {s.id: list(s.needs) for s in definition.stages}
    visiting: List[str] = []
    done = set()

    def visit(node: str) -> None:
        if node in done:
            return
        if node in visiting:
            raise CycleDetected(visiting[visiting.index(node):] + [node])
        visiting.append(node)
        for dep in needs[node]:
            visit(dep)
        visiting.pop()
        done.add(node)

    for stage in definition.stages:
        visit(stage.id)


def topological_order(definition: PipelineDefinition) -> List[str]:
    """
    Deterministic topological order (Kahn), ties broken by declaration order.

    Assumes validate_graph() passed.
    """
    position = {s.id: i for i, s in enumerate(definition.stages)}
    indegree = {s.id: len(set(s.needs)) for s in definition.stages}
    dependents: Dict[str, List[str]] = {s.id: [] for s in definition.stages}
    for s in definition.stages:
        for dep in set(s.needs):
            dependents[dep].append(s.id)

    ready = [position[sid] for sid, n in indegree.items() if n == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        sid = definition.stages[heapq.heappop(ready)].id
        order.append(sid)
        for child in dependents[sid]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, position[child])
    return order


def execution_levels(definition: PipelineDefinition) -> List[List[str]]:
    """Group stages into waves whose members have no edge between them."""
    depth: Dict[str, int] = {}
    stages = {s.id: s for s in definition.stages}
    for sid in topological_order(definition):
        depth[sid] = 1 + max((depth[d] for d in stages[sid].needs), default=-1)
    levels: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for sid in topological_order(definition):
        levels[depth[sid]].append(sid)
    return levels


class JobGraphScheduler:
    """
    Runs a pipeline definition respecting its dependency graph.

    Args:
        stage_executor: Coroutine running one stage and finalizing its record
        parallel_limit: Max concurrently running stages (1 = sequential)
        fail_fast: Stop dispatching after the first blocking failure
        cancel_event: When set, stop dispatching and cancel in-flight stages
    """

    def __init__(
        self,
        stage_executor: StageExecutor,
        parallel_limit: int = 4,
        fail_fast: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.stage_executor = stage_executor
        self.parallel_limit = max(1, parallel_limit)
        self.fail_fast = fail_fast
        self.cancel_event = cancel_event

    async def run(self, definition: PipelineDefinition, run_id: Optional[str] = None) -> PipelineResult:
        """
        Execute every stage of the definition.

        Raises:
            PipelineDefinitionError: Before any stage runs, if the graph is invalid
        """
        validate_graph(definition)
        order = topological_order(definition)
        stages = {s.id: s for s in definition.stages}
        records = {sid: RunRecord(stage_id=sid, gate=stages[sid].gate) for sid in order}
        limit = definition.parallel_limit or self.parallel_limit
        fail_fast = self.fail_fast or definition.fail_fast
        run_id = run_id or uuid.uuid4().hex[:12]
        log = logger.bind(run_id=run_id, pipeline=definition.name)

        result = PipelineResult(
            run_id=run_id,
            pipeline_name=definition.name,
            verdict=PipelineVerdict.FAILED,
            started_at=utcnow(),
        )
        log.info("pipeline_started", stages=len(order), parallel_limit=limit, fail_fast=fail_fast)

        running: Dict[asyncio.Task, str] = {}
        failures: List[str] = []
        halted: Optional[str] = None
        cancel_waiter: Optional[asyncio.Task] = None
        if self.cancel_event is not None:
            cancel_waiter = asyncio.create_task(self.cancel_event.wait())

        try:
            while True:
                if halted is None and self.cancel_event is not None and self.cancel_event.is_set():
                    halted = SKIP_CANCELLED
                self._dispatch(order, stages, records, running, limit, halted, log)
                if not running:
                    break

                waiting = set(running)
                if cancel_waiter is not None:
                    waiting.add(cancel_waiter)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if cancel_waiter is not None and cancel_waiter in done:
                    cancel_waiter = None
                    halted = SKIP_CANCELLED
                    log.warning("pipeline_cancel_requested", in_flight=sorted(running.values()))
                    for task in running:
                        task.cancel()

                for task in done:
                    sid = running.pop(task, None)
                    if sid is None:
                        continue
                    record = records[sid]
                    self._settle(task, record, log)
                    if record.status == StageStatus.FAILED:
                        failures.append(sid)
                        if fail_fast and record.gate == GatePolicy.BLOCKING and halted is None:
                            halted = SKIP_FAIL_FAST
                            log.warning("pipeline_fail_fast", stage_id=sid)
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if running:
                # Outer cancellation: in-flight stages still get their teardown
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)
                for task, sid in running.items():
                    self._settle(task, records[sid], log)

        result.records = [records[sid] for sid in order]
        result.cancelled = halted == SKIP_CANCELLED
        self._finalize(result, failures, records)
        log.info("pipeline_finished", **result.summary(), cancelled=result.cancelled)
        return result

    def _dispatch(
        self,
        order: List[str],
        stages: Dict[str, StageDefinition],
        records: Dict[str, RunRecord],
        running: Dict[asyncio.Task, str],
        limit: int,
        halted: Optional[str],
        log,
    ) -> None:
        # Skips can cascade, so settle until nothing changes
        changed = True
        while changed:
            changed = False
            for sid in order:
                record = records[sid]
                if record.status != StageStatus.PENDING:
                    continue
                if halted is not None:
                    record.skip(halted)
                    log.info("stage_skipped", stage_id=sid, reason=halted)
                    changed = True
                    continue

                blocker = self._blocking_dependency(stages[sid], records)
                if blocker is not None:
                    dep, status = blocker
                    record.skip(f"upstream stage '{dep}' {status.value}")
                    log.info("stage_skipped", stage_id=sid, upstream=dep, upstream_status=status.value)
                    changed = True
                    continue

                if self._eligible(stages[sid], records) and len(running) < limit:
                    record.start()
                    log.info("stage_started", stage_id=sid)
                    task = asyncio.create_task(self._execute(stages[sid], record), name=f"stage:{sid}")
                    running[task] = sid

    @staticmethod
    def _blocking_dependency(stage: StageDefinition, records: Dict[str, RunRecord]) -> Optional[Tuple[str, StageStatus]]:
        for dep in stage.needs:
            upstream = records[dep]
            if upstream.status == StageStatus.SKIPPED:
                return dep, upstream.status
            if upstream.status == StageStatus.FAILED and upstream.gate == GatePolicy.BLOCKING:
                return dep, upstream.status
        return None

    @staticmethod
    def _eligible(stage: StageDefinition, records: Dict[str, RunRecord]) -> bool:
        for dep in stage.needs:
            upstream = records[dep]
            if upstream.status == StageStatus.SUCCEEDED:
                continue
            if upstream.status == StageStatus.FAILED and upstream.gate == GatePolicy.ADVISORY:
                continue
            return False
        return True

    async def _execute(self, stage: StageDefinition, record: RunRecord) -> RunRecord:
        if stage.timeout is None:
            return await self.stage_executor(stage, record)
        try:
            return await asyncio.wait_for(self.stage_executor(stage, record), timeout=stage.timeout)
        except asyncio.TimeoutError:
            record.fail("stage_timeout", f"Stage '{stage.id}' exceeded its {stage.timeout}s timeout")
            return record

    @staticmethod
    def _settle(task: asyncio.Task, record: RunRecord, log) -> None:
        """Finalize a record from its task outcome if the executor did not."""
        if task.cancelled():
            if not record.status.is_terminal:
                record.fail("cancelled", f"Stage '{record.stage_id}' was cancelled")
            log.warning("stage_cancelled", stage_id=record.stage_id)
            return
        error = task.exception()
        if error is not None:
            log.error("stage_crashed", stage_id=record.stage_id, error=str(error), error_type=type(error).__name__)
            record.fail("internal_error", f"{type(error).__name__}: {error}")
            return
        if not record.status.is_terminal:
            record.fail("internal_error", "Stage executor returned without finalizing the record")
        log.info("stage_finished", stage_id=record.stage_id, status=record.status.value, duration=record.duration)

    @staticmethod
    def _finalize(result: PipelineResult, failures: List[str], records: Dict[str, RunRecord]) -> None:
        # First failure = earliest finish; stages completing in one wakeup come back unordered
        failures = sorted(failures, key=lambda sid: records[sid].finished_at)
        blocking_failed = [sid for sid in failures if records[sid].gate == GatePolicy.BLOCKING]
        for sid in failures:
            if records[sid].gate == GatePolicy.ADVISORY:
                result.warnings.append(f"advisory stage '{sid}' failed: {records[sid].error}")

        all_ok = all(
            r.status == StageStatus.SUCCEEDED
            or (r.status == StageStatus.FAILED and r.gate == GatePolicy.ADVISORY)
            for r in result.records
        )
        result.verdict = PipelineVerdict.SUCCEEDED if all_ok else PipelineVerdict.FAILED

        if result.verdict == PipelineVerdict.FAILED:
            first = blocking_failed[0] if blocking_failed else None
            if first is not None:
                r = records[first]
                result.first_failure = FailureDetail(stage_id=first, error_kind=r.error_kind, error=r.error, output=r.output)
            else:
                skipped = next((r for r in result.records if r.status == StageStatus.SKIPPED), None)
                if skipped is not None:
                    result.first_failure = FailureDetail(
                        stage_id=skipped.stage_id, error_kind=skipped.skip_reason, error="stage did not run"
                    )

        result.finished_at = utcnow()
        result.duration = (result.finished_at - result.started_at).total_seconds()

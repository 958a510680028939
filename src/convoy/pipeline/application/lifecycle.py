"""
Ephemeral Target Lifecycle Manager.

Starts a process or container under test, polls it until ready, hands it to
the stage runner and guarantees teardown on every exit path.

State machine:
    NOT_STARTED → STARTING → READY → IN_USE → STOPPING → STOPPED
    any state → FAILED
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Iterable, Optional

import structlog

from convoy.pipeline.application.probes import Probe
from convoy.pipeline.domain.enums import TargetMode, TargetState
from convoy.pipeline.domain.exceptions import ReadinessTimeout, TargetStartFailed, TeardownFailed
from convoy.pipeline.domain.models import ReadinessProbe, TargetSpec
from convoy.pipeline.domain.templates import render
from convoy.secrets.application.secret_store import mask_secrets
from convoy.shared.infrastructure.execution.command_executor import CommandExecutor, SpawnedProcess

logger = structlog.get_logger(__name__)

Lookup = Callable[[str, str], str]


def _no_lookup(namespace: str, name: str) -> str:
    raise KeyError(f"{namespace}.{name}")


class EphemeralTargetManager:
    """
    Owns one ephemeral target for the duration of a stage.

    Args:
        spec: Target definition
        executor: Command executor for start/stop commands
        stage_id: Owning stage, for logs and errors
        env: Complete environment for start/stop commands (secrets included)
        lookup: Resolves placeholders other than ${target.*}
        log_path: Where a PROCESS-mode target's output is written
        secret_values: Values masked in target output, errors and log
    """

    def __init__(
        self,
        spec: TargetSpec,
        executor: CommandExecutor,
        stage_id: str = "",
        env: Optional[Dict[str, str]] = None,
        lookup: Lookup = _no_lookup,
        log_path: Optional[Path] = None,
        secret_values: Iterable[str] = (),
    ):
        self.spec = spec
        self.executor = executor
        self.stage_id = stage_id
        self.env = env
        self.log_path = log_path
        self._secret_values = tuple(v for v in secret_values if v)
        self._lookup = lookup
        self._state = TargetState.NOT_STARTED
        self._handle: Optional[str] = None
        self._process: Optional[SpawnedProcess] = None
        self._stopped = False
        self._stop_calls = 0
        self._teardown_error: Optional[TeardownFailed] = None
        self._stop_lock = asyncio.Lock()
        self._log = logger.bind(stage_id=stage_id)

    @property
    def state(self) -> TargetState:
        return self._state

    @property
    def handle(self) -> Optional[str]:
        return self._handle

    @property
    def teardown_error(self) -> Optional[TeardownFailed]:
        return self._teardown_error

    @property
    def stop_invocations(self) -> int:
        """How many times teardown actually ran (0 or 1)."""
        return self._stop_calls

    def _transition(self, new_state: TargetState) -> None:
        self._log.debug("target_state_changed", previous=self._state.value, state=new_state.value)
        self._state = new_state

    def render(self, text: str) -> str:
        def lookup(namespace: str, name: str) -> str:
            if namespace == "target" and name == "id":
                if self._handle is None:
                    raise KeyError("target.id")
                return self._handle
            return self._lookup(namespace, name)

        return render(text, lookup)

    def mask(self, text: str) -> str:
        return mask_secrets(text, self._secret_values)

    async def start(self) -> str:
        """
        Launch the target.

        Returns:
            Target handle (pid in PROCESS mode, printed id in DETACHED mode)

        Raises:
            TargetStartFailed: If the target could not be launched
        """
        if self._state != TargetState.NOT_STARTED:
            raise RuntimeError(f"Target already {self._state.value}")
        self._transition(TargetState.STARTING)
        argv = [self.render(arg) for arg in self.spec.start]
        cwd = self.render(self.spec.cwd) if self.spec.cwd else None
        inherit = self.env is None

        if self.spec.mode == TargetMode.PROCESS:
            try:
                self._process = await self.executor.spawn_async(
                    argv,
                    cwd=cwd,
                    env=self.env,
                    log_path=self.log_path,
                    inherit_env=inherit,
                    output_filter=self.mask,
                )
            except OSError as e:
                self._transition(TargetState.FAILED)
                raise TargetStartFailed(f"Could not start target: {self.mask(str(e))}", stage_id=self.stage_id) from e
            self._handle = str(self._process.pid)
        else:
            result = await self.executor.run_async(argv, cwd=cwd, env=self.env, inherit_env=inherit)
            lines = result.stdout.strip().splitlines()
            if not result.is_success or not lines:
                self._transition(TargetState.FAILED)
                raise TargetStartFailed(
                    f"Target start command failed (exit code {result.exit_code})",
                    stage_id=self.stage_id,
                    output=self.mask(result.stderr or result.stdout),
                )
            self._handle = lines[-1].strip()

        self._log.info("target_started", handle=self._handle, mode=self.spec.mode.value)
        return self._handle

    async def wait_ready(
        self,
        probe: Optional[Probe],
        timeout: float,
        interval: float,
        backoff: float = 1.0,
        max_interval: Optional[float] = None,
        attempt_timeout: Optional[float] = None,
    ) -> int:
        """
        Poll probe until it succeeds or timeout elapses.

        Sleeps between attempts; the delay grows by `backoff` up to
        `max_interval`. No attempt starts once the deadline has passed and
        every attempt is bounded by the time remaining. On timeout the
        target transitions to FAILED and is torn down before
        ReadinessTimeout is raised.

        Returns:
            Number of probe attempts made
        """
        if probe is None:
            self._transition(TargetState.READY)
            return 0

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        delay = interval
        cap = max_interval if max_interval is not None else max(interval, 0.0)
        attempts = 0

        while True:
            if self._process is not None and not self._process.is_running():
                code = self._process.returncode
                self._transition(TargetState.FAILED)
                await self.stop()
                raise TargetStartFailed(
                    f"Target exited with code {code} before becoming ready", stage_id=self.stage_id
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            attempts += 1
            budget = min(attempt_timeout, remaining) if attempt_timeout else remaining
            if await self._attempt(probe, budget):
                self._transition(TargetState.READY)
                self._log.info("target_ready", handle=self._handle, attempts=attempts, probe=probe.describe())
                return attempts

            now = loop.time()
            if now >= deadline:
                break
            await asyncio.sleep(min(delay, deadline - now))
            delay = min(delay * backoff, cap) if cap > 0 else delay * backoff

        self._log.warning("target_readiness_timeout", handle=self._handle, timeout=timeout, attempts=attempts)
        self._transition(TargetState.FAILED)
        await self.stop()
        raise ReadinessTimeout(timeout, attempts, stage_id=self.stage_id)

    async def _attempt(self, probe: Probe, budget: float) -> bool:
        try:
            return await asyncio.wait_for(probe.check(), timeout=budget)
        except asyncio.TimeoutError:
            self._log.debug("probe_attempt_timeout", probe=probe.describe())
            return False
        except Exception as e:
            # Probes hit targets that are still booting; any error means "not yet"
            self._log.debug("probe_attempt_error", probe=probe.describe(), error=str(e))
            return False

    def mark_in_use(self) -> None:
        if self._state != TargetState.READY:
            raise RuntimeError(f"Target is {self._state.value}, not ready")
        self._transition(TargetState.IN_USE)

    async def stop(self) -> Optional[TeardownFailed]:
        """
        Tear the target down. Best-effort and idempotent.

        Returns:
            TeardownFailed if stopping failed (also logged as a warning),
            otherwise None. Never raises for teardown problems.
        """
        async with self._stop_lock:
            if self._stopped:
                return self._teardown_error
            self._stopped = True

            if self._handle is None and self._process is None:
                if self._state != TargetState.FAILED:
                    self._transition(TargetState.STOPPED)
                return None

            self._stop_calls += 1
            failed = self._state == TargetState.FAILED
            if not failed:
                self._transition(TargetState.STOPPING)

            try:
                await asyncio.wait_for(self._teardown(), timeout=self.spec.stop_timeout)
            except asyncio.TimeoutError:
                self._teardown_error = TeardownFailed(
                    self._handle or "?", f"stop did not finish within {self.spec.stop_timeout}s"
                )
            except TeardownFailed as e:
                self._teardown_error = e
            except OSError as e:
                self._teardown_error = TeardownFailed(self._handle or "?", self.mask(str(e)))

            if self._teardown_error is not None:
                self._log.warning("teardown_failed", handle=self._handle, error=self._teardown_error.reason)
            else:
                self._log.info("target_stopped", handle=self._handle)

            if not failed:
                self._transition(TargetState.STOPPED)
            return self._teardown_error

    async def _teardown(self) -> None:
        error: Optional[TeardownFailed] = None
        if self.spec.stop:
            argv = [self.render(arg) for arg in self.spec.stop]
            result = await self.executor.run_async(
                argv, env=self.env, timeout=self.spec.stop_timeout, inherit_env=self.env is None
            )
            if not result.is_success:
                error = TeardownFailed(
                    self._handle or "?",
                    f"stop command exited with code {result.exit_code}: {self.mask(result.stderr.strip())[:200]}",
                )
        elif self.spec.mode == TargetMode.DETACHED:
            error = TeardownFailed(self._handle or "?", "no stop command configured")

        # A PROCESS-mode target is always terminated, stop command or not
        if self._process is not None:
            grace = max(self.spec.stop_timeout / 2, 0.1)
            await self._process.terminate_async(grace_period=grace)

        if error is not None:
            raise error

    @asynccontextmanager
    async def session(self, probe: Optional[Probe], readiness: Optional[ReadinessProbe] = None) -> AsyncIterator["EphemeralTargetManager"]:
        """
        start → wait_ready → IN_USE → yield → stop.

        stop() runs on every exit path, including exceptions raised by the
        body and task cancellation.
        """
        readiness = readiness or self.spec.probe
        try:
            await self.start()
            if readiness is not None:
                await self.wait_ready(
                    probe,
                    timeout=readiness.timeout,
                    interval=readiness.interval,
                    backoff=readiness.backoff,
                    max_interval=readiness.max_interval,
                    attempt_timeout=readiness.attempt_timeout,
                )
            else:
                await self.wait_ready(None, timeout=0, interval=0)
            self.mark_in_use()
            yield self
        finally:
            await asyncio.shield(self.stop())

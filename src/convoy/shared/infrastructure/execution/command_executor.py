"""
Command Executor Service.

Executes external tools asynchronously for pipeline actions, readiness
probes and ephemeral targets. Handles timeouts, cancellation, output
capturing and process-group cleanup.
"""

import asyncio
import contextlib
import os
import shlex
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Union

from convoy.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

# Stream limit for a spawned process's output lines
SPAWN_LINE_LIMIT = 1024 * 1024


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    is_timeout: bool = False

    @property
    def is_success(self) -> bool:
        """Check if command succeeded."""
        return self.exit_code == 0 and not self.is_timeout


@dataclass
class SpawnedProcess:
    """A long-running child process started in its own process group."""
    command: str
    process: asyncio.subprocess.Process
    log_file: Optional[IO[bytes]] = field(default=None, repr=False)
    pump: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def is_running(self) -> bool:
        return self.process.returncode is None

    async def terminate_async(self, grace_period: float = 10.0) -> int:
        """
        Stop the process group: SIGTERM, then SIGKILL after grace_period.

        Returns:
            Exit code of the process
        """
        try:
            if self.is_running():
                _signal_group(self.process, signal.SIGTERM)
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=grace_period)
                except asyncio.TimeoutError:
                    logger.warning("process_kill_after_grace", command=self.command, pid=self.pid)
                    _signal_group(self.process, signal.SIGKILL)
                    await self.process.wait()
            return self.process.returncode
        finally:
            await self._drain()
            if self.log_file is not None and not self.log_file.closed:
                self.log_file.close()

    async def _drain(self) -> None:
        """Let the output pump flush what the process wrote before exiting."""
        if self.pump is None or self.pump.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self.pump), timeout=2.0)
        except asyncio.TimeoutError:
            # A grandchild outside the process group may still hold the pipe
            self.pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.pump


async def _pump_output(
    stream: asyncio.StreamReader,
    sink: IO[bytes],
    output_filter: Optional[Callable[[str], str]],
) -> None:
    """Copy a child's output to sink line by line, filtering each line."""
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            sink.write(b"[output line exceeded limit and was dropped]\n")
            sink.flush()
            continue
        if not line:
            break
        text = line.decode("utf-8", errors="replace")
        if output_filter is not None:
            text = output_filter(text)
        sink.write(text.encode("utf-8"))
        sink.flush()


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the whole process group so children die too."""
    with contextlib.suppress(ProcessLookupError):
        os.killpg(os.getpgid(process.pid), sig)


def _command_string(command: Union[str, List[str]]) -> str:
    return command if isinstance(command, str) else " ".join(command)


class CommandExecutor:
    """
    Command executor wrapper.

    Commands are always executed without a shell. `env` is merged over
    os.environ unless inherit_env=False, in which case it is the complete
    environment of the child.
    """

    def __init__(self, default_timeout: float = 300.0):
        self.default_timeout = default_timeout

    @staticmethod
    def _prepare(
        command: Union[str, List[str]],
        env: Optional[Dict[str, str]],
        inherit_env: bool,
    ) -> tuple:
        if isinstance(command, str):
            cmd_args = shlex.split(command)
        else:
            cmd_args = list(command)

        if inherit_env:
            run_env = os.environ.copy()
            if env:
                run_env.update(env)
        else:
            run_env = dict(env or {})
        return cmd_args, run_env

    async def run_async(
        self,
        command: Union[str, List[str]],
        cwd: Union[str, Path, None] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        inherit_env: bool = True,
    ) -> CommandResult:
        """
        Execute a command asynchronously and wait for it to finish.

        Args:
            command: Command string or list of arguments
            cwd: Working directory
            env: Environment variables
            timeout: Execution timeout in seconds
            inherit_env: Merge env over os.environ (True) or use env as-is (False)

        Returns:
            CommandResult object. Task cancellation kills the process group
            and propagates CancelledError.
        """
        start_time = time.perf_counter()
        timeout_val = timeout if timeout is not None else self.default_timeout
        cmd_args, run_env = self._prepare(command, env, inherit_env)

        cmd_str = _command_string(command)
        logger.debug("executing_command", command=cmd_str, cwd=str(cwd) if cwd else "cwd", timeout=timeout_val)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd_args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                env=run_env,
                preexec_fn=os.setsid  # Create process group for easier cleanup
            )
        except OSError as e:
            logger.error("command_execution_error", command=cmd_str, error=str(e))
            return CommandResult(
                command=cmd_str,
                exit_code=-2,
                stdout="",
                stderr=f"Execution error: {e!s}",
                duration=time.perf_counter() - start_time
            )

        try:
            stdout_data, stderr_data = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout_val
            )
        except asyncio.TimeoutError:
            logger.warning("command_timeout", command=cmd_str, timeout=timeout_val)
            _signal_group(process, signal.SIGKILL)
            await process.wait()
            return CommandResult(
                command=cmd_str,
                exit_code=-1,
                stdout="",
                stderr=f"Command timed out after {timeout_val}s",
                duration=time.perf_counter() - start_time,
                is_timeout=True
            )
        except asyncio.CancelledError:
            logger.warning("command_cancelled", command=cmd_str, pid=process.pid)
            _signal_group(process, signal.SIGKILL)
            with contextlib.suppress(ProcessLookupError):
                await asyncio.shield(process.wait())
            raise

        duration = time.perf_counter() - start_time
        exit_code = process.returncode
        stdout_str = stdout_data.decode('utf-8', errors='replace')
        stderr_str = stderr_data.decode('utf-8', errors='replace')

        if exit_code != 0:
            logger.warning("command_failed", command=cmd_str, exit_code=exit_code)
        else:
            logger.debug("command_success", command=cmd_str, duration=duration)

        return CommandResult(
            command=cmd_str,
            exit_code=exit_code,
            stdout=stdout_str,
            stderr=stderr_str,
            duration=duration
        )

    async def spawn_async(
        self,
        command: Union[str, List[str]],
        cwd: Union[str, Path, None] = None,
        env: Optional[Dict[str, str]] = None,
        log_path: Union[str, Path, None] = None,
        inherit_env: bool = True,
        output_filter: Optional[Callable[[str], str]] = None,
    ) -> SpawnedProcess:
        """
        Start a long-running command without waiting for it.

        Output (stdout and stderr combined) goes to log_path when given,
        otherwise it is discarded. Each line passes through output_filter
        before it is written.

        Raises:
            OSError: If the executable cannot be started
        """
        cmd_args, run_env = self._prepare(command, env, inherit_env)
        cmd_str = _command_string(command)

        log_file = None
        if log_path is not None:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, "ab")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd_args,
                stdout=asyncio.subprocess.PIPE if log_file is not None else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.STDOUT if log_file is not None else asyncio.subprocess.DEVNULL,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                env=run_env,
                limit=SPAWN_LINE_LIMIT,
                preexec_fn=os.setsid
            )
        except OSError:
            if log_file is not None:
                log_file.close()
            raise

        pump = None
        if log_file is not None:
            pump = asyncio.create_task(_pump_output(process.stdout, log_file, output_filter))

        logger.debug("process_spawned", command=cmd_str, pid=process.pid)
        return SpawnedProcess(command=cmd_str, process=process, log_file=log_file, pump=pump)

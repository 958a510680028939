"""Readiness probes for ephemeral targets."""

import asyncio
import contextlib
import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import httpx

from convoy.pipeline.domain.enums import ProbeType
from convoy.pipeline.domain.models import ReadinessProbe
from convoy.shared.infrastructure.execution.command_executor import CommandExecutor


class Probe(ABC):
    """A single readiness check. True means the target accepts work."""

    @abstractmethod
    async def check(self) -> bool:
        ...

    @abstractmethod
    def describe(self) -> str:
        ...


class TcpProbe(Probe):
    """Ready once a TCP connection to host:port succeeds."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port

    async def check(self) -> bool:
        try:
            _, writer = await asyncio.open_connection(self.host, self.port)
        except OSError:
            return False
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True

    def describe(self) -> str:
        return f"tcp://{self.host}:{self.port}"


class HttpProbe(Probe):
    """Ready once GET url answers with expected_status (or any status < 400)."""

    def __init__(self, url: str, expected_status: Optional[int] = None, timeout: float = 5.0):
        self.url = url
        self.expected_status = expected_status
        self.timeout = timeout

    async def check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.url)
        except httpx.HTTPError:
            return False
        if self.expected_status is not None:
            return response.status_code == self.expected_status
        return response.status_code < 400

    def describe(self) -> str:
        return self.url


class CommandProbe(Probe):
    """Ready once the command exits 0."""

    def __init__(
        self,
        command: List[str],
        executor: CommandExecutor,
        env: Optional[Dict[str, str]] = None,
        timeout: float = 5.0,
    ):
        self.command = command
        self.executor = executor
        self.env = env
        self.timeout = timeout

    async def check(self) -> bool:
        result = await self.executor.run_async(
            self.command,
            env=self.env,
            timeout=self.timeout,
            inherit_env=self.env is None,
        )
        return result.is_success

    def describe(self) -> str:
        return " ".join(self.command)


class CallableProbe(Probe):
    """Wraps a plain or async callable returning bool, for embedding the engine."""

    def __init__(self, fn: Callable[[], Any], name: str = "callable"):
        self.fn = fn
        self.name = name

    async def check(self) -> bool:
        result = self.fn()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    def describe(self) -> str:
        return self.name


def build_probe(
    spec: ReadinessProbe,
    executor: CommandExecutor,
    render: Callable[[str], str] = lambda text: text,
    env: Optional[Dict[str, str]] = None,
) -> Probe:
    """Create the probe described by a ReadinessProbe definition."""
    if spec.type == ProbeType.TCP:
        return TcpProbe(render(spec.host), int(spec.port))
    if spec.type == ProbeType.HTTP:
        return HttpProbe(render(spec.url), spec.expected_status, timeout=spec.attempt_timeout)
    return CommandProbe([render(arg) for arg in spec.command], executor, env=env, timeout=spec.attempt_timeout)

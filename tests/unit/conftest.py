"""
Shared fakes for the fleet unit tests.

FakeEngine stands in for the docker CLI adapter: containers live in a dict
and only started containers show up in running listings.
"""

import asyncio
import itertools

import pytest

from fleet_common.errors import EngineError
from fleet_controller.container_manager import ContainerInfo
from fleet_controller.launcher import AgentConnection


class FakeEngine:
    """In-memory container engine."""

    def __init__(self):
        self.containers: dict[str, ContainerInfo] = {}
        self.calls: list[tuple] = []
        self._ids = itertools.count(1)
        self._ports = itertools.count(49153)

    def add_running(self, image: str, labels: dict[str, str] | None = None) -> str:
        container_id = f"{next(self._ids):012x}" + "f" * 52
        self.containers[container_id] = ContainerInfo(
            container_id=container_id,
            name=container_id[:12],
            image=image,
            status="running",
            labels=labels or {},
        )
        return container_id

    def running(self, image: str | None = None) -> list[ContainerInfo]:
        return [
            c
            for c in self.containers.values()
            if c.status == "running" and (image is None or c.image == image)
        ]

    async def ping(self) -> str:
        self.calls.append(("ping",))
        return "24.0.7"

    async def list_containers(self, running_only: bool = True) -> list[ContainerInfo]:
        self.calls.append(("list_containers", running_only))
        await asyncio.sleep(0)
        if running_only:
            return self.running()
        return list(self.containers.values())

    async def create_container(
        self, image, cmd, exposed_ports, port_bindings=None, labels=None
    ) -> str:
        self.calls.append(("create_container", image))
        await asyncio.sleep(0)
        container_id = f"{next(self._ids):012x}" + "f" * 52
        ports = {}
        for port, (host_ip, host_port) in (port_bindings or {}).items():
            ports[f"{port}/tcp"] = [
                {"HostIp": host_ip, "HostPort": str(host_port or next(self._ports))}
            ]
        self.containers[container_id] = ContainerInfo(
            container_id=container_id,
            name=container_id[:12],
            image=image,
            status="created",
            labels=dict(labels or {}),
            ports=ports,
        )
        return container_id

    async def start_container(self, container_id: str) -> None:
        self.calls.append(("start_container", container_id))
        await asyncio.sleep(0)
        self._get(container_id).status = "running"

    async def inspect_container(self, container_id: str) -> ContainerInfo:
        self.calls.append(("inspect_container", container_id))
        return self._get(container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        self.calls.append(("stop_container", container_id))
        if container_id in self.containers:
            self.containers[container_id].status = "exited"

    async def commit_container(self, container_id, author, repository, tag) -> str:
        self.calls.append(("commit_container", container_id, repository, tag))
        return "sha256:" + container_id[:12]

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        self.calls.append(("remove_container", container_id, force))
        self.containers.pop(container_id, None)

    def _get(self, container_id: str) -> ContainerInfo:
        try:
            return self.containers[container_id]
        except KeyError:
            raise EngineError(f"No such container: {container_id}")


class FakeConnector:
    """Agent connector that answers on the given attempts (all by default)."""

    def __init__(self, results: list[bool] | None = None):
        self.results = list(results) if results is not None else None
        self.attempts: list[tuple[str, int]] = []

    async def connect(self, host, port, params):
        self.attempts.append((host, port))
        if self.results is not None and not self.results.pop(0):
            return None
        return AgentConnection(host=host, port=port, params=params, banner="SSH-2.0-fake")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Records requested sleeps instead of sleeping."""
    recorded: list[float] = []

    async def sleep(seconds: float) -> None:
        recorded.append(seconds)

    sleep.recorded = recorded
    return sleep

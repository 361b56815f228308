"""
Container engine adapter for worker containers.

This module provides an abstraction over Docker operations for managing
worker containers. It drives the docker CLI asynchronously and exposes the
handful of operations the pool controller needs: list, create, start,
inspect, stop, commit and remove.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Literal

from fleet_common.errors import EngineError

logger = logging.getLogger(__name__)

# Container labels used to recognise fleet-owned containers
MANAGED_LABEL = "fleet.managed"
TEMPLATE_LABEL = "fleet.template.image"

ContainerStatus = Literal[
    "created", "running", "exited", "paused", "restarting", "removing", "dead"
]


@dataclass
class ContainerInfo:
    """
    Information about a Docker container.

    Represents the current state of a container from Docker's perspective.
    """

    container_id: str
    name: str
    image: str
    status: ContainerStatus
    labels: dict[str, str] = field(default_factory=dict)
    # "22/tcp" -> [{"HostIp": "0.0.0.0", "HostPort": "49153"}]
    ports: dict[str, list[dict[str, str]]] = field(default_factory=dict)

    def host_binding(self, container_port: int, protocol: str = "tcp") -> tuple[str, int] | None:
        """
        Find where a container port is published on the host.

        Returns:
            Tuple of (host_ip, host_port), or None if the port is not published
        """
        for binding in self.ports.get(f"{container_port}/{protocol}") or []:
            host_port = binding.get("HostPort")
            if host_port:
                return binding.get("HostIp", ""), int(host_port)
        return None


def _parse_label_string(raw: str) -> dict[str, str]:
    """Parse the comma-separated label string printed by `docker ps`."""
    labels = {}
    for item in raw.split(","):
        if not item:
            continue
        key, _, value = item.partition("=")
        labels[key] = value
    return labels


class ContainerManager:
    """
    Manages Docker containers backing fleet worker nodes.

    One instance wraps one engine endpoint. All operations raise
    EngineError when the docker CLI reports a failure.
    """

    def __init__(self, server_url: str | None = None, docker_binary: str = "docker"):
        """
        Initialize the container manager.

        Args:
            server_url: Docker engine address (e.g. "tcp://build-host:2375").
                        None uses the local engine.
            docker_binary: Name or path of the docker CLI
        """
        self.server_url = server_url
        self.docker_binary = docker_binary

    def _command(self, *args: str) -> list[str]:
        command = [self.docker_binary]
        if self.server_url:
            command.extend(["--host", self.server_url])
        command.extend(args)
        return command

    async def _run(self, *args: str) -> str:
        """
        Run a docker CLI command and return its stdout.

        Raises:
            EngineError: If the command exits with a non-zero status
        """
        process = await asyncio.create_subprocess_exec(
            *self._command(*args),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            raise EngineError(f"docker {args[0]} failed: {stderr.decode().strip()}")

        return stdout.decode()

    async def ping(self) -> str:
        """
        Check that the engine is reachable.

        Returns:
            Engine server version
        """
        output = await self._run("version", "--format", "{{.Server.Version}}")
        return output.strip()

    async def list_containers(self, running_only: bool = True) -> list[ContainerInfo]:
        """
        List containers known to the engine.

        Args:
            running_only: If False, include stopped containers as well

        Returns:
            List of ContainerInfo objects (ports are not populated by listing)
        """
        args = ["ps", "--no-trunc", "--format", "{{json .}}"]
        if not running_only:
            args.insert(1, "-a")

        output = await self._run(*args)

        containers = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                containers.append(
                    ContainerInfo(
                        container_id=data["ID"],
                        name=data.get("Names", ""),
                        image=data.get("Image", ""),
                        status=data.get("State", "running").lower(),
                        labels=_parse_label_string(data.get("Labels", "")),
                    )
                )
            except (json.JSONDecodeError, KeyError) as e:
                raise EngineError(f"Failed to parse container listing: {e}") from e

        return containers

    async def create_container(
        self,
        image: str,
        cmd: list[str],
        exposed_ports: list[int],
        port_bindings: dict[int, tuple[str, int | None]] | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        """
        Create (but don't start) a container.

        Args:
            image: Image reference
            cmd: Command to run in the container
            exposed_ports: Container ports to expose
            port_bindings: container port -> (host ip, host port or None for
                           an engine-assigned port)
            labels: Container labels

        Returns:
            The new container's ID
        """
        args = ["create"]
        for port in exposed_ports:
            args.extend(["--expose", str(port)])
        for container_port, (host_ip, host_port) in (port_bindings or {}).items():
            host_part = "" if host_port is None else str(host_port)
            args.extend(["--publish", f"{host_ip}:{host_part}:{container_port}"])
        for key, value in (labels or {}).items():
            args.extend(["--label", f"{key}={value}"])
        args.append(image)
        args.extend(cmd)

        output = await self._run(*args)
        return output.strip()

    async def start_container(self, container_id: str) -> None:
        """
        Start a created container.

        Args:
            container_id: Docker container ID or name
        """
        await self._run("start", container_id)

    async def inspect_container(self, container_id: str) -> ContainerInfo:
        """
        Get detailed information about a container, including published ports.

        Args:
            container_id: Docker container ID or name

        Returns:
            ContainerInfo for the container
        """
        output = await self._run("inspect", container_id)

        try:
            data = json.loads(output)
            container = data[0]
            config = container.get("Config") or {}
            network = container.get("NetworkSettings") or {}
            return ContainerInfo(
                container_id=container["Id"],
                name=container.get("Name", "").lstrip("/"),
                image=config.get("Image", container.get("Image", "")),
                status=container["State"]["Status"].lower(),
                labels=config.get("Labels") or {},
                ports=network.get("Ports") or {},
            )
        except (json.JSONDecodeError, KeyError, IndexError) as e:
            raise EngineError(f"Failed to parse container info: {e}") from e

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """
        Stop a running container.

        Args:
            container_id: Docker container ID or name
            timeout: Seconds to wait before killing container
        """
        await self._run("stop", "--time", str(timeout), container_id)

    async def commit_container(
        self, container_id: str, author: str, repository: str, tag: str
    ) -> str:
        """
        Snapshot a container into a new image.

        Returns:
            ID of the committed image
        """
        output = await self._run(
            "commit", "--author", author, container_id, f"{repository}:{tag}"
        )
        return output.strip()

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        """
        Remove a container.

        Args:
            container_id: Docker container ID or name
            force: If True, force removal even if running
        """
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(container_id)

        try:
            await self._run(*args)
        except EngineError as e:
            # Ignore "already removed" errors
            if "No such container" not in str(e):
                raise
            logger.debug(f"Container {container_id} already removed")

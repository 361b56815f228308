"""
Launch sequencing: wait for a fresh container to really come up.

A freshly started container needs a moment before its agent endpoint
answers. The launch sequencer locates the published agent port, then tries
to open the agent connection a bounded number of times with an escalating
pause between attempts. A node that never answers is torn down so no
container is left behind.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import urlparse

from fleet_common.errors import EndpointNotFound
from fleet_common.models import ConnectionParams, NodeState

from .container_manager import ContainerInfo
from .node import WorkerNode

logger = logging.getLogger(__name__)

# Port the agent (sshd) listens on inside every worker container
AGENT_PORT = 22
MAX_CONNECT_ATTEMPTS = 4
AGENT_JAR = "agent.jar"

_WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


def agent_launch_command(params: ConnectionParams) -> str:
    """
    Compose the command the agent transport runs on the node.

    Format: "<prefix> <java> <jvm options> -jar <remote fs>/agent.jar <suffix>"
    """
    parts = [
        params.prefix_start_cmd,
        params.java_path or "java",
        params.jvm_options,
        "-jar",
        f"{params.remote_fs.rstrip('/')}/{AGENT_JAR}",
        params.suffix_start_cmd,
    ]
    return " ".join(part.strip() for part in parts if part and part.strip())


@dataclass
class AgentConnection:
    """An open connection to a node's agent endpoint."""

    host: str
    port: int
    params: ConnectionParams
    banner: str = ""
    writer: asyncio.StreamWriter | None = None

    @property
    def launch_command(self) -> str:
        return agent_launch_command(self.params)

    async def close(self) -> None:
        if self.writer is None:
            return
        writer, self.writer = self.writer, None
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


class SSHAgentConnector:
    """
    Opens agent connections by waiting for the node's SSH banner.

    Installing and running the agent over that connection belongs to the
    external transport; this connector only establishes that the endpoint
    is up and speaks SSH.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def connect(
        self, host: str, port: int, params: ConnectionParams
    ) -> AgentConnection | None:
        """
        Try once to connect to the agent endpoint.

        Returns:
            AgentConnection on success, None if the endpoint is not ready
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Connection to {host}:{port} failed: {e}")
            return None

        try:
            banner = await asyncio.wait_for(reader.readline(), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"No banner from {host}:{port}: {e}")
            banner = b""

        if not banner.startswith(b"SSH-"):
            writer.close()
            return None

        return AgentConnection(
            host=host,
            port=port,
            params=params,
            banner=banner.decode(errors="replace").strip(),
            writer=writer,
        )


class LaunchSequencer:
    """
    Connects freshly started nodes with bounded retry.

    Per node: Created -> Connecting -> Connected | Failed. Retries only
    block the provisioning task of that one node.
    """

    def __init__(
        self,
        connector: SSHAgentConnector,
        server_url: str | None = None,
        max_attempts: int = MAX_CONNECT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the launch sequencer.

        Args:
            connector: Opens one agent connection attempt
            server_url: Engine address; its host is where published ports live
            max_attempts: Connection attempts before giving up
            sleep: Awaitable sleep, injectable for tests
        """
        self.connector = connector
        self.server_url = server_url
        self.max_attempts = max_attempts
        self._sleep = sleep

    def engine_host(self) -> str:
        """Host name of the engine, where published ports can be reached."""
        if not self.server_url:
            return "localhost"
        parsed = urlparse(self.server_url)
        if parsed.scheme in ("unix", "npipe") or not parsed.hostname:
            return "localhost"
        return parsed.hostname

    def discover_endpoint(self, info: ContainerInfo | None) -> tuple[str, int]:
        """
        Locate the host endpoint of the container's agent port.

        Raises:
            EndpointNotFound: If the agent port is not published
        """
        binding = info.host_binding(AGENT_PORT) if info is not None else None
        if binding is None:
            raise EndpointNotFound(
                f"Host port not found for the agent port {AGENT_PORT}"
            )
        host_ip, host_port = binding
        host = self.engine_host() if host_ip in _WILDCARD_HOSTS else host_ip
        return host, host_port

    async def launch(self, node: WorkerNode) -> bool:
        """
        Connect a node's agent, tearing the node down if that is impossible.

        Returns:
            True if the node is connected, False if every attempt failed

        Raises:
            EndpointNotFound: If the container publishes no agent port (the
                node has been torn down)
        """
        node.state = NodeState.CONNECTING

        try:
            host, port = self.discover_endpoint(node.container_info)
        except EndpointNotFound as e:
            logger.error(f"Cannot launch {node.display_name}: {e}")
            node.append_launch_log(str(e))
            await node.terminate()
            raise

        logger.info(f"Connecting to agent of {node.display_name} at {host}:{port}")

        remaining = self.max_attempts
        attempt = 0
        while remaining > 0:
            attempt += 1
            # 1, 2, 3, 4 seconds
            await self._sleep(attempt)

            try:
                connection = await self.connector.connect(
                    host, port, node.template.connection
                )
            except Exception as e:
                logger.debug(f"Agent connection attempt {attempt} raised: {e}")
                connection = None

            if connection is not None:
                node.agent = connection
                node.state = NodeState.ACTIVE
                node.append_launch_log(f"Connected on attempt {attempt}")
                node.append_launch_log(f"Agent command: {connection.launch_command}")
                logger.info(f"Launched {node.display_name} after {attempt} attempt(s)")
                return True

            remaining -= 1
            message = f"Failed to connect to agent on {node.display_name}."
            if remaining > 0:
                message += f" Retrying {remaining} more times."
            node.append_launch_log(message)
            logger.warning(message)

        logger.warning(
            f"Could not connect to agent on {node.display_name}. Closing container."
        )
        await node.terminate()
        return False

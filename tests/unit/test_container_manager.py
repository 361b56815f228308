"""
Unit tests for ContainerManager.

The docker CLI is replaced by a mocked subprocess; tests check the command
lines that are built and how their output is parsed.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from fleet_common.errors import EngineError
from fleet_controller.container_manager import (
    ContainerInfo,
    ContainerManager,
    _parse_label_string,
)


def make_process(stdout: str = "", stderr: str = "", returncode: int = 0) -> AsyncMock:
    process = AsyncMock()
    process.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    process.returncode = returncode
    return process


class TestContainerManager:
    """Test suite for ContainerManager class."""

    @pytest.fixture
    def container_manager(self):
        """Create a ContainerManager instance for testing."""
        return ContainerManager()

    def test_command_uses_remote_host(self):
        """A remote engine address is passed with --host."""
        manager = ContainerManager(server_url="tcp://build-host:2375")
        assert manager._command("ps") == ["docker", "--host", "tcp://build-host:2375", "ps"]

    def test_command_local_engine(self, container_manager):
        """The local engine is used without --host."""
        assert container_manager._command("ps") == ["docker", "ps"]

    @pytest.mark.asyncio
    async def test_ping_returns_version(self, container_manager):
        """ping returns the server version."""
        process = make_process("24.0.7\n")

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            version = await container_manager.ping()

        assert version == "24.0.7"
        args = mock_exec.call_args[0]
        assert args[:2] == ("docker", "version")

    @pytest.mark.asyncio
    async def test_failure_raises_engine_error(self, container_manager):
        """A failing docker command raises EngineError."""
        process = make_process(stderr="Cannot connect to the Docker daemon", returncode=1)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(EngineError, match="Cannot connect"):
                await container_manager.ping()

    @pytest.mark.asyncio
    async def test_list_containers_parses_json_lines(self, container_manager):
        """Listing parses one JSON object per line."""
        lines = [
            {
                "ID": "a" * 64,
                "Names": "worker-1",
                "Image": "ci/agent",
                "State": "running",
                "Labels": "fleet.managed=true,fleet.template.image=ci/agent",
            },
            {"ID": "b" * 64, "Names": "other", "Image": "nginx", "State": "running", "Labels": ""},
        ]
        process = make_process("\n".join(json.dumps(line) for line in lines) + "\n")

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            containers = await container_manager.list_containers()

        assert "-a" not in mock_exec.call_args[0]
        assert len(containers) == 2
        assert containers[0].labels["fleet.template.image"] == "ci/agent"
        assert containers[1].labels == {}
        assert containers[1].image == "nginx"

    @pytest.mark.asyncio
    async def test_list_all_containers(self, container_manager):
        """Listing all containers passes -a."""
        with patch("asyncio.create_subprocess_exec", return_value=make_process()) as mock_exec:
            containers = await container_manager.list_containers(running_only=False)

        assert containers == []
        assert "-a" in mock_exec.call_args[0]

    @pytest.mark.asyncio
    async def test_create_container_builds_arguments(self, container_manager):
        """create passes image, command, ports and labels."""
        process = make_process("c0ffee\n")

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            container_id = await container_manager.create_container(
                "ci/agent",
                ["/usr/sbin/sshd", "-D"],
                exposed_ports=[22],
                port_bindings={22: ("0.0.0.0", None)},
                labels={"fleet.managed": "true"},
            )

        assert container_id == "c0ffee"
        args = list(mock_exec.call_args[0])
        assert args[:2] == ["docker", "create"]
        assert args[args.index("--expose") + 1] == "22"
        assert args[args.index("--publish") + 1] == "0.0.0.0::22"
        assert args[args.index("--label") + 1] == "fleet.managed=true"
        assert args[-3:] == ["ci/agent", "/usr/sbin/sshd", "-D"]

    @pytest.mark.asyncio
    async def test_create_container_fixed_host_port(self, container_manager):
        """A fixed host port is published as given."""
        with patch("asyncio.create_subprocess_exec", return_value=make_process("id\n")) as mock_exec:
            await container_manager.create_container(
                "ci/agent", [], exposed_ports=[22], port_bindings={22: ("0.0.0.0", 2222)}
            )

        args = list(mock_exec.call_args[0])
        assert args[args.index("--publish") + 1] == "0.0.0.0:2222:22"

    @pytest.mark.asyncio
    async def test_inspect_container(self, container_manager):
        """inspect parses state, labels and published ports."""
        payload = [
            {
                "Id": "a" * 64,
                "Name": "/worker-1",
                "Config": {"Image": "ci/agent", "Labels": {"fleet.managed": "true"}},
                "State": {"Status": "running"},
                "NetworkSettings": {
                    "Ports": {"22/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}]}
                },
            }
        ]

        with patch("asyncio.create_subprocess_exec", return_value=make_process(json.dumps(payload))):
            info = await container_manager.inspect_container("a" * 64)

        assert info.name == "worker-1"
        assert info.status == "running"
        assert info.host_binding(22) == ("0.0.0.0", 49153)

    @pytest.mark.asyncio
    async def test_inspect_garbage_raises(self, container_manager):
        """Unparseable inspect output raises EngineError."""
        with patch("asyncio.create_subprocess_exec", return_value=make_process("[]")):
            with pytest.raises(EngineError, match="parse"):
                await container_manager.inspect_container("missing")

    @pytest.mark.asyncio
    async def test_commit_container(self, container_manager):
        """commit passes author, repository and tag."""
        with patch("asyncio.create_subprocess_exec", return_value=make_process("sha256:abc\n")) as mock_exec:
            image = await container_manager.commit_container(
                "c0ffee", author="fleet", repository="my-job", tag="7"
            )

        assert image == "sha256:abc"
        assert list(mock_exec.call_args[0])[-2:] == ["c0ffee", "my-job:7"]

    @pytest.mark.asyncio
    async def test_stop_container_passes_timeout(self, container_manager):
        """stop passes the timeout."""
        with patch("asyncio.create_subprocess_exec", return_value=make_process()) as mock_exec:
            await container_manager.stop_container("c0ffee", timeout=3)

        assert list(mock_exec.call_args[0]) == ["docker", "stop", "--time", "3", "c0ffee"]

    @pytest.mark.asyncio
    async def test_remove_missing_container_is_ignored(self, container_manager):
        """Removing a container that is already gone is ignored."""
        process = make_process(stderr="Error: No such container: c0ffee", returncode=1)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            await container_manager.remove_container("c0ffee", force=True)

    @pytest.mark.asyncio
    async def test_remove_other_failure_raises(self, container_manager):
        """Other remove failures raise EngineError."""
        process = make_process(stderr="permission denied", returncode=1)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(EngineError):
                await container_manager.remove_container("c0ffee")


class TestContainerInfo:
    """Test suite for ContainerInfo helpers."""

    def test_host_binding_missing(self):
        """A port that is not published has no binding."""
        info = ContainerInfo("id", "name", "image", "running")
        assert info.host_binding(22) is None

    def test_host_binding_skips_empty_ports(self):
        """Bindings without a host port are skipped."""
        info = ContainerInfo(
            "id",
            "name",
            "image",
            "running",
            ports={"22/tcp": [{"HostIp": "::", "HostPort": ""}, {"HostIp": "0.0.0.0", "HostPort": "2222"}]},
        )
        assert info.host_binding(22) == ("0.0.0.0", 2222)

    def test_parse_label_string(self):
        """Label strings from the listing are split into a dict."""
        assert _parse_label_string("a=1,b=,c") == {"a": "1", "b": "", "c": ""}
        assert _parse_label_string("") == {}

"""
Domain models for the container fleet.

These models describe worker templates and the records exchanged between
the pool controller, the fleet registry and the job scheduler. They are
independent of the container engine and of the storage mechanism.
"""

import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import ConfigurationError
from .labels import parse_atoms

# Capacity value used when no cap is configured
UNBOUNDED = sys.maxsize

DEFAULT_REMOTE_FS = "/home/jenkins"

_DOCKER_NAME_RE = re.compile(r"[^a-z0-9_.-]+")


class NodeState(str, Enum):
    """Lifecycle state of a worker node."""

    PROVISIONING = "provisioning"
    CONNECTING = "connecting"
    ACTIVE = "active"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ConnectionParams:
    """
    How to reach and start the agent on a worker container.

    The agent transport itself is external; these values are handed to it
    verbatim once the node's endpoint is known.
    """

    ssh_port: int | None = None  # Host port to publish the agent port on
    credentials_id: str | None = None  # Reference into the credential store
    jvm_options: str | None = None
    java_path: str | None = None
    prefix_start_cmd: str | None = None
    suffix_start_cmd: str | None = None
    remote_fs: str = DEFAULT_REMOTE_FS

    def to_dict(self) -> dict[str, Any]:
        return {
            "ssh_port": self.ssh_port,
            "credentials_id": self.credentials_id,
            "jvm_options": self.jvm_options,
            "java_path": self.java_path,
            "prefix_start_cmd": self.prefix_start_cmd,
            "suffix_start_cmd": self.suffix_start_cmd,
            "remote_fs": self.remote_fs,
        }


def _parse_int(value: str | None, field_name: str) -> int | None:
    """Parse an optional integer configuration string."""
    if value is None or not str(value).strip():
        return None
    try:
        return int(str(value).strip())
    except ValueError as e:
        raise ConfigurationError(f"{field_name} must be an integer, got {value!r}") from e


@dataclass(frozen=True)
class Template:
    """
    Configuration for one class of on-demand worker.

    A template is immutable once built. Construction validates the capacity
    settings, so an invalid combination never produces an instance.
    """

    image: str
    label_selector: str = ""  # Label atoms this template offers
    capacity_cap: int = UNBOUNDED  # Maximum simultaneous live workers
    min_idle_floor: int = 0  # Idle workers to keep warm
    connection: ConnectionParams = field(default_factory=ConnectionParams)
    commit_on_completion: bool = False
    prefix_name_with_image: bool = False

    def __post_init__(self):
        if not self.image or not self.image.strip():
            raise ConfigurationError("Template image is required")
        if self.capacity_cap < 0:
            raise ConfigurationError(
                f"Container cap must not be negative, got {self.capacity_cap}"
            )
        if self.min_idle_floor < 0:
            raise ConfigurationError(
                f"Minimum idle containers must not be negative, got {self.min_idle_floor}"
            )
        if self.min_idle_floor > self.capacity_cap:
            raise ConfigurationError(
                "Minimum number of idle containers must be less than or equal "
                "to the container cap."
            )

    @classmethod
    def from_strings(
        cls,
        image: str,
        label_selector: str | None = None,
        capacity: str | None = None,
        min_idle: str | None = None,
        ssh_port: str | None = None,
        credentials_id: str | None = None,
        jvm_options: str | None = None,
        java_path: str | None = None,
        prefix_start_cmd: str | None = None,
        suffix_start_cmd: str | None = None,
        remote_fs: str | None = None,
        commit_on_completion: bool = False,
        prefix_name_with_image: bool = False,
    ) -> "Template":
        """
        Build a template from form-style configuration strings.

        An empty capacity means unbounded, an empty floor means zero.

        Raises:
            ConfigurationError: If a number is malformed or the floor
                exceeds the capacity
        """
        cap = _parse_int(capacity, "Container cap")
        floor = _parse_int(min_idle, "Minimum idle containers")
        port = _parse_int(ssh_port, "SSH port")

        return cls(
            image=image,
            label_selector=(label_selector or "").strip(),
            capacity_cap=UNBOUNDED if cap is None else cap,
            min_idle_floor=0 if floor is None else floor,
            connection=ConnectionParams(
                ssh_port=port,
                credentials_id=credentials_id or None,
                jvm_options=jvm_options or None,
                java_path=java_path or None,
                prefix_start_cmd=prefix_start_cmd or None,
                suffix_start_cmd=suffix_start_cmd or None,
                remote_fs=remote_fs or DEFAULT_REMOTE_FS,
            ),
            commit_on_completion=commit_on_completion,
            prefix_name_with_image=prefix_name_with_image,
        )

    @property
    def executors_per_node(self) -> int:
        """Each worker container runs exactly one executor."""
        return 1

    @property
    def label_atoms(self) -> frozenset[str]:
        return parse_atoms(self.label_selector)

    @property
    def display_name(self) -> str:
        return f"Image of {self.image}"

    @property
    def capacity_str(self) -> str:
        """Capacity rendered the way it is configured (empty for unbounded)."""
        if self.capacity_cap == UNBOUNDED:
            return ""
        return str(self.capacity_cap)

    def node_name(self, container_id: str) -> str:
        """Fleet-visible name for a container created from this template."""
        short_id = container_id[:12]
        if self.prefix_name_with_image:
            image = _DOCKER_NAME_RE.sub("-", self.image.lower()).strip("-.")
            return f"{image}-{short_id}"
        return short_id

    def to_dict(self) -> dict[str, Any]:
        """Convert template to dictionary format (for API responses)."""
        return {
            "image": self.image,
            "label_selector": self.label_selector,
            "capacity": self.capacity_str,
            "min_idle": self.min_idle_floor,
            "executors_per_node": self.executors_per_node,
            "commit_on_completion": self.commit_on_completion,
            "prefix_name_with_image": self.prefix_name_with_image,
            "connection": self.connection.to_dict(),
        }


@dataclass(frozen=True)
class WorkRun:
    """
    One unit of work executed on a node, as reported by the scheduler.
    """

    job_name: str
    run_id: str

    @property
    def repository(self) -> str:
        """Image repository name used when snapshotting the node."""
        name = _DOCKER_NAME_RE.sub("-", self.job_name.lower()).strip("-.")
        return name or "run"

    @property
    def tag(self) -> str:
        """Image tag used when snapshotting the node."""
        tag = re.sub(r"[^A-Za-z0-9_.-]+", "-", self.run_id).lstrip(".-")
        return tag[:128] or "latest"


@dataclass
class NodeRecord:
    """
    A fleet member as stored in the fleet registry.
    """

    name: str
    container_id: str
    image: str
    labels: str
    state: str
    registered_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "container_id": self.container_id,
            "image": self.image,
            "labels": self.labels,
            "state": self.state,
            "registered_at": self.registered_at.isoformat()
            if self.registered_at
            else None,
        }


@dataclass
class SnapshotRecord:
    """
    An image committed from a node's container after a successful run.

    Stored against the run so the scheduler can find the snapshot once the
    node itself is gone.
    """

    job_name: str
    run_id: str
    server_url: str | None
    container_id: str
    image_id: str
    tag: str
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "run_id": self.run_id,
            "server_url": self.server_url,
            "container_id": self.container_id,
            "image_id": self.image_id,
            "tag": self.tag,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

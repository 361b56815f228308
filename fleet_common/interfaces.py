"""
Capability protocols connecting the fleet components.

The pool controller depends only on these capabilities, not on concrete
node, policy or scheduler classes.
"""

import asyncio
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import Template


@runtime_checkable
class Terminable(Protocol):
    """Something that can be torn down, inline or in the background."""

    async def terminate(self) -> None:
        """Run the full teardown sequence and wait for it."""
        ...

    def retention_terminate(self) -> asyncio.Task:
        """Schedule teardown without waiting for it."""
        ...


@runtime_checkable
class Provisionable(Protocol):
    """Something that can create worker nodes on demand."""

    def can_provision(self, label: str | None) -> bool:
        """Whether any template can serve the label."""
        ...

    async def request_provision(self, label: str | None, excess_workload: int) -> list:
        """Start provisioning enough workers to cover the excess workload."""
        ...


class RetentionPolicy(Protocol):
    """Decides when an idle node should go away."""

    def check(self, node) -> float:
        """
        Inspect a node and terminate it if the policy says so.

        Returns:
            Seconds until the node should be checked again
        """
        ...

    async def start(self, node) -> bool:
        """Take ownership of a freshly created node and connect it."""
        ...


class TerminationListener(Protocol):
    """Notified once for every node teardown."""

    async def container_terminated(self, template: "Template", node) -> None:
        ...


class DemandSignal(Protocol):
    """
    Live, scheduler-owned demand figures for a label.

    All values are sampled, not transactional; callers must tolerate
    figures that are slightly out of date.
    """

    def queue_length(self, label: str, window: float) -> int:
        """Most recent queue depth sampled within the last `window` seconds."""
        ...

    def compute_queue_length(self, label: str) -> int:
        """Number of buildable items waiting for the label."""
        ...

    def idle_executors(self, label: str) -> int:
        """Currently idle executors able to serve the label."""
        ...

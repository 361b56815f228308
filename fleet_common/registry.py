"""
Abstract storage interfaces for templates and fleet membership.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod

from .models import NodeRecord, SnapshotRecord, Template


class TemplateStore(ABC):
    """
    Abstract base class for template configuration storage.

    Templates are returned in the order they were added, because the first
    matching template wins when routing demand.
    """

    @abstractmethod
    async def add_template(self, template: Template) -> None:
        """
        Persist a template.

        Raises:
            Exception: If a template for the same image already exists
        """
        pass

    @abstractmethod
    async def list_templates(self) -> list[Template]:
        """
        List all templates in insertion order.

        Returns:
            List of Template objects
        """
        pass

    @abstractmethod
    async def remove_template(self, image: str) -> bool:
        """
        Delete the template for an image.

        Returns:
            True if a template was removed, False if none existed
        """
        pass


class FleetRegistry(ABC):
    """
    Abstract base class for the registry of connected fleet members.

    Nodes are registered once their agent is connected and deregistered
    during teardown.
    """

    @abstractmethod
    async def register(self, record: NodeRecord) -> None:
        """
        Register a node as a fleet member (replacing any stale entry).

        Args:
            record: Node to register
        """
        pass

    @abstractmethod
    async def deregister(self, name: str) -> None:
        """
        Remove a node from the fleet. Unknown names are ignored.

        Args:
            name: Fleet-visible node name
        """
        pass

    @abstractmethod
    async def get_node(self, name: str) -> NodeRecord | None:
        """
        Retrieve a registered node by name.

        Returns:
            NodeRecord if registered, None otherwise
        """
        pass

    @abstractmethod
    async def list_nodes(self) -> list[NodeRecord]:
        """
        List all registered nodes, oldest first.
        """
        pass

    @abstractmethod
    async def purge_nodes(self) -> list[NodeRecord]:
        """
        Remove every registered node.

        Used at startup, when any registered node was left behind by a
        previous controller process.

        Returns:
            The records that were removed
        """
        pass

    @abstractmethod
    async def record_snapshot(self, snapshot: SnapshotRecord) -> None:
        """
        Store the image committed for a run (replacing an earlier one).

        Args:
            snapshot: Committed image and the run it belongs to
        """
        pass

    @abstractmethod
    async def get_snapshot(self, job_name: str, run_id: str) -> SnapshotRecord | None:
        """
        Retrieve the image committed for a run.

        Returns:
            SnapshotRecord if the run was snapshotted, None otherwise
        """
        pass

"""
Pool controller: decides when to create and destroy worker containers.

The controller turns demand for a label into provisioning tasks, enforces
each template's capacity cap, and keeps the configured number of idle
workers warm by recomputing the shortfall every time a worker terminates.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from fleet_common.errors import NoMatchingTemplate, ProvisioningError, UnknownNode
from fleet_common.interfaces import DemandSignal
from fleet_common.labels import compile_expression
from fleet_common.models import Template, WorkRun
from fleet_common.registry import FleetRegistry

from .container_manager import (
    MANAGED_LABEL,
    TEMPLATE_LABEL,
    ContainerInfo,
    ContainerManager,
)
from .launcher import AGENT_PORT, LaunchSequencer, SSHAgentConnector
from .node import WorkerNode
from .retention import DEFAULT_CHECK_INTERVAL, RetentionMonitor

logger = logging.getLogger(__name__)

# Command that brings up the agent endpoint inside a worker container
AGENT_COMMAND = ["/usr/sbin/sshd", "-D"]
# Window over which the queue length is sampled
QUEUE_WINDOW = 10.0

EngineFactory = Callable[[str | None], ContainerManager]


@dataclass
class PlannedProvision:
    """
    A worker that has been asked for but is not yet connected.

    Lives in the controller's pending set from the moment the provisioning
    unit is accepted until its task finishes.
    """

    display_name: str
    label: str
    template: Template
    executors: int
    task: "asyncio.Task[WorkerNode]"

    @property
    def done(self) -> bool:
        return self.task.done()

    def to_dict(self) -> dict:
        return {
            "display_name": self.display_name,
            "label": self.label,
            "image": self.template.image,
            "executors": self.executors,
            "done": self.done,
        }


def label_key(label: str | None) -> str:
    """Normalise a label string for use as a dictionary key."""
    return " ".join((label or "").split())


class PoolController:
    """
    Elastic pool of container-backed workers.

    Public entry points may be called concurrently. Idle-floor recomputation
    is serialised per label; capacity checks and reservations are serialised
    per template.
    """

    def __init__(
        self,
        templates: Iterable[Template],
        demand: DemandSignal,
        registry: FleetRegistry | None = None,
        server_url: str | None = None,
        engine_factory: EngineFactory = ContainerManager,
        connector: SSHAgentConnector | None = None,
        retention_interval: float = DEFAULT_CHECK_INTERVAL,
        retention_disabled: bool = False,
        log_root: Path | None = None,
        reservation_safe: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the pool controller.

        Args:
            templates: Worker templates, first match wins
            demand: Live demand figures per label
            registry: Fleet registry nodes are registered in once connected
            server_url: Container engine address (None for the local engine)
            engine_factory: Builds the engine connection from server_url
            connector: Agent connector used by the launch sequencer
            retention_interval: Seconds between retention checks
            retention_disabled: Never terminate idle nodes when True
            log_root: Directory for per-node log directories
            reservation_safe: Count accepted but unstarted units against the
                              capacity cap, closing the check-then-create race
            sleep: Awaitable sleep used between connection attempts
        """
        self.templates = list(templates)
        self.demand = demand
        self.registry = registry
        self.server_url = server_url
        self.log_root = log_root
        self.reservation_safe = reservation_safe

        self._engine_factory = engine_factory
        self._engine: ContainerManager | None = None
        self._engine_lock = asyncio.Lock()

        self.launcher = LaunchSequencer(
            connector or SSHAgentConnector(), server_url=server_url, sleep=sleep
        )
        self.retention = RetentionMonitor(
            self.launcher,
            check_interval=retention_interval,
            disabled=retention_disabled,
        )

        # Connected nodes by display name
        self.nodes: dict[str, WorkerNode] = {}

        self._pending: dict[str, list[PlannedProvision]] = defaultdict(list)
        self._label_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._capacity_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._reserved: dict[str, int] = defaultdict(int)
        self._stopping = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Reclaim nodes left by a previous process and start the retention loop."""
        self._stopping = False
        await self.reclaim_stale_nodes()
        await self.retention.start_loop()
        logger.info(f"Pool controller started with {len(self.templates)} template(s)")

    async def stop(self) -> None:
        """
        Stop the retention loop and wait for in-flight work to finish.

        Provisioning and termination tasks are not cancelled: each runs to
        completion. Once stopping, no new containers are created, so a
        teardown finishing late does not top the idle floor back up.
        """
        logger.info("Stopping pool controller...")
        self._stopping = True
        await self.retention.stop_loop()

        in_flight = [p.task for records in self._pending.values() for p in records]
        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} provisioning task(s) to finish")
            await asyncio.gather(*in_flight, return_exceptions=True)

        terminating = [
            node.termination_task
            for node in list(self.nodes.values())
            if node.termination_task is not None
        ]
        if terminating:
            logger.info(f"Waiting for {len(terminating)} node termination(s) to finish")
            await asyncio.gather(*terminating, return_exceptions=True)
        logger.info("Pool controller stopped")

    async def reclaim_stale_nodes(self) -> int:
        """
        Remove containers of nodes still registered by a previous process.

        Their registry rows are dropped first; a container that cannot be
        removed is logged and left alone.

        Returns:
            Number of stale nodes found
        """
        if self.registry is None:
            return 0

        stale = await self.registry.purge_nodes()
        if not stale:
            return 0

        logger.warning(f"Reclaiming {len(stale)} node(s) left by a previous run")
        try:
            engine = await self.connect()
        except Exception as e:
            logger.error(f"Cannot reach container engine to reclaim nodes: {e}")
            return len(stale)

        for record in stale:
            logger.info(f"Removing stale node {record.name} ({record.container_id[:12]})")
            await self._discard_container(engine, record.container_id)
        return len(stale)

    async def connect(self) -> ContainerManager:
        """
        Get the shared engine connection, creating it on first use.

        Concurrent first callers wait for the same connection.
        """
        if self._engine is not None:
            return self._engine

        async with self._engine_lock:
            if self._engine is None:
                engine = self._engine_factory(self.server_url)
                version = await engine.ping()
                logger.info(
                    f"Connected to container engine {self.server_url or '(local)'} "
                    f"(version {version})"
                )
                self._engine = engine
        return self._engine

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def get_template(self, label: str | None) -> Template | None:
        """
        Get the first template whose labels satisfy the label expression.

        Raises:
            ValueError: If the label expression is malformed
        """
        matcher = compile_expression(label)
        for template in self.templates:
            if matcher(template.label_atoms):
                return template
        return None

    def can_provision(self, label: str | None) -> bool:
        try:
            return self.get_template(label) is not None
        except ValueError:
            return False

    def pending(self, label: str | None) -> list[PlannedProvision]:
        """Snapshot of the unfinished planned provisions for a label."""
        return [p for p in self._pending.get(label_key(label), []) if not p.done]

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def request_provision(
        self, label: str | None, excess_workload: int
    ) -> list[PlannedProvision]:
        """
        Start provisioning workers for a label.

        Args:
            label: Label expression the demand was raised for
            excess_workload: Executors needed beyond current capacity

        Returns:
            Planned provisions created (possibly empty)

        Raises:
            NoMatchingTemplate: If no template can serve the label
        """
        template = self.get_template(label)
        if template is None:
            raise NoMatchingTemplate(label)

        logger.info(f"Excess workload for {label!r}: {excess_workload}")
        return await self._provision_template(template, excess_workload)

    async def _provision_template(
        self, template: Template, excess_workload: int
    ) -> list[PlannedProvision]:
        if self._stopping:
            logger.info(f"Pool controller is stopping, not creating {template.image}")
            return []

        to_create = min(excess_workload + template.min_idle_floor, template.capacity_cap)
        logger.info(f"Creating up to {max(to_create, 0)} container(s) of {template.image}")

        planned: list[PlannedProvision] = []
        while to_create > 0:
            try:
                accepted = await self.may_provision_one_more(template, reserve=True)
            except Exception as e:
                logger.warning(
                    f"Capacity check for {template.image} failed: {e}", exc_info=True
                )
                break

            if not accepted:
                logger.info(f"No more capacity for {template.image} right now")
                break

            planned.append(self._submit(template))
            to_create -= template.executors_per_node

        return planned

    async def may_provision_one_more(self, template: Template, reserve: bool = False) -> bool:
        """
        Check that one more container of this template fits under its cap.

        A cap of 0 means unlimited and skips the engine listing.

        Args:
            template: Template to check
            reserve: If True and the check passes, reserve the slot until the
                     container has started (only when reservation_safe)

        Returns:
            True if another container may be created
        """
        if template.capacity_cap == 0:
            if reserve and self.reservation_safe:
                self._reserved[template.image] += 1
            return True

        if not self.reservation_safe:
            live = await self.count_live_containers(template)
            return live < template.capacity_cap

        async with self._capacity_locks[template.image]:
            live = await self.count_live_containers(template)
            reserved = self._reserved[template.image]
            accepted = live + reserved < template.capacity_cap
            logger.debug(
                f"Capacity of {template.image}: {live} live + {reserved} reserved "
                f"of {template.capacity_cap}"
            )
            if accepted and reserve:
                self._reserved[template.image] += 1
            return accepted

    async def count_live_containers(self, template: Template) -> int:
        """Count running containers that belong to the template."""
        engine = await self.connect()
        containers = await engine.list_containers(running_only=True)
        return sum(1 for c in containers if self._belongs_to(c, template))

    @staticmethod
    def _belongs_to(container: ContainerInfo, template: Template) -> bool:
        owner = container.labels.get(TEMPLATE_LABEL)
        if owner is not None:
            return owner == template.image
        return container.image == template.image

    def _release_reservation(self, template: Template) -> None:
        if self.reservation_safe and self._reserved[template.image] > 0:
            self._reserved[template.image] -= 1

    def _submit(self, template: Template) -> PlannedProvision:
        """Launch one provisioning unit and track it as pending."""
        task = asyncio.create_task(self._provision_node(template))
        record = PlannedProvision(
            display_name=template.display_name,
            label=label_key(template.label_selector),
            template=template,
            executors=template.executors_per_node,
            task=task,
        )
        self._pending[record.label].append(record)
        task.add_done_callback(lambda _task: self._provision_done(record))
        return record

    def _provision_done(self, record: PlannedProvision) -> None:
        records = self._pending.get(record.label, [])
        if record in records:
            records.remove(record)

        task = record.task
        if task.cancelled():
            logger.warning(f"Provisioning of {record.display_name} was cancelled")
            return

        error = task.exception()
        if error is not None:
            logger.warning(
                f"Error in provisioning {record.display_name}: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )
        else:
            logger.info(f"Provisioned node {task.result().display_name}")

    async def _provision_node(self, template: Template) -> WorkerNode:
        """
        Create, start and connect one worker container.

        Any container created here is removed again if it cannot be started
        or connected.
        """
        released = False

        def release() -> None:
            nonlocal released
            if not released:
                released = True
                self._release_reservation(template)

        try:
            engine = await self.connect()
            logger.info(f"Launching {template.image}")
            container_id = await engine.create_container(
                template.image,
                AGENT_COMMAND,
                exposed_ports=[AGENT_PORT],
                port_bindings={AGENT_PORT: ("0.0.0.0", template.connection.ssh_port)},
                labels={MANAGED_LABEL: "true", TEMPLATE_LABEL: template.image},
            )

            try:
                await engine.start_container(container_id)
                # Running containers are counted by the engine listing from here on
                release()
                info = await engine.inspect_container(container_id)
            except Exception:
                logger.error(f"Failed to start container {container_id}, removing it")
                await self._discard_container(engine, container_id)
                raise
        finally:
            release()

        node = WorkerNode(
            container_id,
            template,
            engine,
            listener=self,
            registry=self.registry,
            log_root=self.log_root,
            server_url=self.server_url,
        )
        node.container_info = info

        if not await self.retention.start(node):
            raise ProvisioningError(f"Could not connect node {node.display_name}")

        self.nodes[node.display_name] = node
        if self.registry is not None:
            try:
                await self.registry.register(node.to_record())
            except Exception as e:
                logger.error(f"Failed to register node {node.display_name}: {e}")
                await node.terminate()
                raise ProvisioningError(
                    f"Could not register node {node.display_name}"
                ) from e

        return node

    async def _discard_container(self, engine: ContainerManager, container_id: str) -> None:
        try:
            await engine.remove_container(container_id, force=True)
        except Exception as e:
            logger.error(f"Failed to remove container {container_id}: {e}")

    # ------------------------------------------------------------------
    # Termination and idle floor
    # ------------------------------------------------------------------

    async def container_terminated(self, template: Template, node: WorkerNode) -> None:
        """
        Top the pool back up to the template's idle floor after a teardown.

        Never raises: a missed top-up is corrected by the next termination.
        """
        self.nodes.pop(node.display_name, None)
        self.retention.nodes.pop(node.display_name, None)

        if template.min_idle_floor < 0 or self._stopping:
            return

        label = label_key(template.label_selector)
        async with self._label_locks[label]:
            try:
                excess_workload = min(
                    self.demand.queue_length(label, QUEUE_WINDOW),
                    self.demand.compute_queue_length(label),
                )
                excess_workload -= self.demand.idle_executors(label)
                for planned in self.pending(label):
                    excess_workload -= planned.executors

                logger.debug(
                    f"Idle floor check for {label!r} after {node.display_name}: "
                    f"excess={excess_workload} floor={template.min_idle_floor}"
                )
                if excess_workload > -template.min_idle_floor:
                    await self._provision_template(template, excess_workload)
            except Exception as e:
                logger.warning(
                    f"Error in provisioning container to maintain minimum idle count: {e}",
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Work notifications
    # ------------------------------------------------------------------

    def get_node(self, name: str) -> WorkerNode:
        node = self.nodes.get(name)
        if node is None:
            raise UnknownNode(name)
        return node

    def work_started(self, name: str, run: WorkRun) -> None:
        """
        Mark a node busy with a run.

        Raises:
            UnknownNode: If the controller does not own the node
            NodeNotAccepting: If the node has already run work or is going away
        """
        self.get_node(name).work_started(run)

    def work_completed(self, name: str, run: WorkRun, problems: bool = False) -> asyncio.Task:
        """Mark the node's work as done; the node terminates in the background."""
        return self.get_node(name).work_completed(run, problems=problems)

    def terminate_node(self, name: str) -> asyncio.Task:
        return self.get_node(name).retention_terminate()

"""
Worker nodes: one provisioned, container-backed fleet member each.

A node owns its teardown. Teardown is a fixed sequence of best-effort steps
followed by exactly one termination notification to the pool controller, so
the idle floor can be recomputed.
"""

import asyncio
import logging
import shutil
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from fleet_common.interfaces import TerminationListener
from fleet_common.errors import NodeNotAccepting
from fleet_common.models import NodeRecord, NodeState, SnapshotRecord, Template, WorkRun
from fleet_common.registry import FleetRegistry

from .container_manager import ContainerInfo, ContainerManager

if TYPE_CHECKING:
    from .launcher import AgentConnection

logger = logging.getLogger(__name__)

COMMIT_AUTHOR = "fleet"


class WorkerNode:
    """
    A running worker container registered (or about to be) as a fleet member.

    Node fields are fixed after construction except the lifecycle state, the
    agent connection, the monotonic has_run_work flag and the commit target,
    which can only be set once.
    """

    def __init__(
        self,
        container_id: str,
        template: Template,
        engine: ContainerManager,
        listener: TerminationListener,
        registry: FleetRegistry | None = None,
        log_root: Path | None = None,
        server_url: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize a worker node.

        Args:
            container_id: Engine handle of the backing container
            template: Template the container was created from
            engine: Container engine used for teardown
            listener: Notified once when teardown has finished
            registry: Fleet registry to deregister from during teardown
            log_root: Directory holding per-node log directories
            server_url: Engine address, recorded with committed snapshots
            clock: Monotonic clock used for idle tracking
        """
        self.container_id = container_id
        self.template = template
        self.display_name = template.node_name(container_id)
        self.engine = engine
        self.listener = listener
        self.registry = registry
        self.log_root = log_root
        self.server_url = server_url
        self._clock = clock

        self.state = NodeState.PROVISIONING
        self.container_info: ContainerInfo | None = None
        self.agent: "AgentConnection | None" = None
        self.busy_with: WorkRun | None = None
        self.idle_since = clock()
        self.committed_image: str | None = None

        self._has_run_work = False
        self._pending_commit_target: WorkRun | None = None
        self._termination_task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return (
            f"WorkerNode(name={self.display_name!r}, "
            f"container_id={self.container_id[:12]!r}, state={self.state.value})"
        )

    @property
    def has_run_work(self) -> bool:
        return self._has_run_work

    @property
    def pending_commit_target(self) -> WorkRun | None:
        return self._pending_commit_target

    @property
    def termination_task(self) -> asyncio.Task | None:
        return self._termination_task

    @property
    def is_idle(self) -> bool:
        return self.busy_with is None

    @property
    def is_online(self) -> bool:
        return self.state == NodeState.ACTIVE and self.agent is not None

    @property
    def is_accepting_work(self) -> bool:
        """One-shot nodes accept work only until they have run something."""
        return not self._has_run_work and self.is_online

    @property
    def log_dir(self) -> Path | None:
        if self.log_root is None:
            return None
        return self.log_root / self.display_name

    def idle_seconds(self) -> float:
        if not self.is_idle:
            return 0.0
        return self._clock() - self.idle_since

    def to_record(self) -> NodeRecord:
        return NodeRecord(
            name=self.display_name,
            container_id=self.container_id,
            image=self.template.image,
            labels=self.template.label_selector,
            state=self.state.value,
            registered_at=datetime.now(UTC),
        )

    def append_launch_log(self, message: str) -> None:
        """Append a line to this node's launch log (best effort)."""
        if self.log_dir is None:
            return
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_dir / "launch.log", "a") as f:
                f.write(f"{datetime.now(UTC).isoformat()} {message}\n")
        except OSError as e:
            logger.debug(f"Could not write launch log for {self.display_name}: {e}")

    # ------------------------------------------------------------------
    # Work notifications
    # ------------------------------------------------------------------

    def commit_on_terminate(self, run: WorkRun) -> None:
        """Remember the run to snapshot on teardown. Only the first call counts."""
        if self._pending_commit_target is not None:
            logger.debug(
                f"Node {self.display_name} already commits for "
                f"{self._pending_commit_target}, ignoring {run}"
            )
            return
        self._pending_commit_target = run

    def work_started(self, run: WorkRun) -> None:
        """
        Mark the node busy with a run.

        Raises:
            NodeNotAccepting: If the node has already run work or is not online
        """
        if not self.is_accepting_work:
            logger.warning(
                f"Node {self.display_name} ({self.state.value}) refused {run}"
            )
            raise NodeNotAccepting(self.display_name)
        logger.debug(f"Node {self.display_name} accepted {run}")
        self.busy_with = run

    def work_completed(self, run: WorkRun, problems: bool = False) -> asyncio.Task:
        """
        Handle a finished unit of work.

        The node never accepts another unit afterwards: it is scheduled for
        termination straight away.

        Returns:
            The background termination task
        """
        try:
            logger.debug(
                f"Node {self.display_name} completed {run}"
                + (" with problems" if problems else "")
            )
            if not problems and self.template.commit_on_completion:
                self.commit_on_terminate(run)
        finally:
            self._has_run_work = True
            self.busy_with = None
            self.idle_since = self._clock()
        return self.retention_terminate()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def retention_terminate(self) -> asyncio.Task:
        """
        Schedule terminate() in the background and return immediately.

        Repeated calls return the already scheduled task.
        """
        if self._termination_task is None:
            self._termination_task = asyncio.create_task(self._terminate_logged())
        return self._termination_task

    async def _terminate_logged(self) -> None:
        try:
            logger.info(f"Terminating provisioned node {self.display_name}")
            await self.terminate()
            logger.info(f"Terminated provisioned node {self.display_name}")
        except Exception as e:
            logger.warning(f"Error terminating node {self.display_name}: {e}", exc_info=True)

    async def terminate(self) -> None:
        """
        Tear the node down.

        Steps run in order and each failure is logged without stopping the
        remaining steps. The controller is notified exactly once, after all
        steps were attempted.
        """
        if self.state in (NodeState.TERMINATING, NodeState.TERMINATED):
            logger.debug(f"Node {self.display_name} is already {self.state.value}")
            return

        self.state = NodeState.TERMINATING
        try:
            await self._step("disconnect", self._disconnect)
            await self._step("stop", self._stop)
            if self.template.commit_on_completion and self._pending_commit_target:
                await self._step("commit", self._commit)
            await self._step("remove", self._remove)
            await self._step("delete logs of", self._delete_logs)
        finally:
            self.state = NodeState.TERMINATED
            await self.listener.container_terminated(self.template, self)

    async def _step(self, action: str, step: Callable[[], Awaitable[None]]) -> None:
        try:
            await step()
        except Exception as e:
            logger.error(
                f"Failed to {action} container {self.container_id} "
                f"({self.display_name}): {e}",
                exc_info=True,
            )

    async def _disconnect(self) -> None:
        logger.info(f"Disconnecting node {self.display_name}")
        agent, self.agent = self.agent, None
        try:
            if agent is not None:
                await agent.close()
        finally:
            if self.registry is not None:
                await self.registry.deregister(self.display_name)

    async def _stop(self) -> None:
        await self.engine.stop_container(self.container_id)

    async def _commit(self) -> None:
        run = self._pending_commit_target
        self.committed_image = await self.engine.commit_container(
            self.container_id,
            author=COMMIT_AUTHOR,
            repository=run.repository,
            tag=run.tag,
        )
        logger.info(
            f"Committed container {self.container_id} for {run.job_name} "
            f"#{run.run_id} as {self.committed_image}"
        )
        if self.registry is not None:
            await self.registry.record_snapshot(
                SnapshotRecord(
                    job_name=run.job_name,
                    run_id=run.run_id,
                    server_url=self.server_url,
                    container_id=self.container_id,
                    image_id=self.committed_image,
                    tag=f"{run.repository}:{run.tag}",
                    created_at=datetime.now(UTC),
                )
            )

    async def _remove(self) -> None:
        await self.engine.remove_container(self.container_id)

    async def _delete_logs(self) -> None:
        log_dir = self.log_dir
        if log_dir is not None and log_dir.exists():
            shutil.rmtree(log_dir)

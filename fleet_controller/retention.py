"""
One-shot retention policy for worker nodes.

Every node runs exactly one unit of work. The retention monitor checks the
nodes it owns at a fixed interval and terminates any node that has finished
its work and gone idle.
"""

import asyncio
import logging

from fleet_common.models import NodeState

from .launcher import LaunchSequencer
from .node import WorkerNode

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 60.0


class RetentionMonitor:
    """
    Periodically applies the one-shot policy to every owned node.

    The policy fires on the first check after a node went idle having run
    its work; there is no grace period.
    """

    def __init__(
        self,
        launcher: LaunchSequencer,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        disabled: bool = False,
    ):
        """
        Initialize the retention monitor.

        Args:
            launcher: Used to connect nodes as soon as they are adopted
            check_interval: Seconds between checks
            disabled: If True, never terminate nodes
        """
        self.launcher = launcher
        self.check_interval = check_interval
        self.disabled = disabled

        self.nodes: dict[str, WorkerNode] = {}
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self, node: WorkerNode) -> bool:
        """
        Adopt a node and connect it right away.

        Returns:
            True if the node connected and is now monitored
        """
        connected = await self.launcher.launch(node)
        if connected:
            self.nodes[node.display_name] = node
        return connected

    def check(self, node: WorkerNode) -> float:
        """
        Terminate the node if it is idle, online and has run its work.

        Returns:
            Seconds until the next check
        """
        logger.debug(f"Checking {node!r}")
        if node.is_idle and node.is_online and not self.disabled and node.has_run_work:
            if node.idle_seconds() > 0:
                logger.info(f"Idle timeout: {node.display_name}")
                node.retention_terminate()
        return self.check_interval

    def check_all(self) -> None:
        """Run one pass over all owned nodes, dropping terminated ones."""
        for name, node in list(self.nodes.items()):
            if node.state == NodeState.TERMINATED:
                self.nodes.pop(name, None)
                continue
            try:
                self.check(node)
            except Exception as e:
                logger.error(f"Error checking node {name}: {e}", exc_info=True)

    async def start_loop(self) -> None:
        """Start the periodic check loop."""
        if self._running:
            logger.warning("Retention monitor already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Retention monitor started")

    async def stop_loop(self) -> None:
        """Stop the periodic check loop."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Retention monitor stopped")

    async def _run_loop(self) -> None:
        """Main check loop."""
        while self._running:
            try:
                self.check_all()
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in retention loop: {e}", exc_info=True)
                await asyncio.sleep(self.check_interval)

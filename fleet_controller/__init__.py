"""
Fleet Controller module.

This module contains the pool controller and the pieces it drives: the
container engine adapter, the launch sequencer, worker nodes and the
retention monitor. The controller creates workers in response to demand,
keeps an idle floor warm, and tears workers down after their single job.
"""

from .container_manager import ContainerInfo, ContainerManager
from .controller import PlannedProvision, PoolController
from .demand import QueueStatistics
from .launcher import AgentConnection, LaunchSequencer, SSHAgentConnector
from .node import WorkerNode
from .retention import RetentionMonitor

__all__ = [
    "AgentConnection",
    "ContainerInfo",
    "ContainerManager",
    "LaunchSequencer",
    "PlannedProvision",
    "PoolController",
    "QueueStatistics",
    "RetentionMonitor",
    "SSHAgentConnector",
    "WorkerNode",
]

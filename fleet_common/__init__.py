"""
Fleet Common module.

This module contains shared domain models and interfaces used across
the fleet components (controller, persistence, server, admin).

The common module has no dependencies on other fleet_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import (
    ConfigurationError,
    EndpointNotFound,
    EngineError,
    FleetError,
    NoMatchingTemplate,
    NodeNotAccepting,
    ProvisioningError,
    UnknownNode,
)
from .models import (
    ConnectionParams,
    NodeRecord,
    NodeState,
    SnapshotRecord,
    Template,
    WorkRun,
)
from .registry import FleetRegistry, TemplateStore

__all__ = [
    "ConfigurationError",
    "ConnectionParams",
    "EndpointNotFound",
    "EngineError",
    "FleetError",
    "FleetRegistry",
    "NoMatchingTemplate",
    "NodeNotAccepting",
    "NodeRecord",
    "NodeState",
    "ProvisioningError",
    "SnapshotRecord",
    "Template",
    "TemplateStore",
    "UnknownNode",
    "WorkRun",
]

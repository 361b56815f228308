"""
Exception types shared across the fleet components.
"""


class FleetError(Exception):
    """Base class for all fleet errors."""


class ConfigurationError(FleetError, ValueError):
    """Raised when a template is built from invalid configuration."""


class NoMatchingTemplate(FleetError):
    """Raised when no configured template can serve a demand label."""

    def __init__(self, label: str | None):
        super().__init__(f"No template matches label {label!r}")
        self.label = label


class EndpointNotFound(FleetError):
    """Raised when a container publishes no host port for the agent port."""


class EngineError(FleetError, RuntimeError):
    """Raised when a container engine operation fails."""


class ProvisioningError(FleetError):
    """Raised by a provisioning task that produced no usable node."""


class UnknownNode(FleetError, KeyError):
    """Raised when a notification names a node the controller does not own."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown node: {self.name}"


class NodeNotAccepting(FleetError):
    """Raised when work is offered to a node that takes no more work."""

    def __init__(self, name: str):
        super().__init__(f"Node {name} is not accepting work")
        self.name = name

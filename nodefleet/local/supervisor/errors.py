class FleetError(Exception):
    """Base class for all supervisor errors."""


class ConfigError(FleetError):
    """The merged configuration cannot be used to run the fleet."""


class NodeStartError(FleetError):
    """A worker process exited during its launch grace period."""

    def __init__(self, index: int, cause: str) -> None:
        super().__init__(f"node-{index} failed to start: {cause}")
        self.index = index
        self.cause = cause


class InvalidTransitionError(FleetError):
    """A node state change that the lifecycle does not allow."""

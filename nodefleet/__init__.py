"""NodeFleet: launches, isolates, monitors and restarts a fleet of identical worker processes."""

__version__ = "1.0.0"

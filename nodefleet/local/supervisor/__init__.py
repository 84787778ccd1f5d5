"""
The Supervisor package.
Manages the lifecycle of the fleet's worker processes.

This package contains the central FleetSupervisor class and its helper
modules, which together handle resource planning, isolation, starting,
health monitoring, restarting and stopping of every node.
"""
from .supervisor import FleetSupervisor

__all__ = ['FleetSupervisor']

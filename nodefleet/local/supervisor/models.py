"""
Data model for the supervised fleet.

NodeInstance is the single record kept per worker; the supervisor holds them
in a list indexed by node index. ClusterPlan is the frozen output of the
resource planner.
"""
import enum
import logging
from collections import namedtuple
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import psutil

from .errors import InvalidTransitionError

log = logging.getLogger(__name__)

NodePorts = namedtuple("NodePorts", ["http", "rpc", "metrics"])


class NodeState(enum.Enum):
    PENDING = "Pending"
    STARTING = "Starting"
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    RESTARTING = "Restarting"
    STOPPED = "Stopped"

    def __str__(self) -> str:
        return self.value


# Stopped is reachable from every state and is handled separately.
_ALLOWED_TRANSITIONS = {
    NodeState.PENDING: {NodeState.STARTING},
    NodeState.STARTING: {NodeState.HEALTHY, NodeState.UNHEALTHY},
    NodeState.HEALTHY: {NodeState.UNHEALTHY},
    NodeState.UNHEALTHY: {NodeState.RESTARTING},
    NodeState.RESTARTING: {NodeState.STARTING},
    NodeState.STOPPED: {NodeState.STARTING},
}


@dataclass(frozen=True)
class ClusterPlan:
    """Resource split computed once at startup."""
    node_count: int
    cpu_per_node: int
    memory_per_node: int
    available_cores: int
    available_memory: int
    shared_cores: bool = False
    core_ids: Tuple[int, ...] = ()

    @property
    def cores(self) -> Tuple[int, ...]:
        """The usable core IDs, in ascending order. Defaults to 0..available_cores-1."""
        return self.core_ids or tuple(range(self.available_cores))


def format_cpu_list(cpus) -> str:
    """Renders core IDs in taskset list form, e.g. (0, 1, 2, 5) -> '0-2,5'."""
    parts = []
    for cpu in sorted(cpus):
        if parts and cpu == parts[-1][1] + 1:
            parts[-1][1] = cpu
        else:
            parts.append([cpu, cpu])
    return ",".join(str(a) if a == b else f"{a}-{b}" for a, b in parts)


@dataclass
class NodeInstance:
    """One supervised worker process and everything derived from its index."""
    index: int
    node_id: str
    ports: NodePorts
    cpus: Tuple[int, ...]
    memory_limit: int
    data_dir: Path
    log_dir: Path
    state: NodeState = NodeState.PENDING
    process: Optional[psutil.Popen] = None
    scope: Optional[Path] = None
    pgid: Optional[int] = None
    restart_count: int = 0
    failure_streak: int = 0
    last_restart_at: Optional[float] = None
    restart_at: float = 0.0
    ready_deadline: float = 0.0
    readiness_misses: int = 0
    last_exit: Optional[str] = None

    @property
    def name(self) -> str:
        return f"node-{self.index}"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def cpu_range_str(self) -> str:
        return format_cpu_list(self.cpus)

    @property
    def cpu_list(self) -> list:
        return list(self.cpus)

    def snapshot(self) -> Dict[str, Any]:
        """A JSON-serialisable view of the node, as shown by the status table."""
        return {
            "index": self.index,
            "name": self.name,
            "node_id": self.node_id,
            "state": str(self.state),
            "pid": self.pid,
            "ports": self.ports._asdict(),
            "cpus": self.cpu_range_str,
            "restarts": self.restart_count,
            "last_exit": self.last_exit,
        }

    def transition(self, new_state: NodeState, reason: str = "") -> None:
        """
        Moves the node to a new lifecycle state, logging the change.

        :param new_state: The target state.
        :param reason: Optional short explanation included in the log line.
        :raises InvalidTransitionError: If the lifecycle does not allow this edge.
        """
        old_state = self.state
        if new_state != NodeState.STOPPED and new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise InvalidTransitionError(f"{self.name}: illegal transition {old_state} -> {new_state}")

        self.state = new_state
        suffix = f" ({reason})" if reason else ""
        level = logging.WARNING if new_state == NodeState.UNHEALTHY else logging.INFO
        log.log(level, f"{self.name}: {old_state} -> {new_state}{suffix}")

"""
Health monitoring for the fleet.

Each node runs through a small state machine driven by check_node(); the
fleet as a whole is watched by FleetEscalation, which turns a sustained
majority failure into a full shutdown instead of endless restarts.
"""
import time
import logging
from typing import TYPE_CHECKING, Optional

import requests

from . import persistence, shutdown
from .errors import NodeStartError
from .models import NodeInstance, NodeState
from .process_utils import describe_exit, is_alive, start_node

if TYPE_CHECKING:
    from nodefleet.local.config import MergedSettings
    from .supervisor import FleetSupervisor

log = logging.getLogger(__name__)

_MAX_BACKOFF_EXPONENT = 16


def restart_delay(config: "MergedSettings", failure_streak: int) -> float:
    """
    Returns the wait before relaunching a node, doubling with every
    consecutive failed restart and capped at RESTART_BACKOFF_MAX_SECONDS.
    """
    exponent = min(failure_streak, _MAX_BACKOFF_EXPONENT)
    delay = config.RESTART_COOLDOWN_SECONDS * (2 ** exponent)
    return min(delay, config.RESTART_BACKOFF_MAX_SECONDS)


class FleetEscalation:
    """Counts consecutive polling cycles in which more than half the fleet is failing."""

    def __init__(self, max_cycles: int) -> None:
        self.max_cycles = max_cycles
        self.consecutive_failures = 0

    def record(self, failed: int, total: int) -> bool:
        """
        Records the outcome of one polling cycle.

        :param failed: Nodes not Healthy at the end of the cycle.
        :param total: Fleet size.
        :return: True once the majority failure has outlasted max_cycles.
        """
        if failed * 2 > total:
            self.consecutive_failures += 1
            log.error(
                f"More than half of nodes are failing! ({failed}/{total}) "
                f"[consecutive cycles: {self.consecutive_failures}/{self.max_cycles}]"
            )
            return self.consecutive_failures > self.max_cycles

        if self.consecutive_failures:
            log.info(f"Fleet back below failure threshold ({failed}/{total}); escalation counter reset.")
        self.consecutive_failures = 0
        return False


class HealthMonitor:
    """Polls every node's liveness and readiness and drives restarts."""

    def __init__(self, manager: "FleetSupervisor") -> None:
        self.manager = manager
        self.config = manager.config
        self.escalation = FleetEscalation(self.config.ESCALATION_CYCLES)
        self.session = requests.Session()
        # Readiness endpoints live on the local host; environment proxy settings do not apply.
        self.session.trust_env = False

    #* --- Probes ---
    def probe_ready(self, node: NodeInstance) -> bool:
        """Queries the node's readiness endpoint. Any error or non-2xx response means not ready."""
        url = f"http://{self.config.PROBE_HOST}:{node.ports.http}{self.config.READINESS_PATH}"
        try:
            response = self.session.get(url, timeout=self.config.PROBE_TIMEOUT_SECONDS)
            return response.ok
        except requests.RequestException as e:
            log.debug(f"Readiness probe for {node.name} failed: {e}")
            return False

    #* --- Per-node state machine ---
    def _record_death(self, node: NodeInstance) -> str:
        if node.process is None:
            node.last_exit = "no process recorded"
        else:
            node.last_exit = f"PID {node.process.pid} {describe_exit(node.process.returncode)}"
        return node.last_exit

    def check_node(self, node: NodeInstance, now: float) -> None:
        """
        Advances one node's state machine by one polling step.

        :param node: The node to check.
        :param now: The current time.monotonic() value.
        """
        state = node.state

        if state == NodeState.STARTING:
            if not is_alive(node):
                node.transition(NodeState.UNHEALTHY, f"died during startup: {self._record_death(node)}")
            elif self.probe_ready(node):
                node.failure_streak = 0
                node.readiness_misses = 0
                node.transition(NodeState.HEALTHY, "readiness probe passed")
            elif now > node.ready_deadline:
                node.transition(
                    NodeState.UNHEALTHY,
                    f"not ready after {self.config.STARTUP_WINDOW_SECONDS:.0f}s startup window",
                )

        elif state == NodeState.HEALTHY:
            if not is_alive(node):
                node.transition(NodeState.UNHEALTHY, f"process died: {self._record_death(node)}")
            elif self.probe_ready(node):
                node.readiness_misses = 0
            else:
                node.readiness_misses += 1
                threshold = self.config.READINESS_FAILURE_THRESHOLD
                log.warning(f"{node.name} health check failed ({node.readiness_misses}/{threshold})")
                if node.readiness_misses >= threshold:
                    node.transition(NodeState.UNHEALTHY, "readiness lost")

        elif state == NodeState.RESTARTING:
            if now >= node.restart_at:
                self._relaunch(node)

        if node.state == NodeState.UNHEALTHY:
            self._begin_restart(node)

    def _begin_restart(self, node: NodeInstance) -> None:
        """
        Kills what is left of an unhealthy node and schedules its relaunch.

        The worker's whole process group goes, so children of a crashed
        worker cannot hold on to the node's ports across the restart.
        """
        if node.process is not None or node.pgid is not None:
            shutdown.kill_processes(shutdown.collect_processes([node]))
            if node.pgid is not None:
                shutdown.kill_process_groups([node.pgid])
            if node.process is not None:
                node.process.poll()
            node.process = None
            node.pgid = None

        max_attempts = self.config.MAX_RESTART_ATTEMPTS
        if max_attempts and node.failure_streak >= max_attempts:
            log.critical(f"{node.name} has failed {node.failure_streak} restarts in a row. Halting restart attempts.")
            node.transition(NodeState.STOPPED, "restart limit reached")
            persistence.remove_node_pid(self.config.PID_DIR, node.index)
            return

        delay = restart_delay(self.config, node.failure_streak)
        node.restart_at = time.monotonic() + delay
        node.transition(NodeState.RESTARTING, f"relaunch in {delay:.1f}s")

    def _relaunch(self, node: NodeInstance) -> None:
        node.restart_count += 1
        node.failure_streak += 1
        node.last_restart_at = time.time()
        log.warning(f"Restarting {node.name} (restart #{node.restart_count})...")
        try:
            start_node(self.manager, node)
        except NodeStartError as e:
            node.transition(NodeState.UNHEALTHY, e.cause)

    #* --- Fleet loop ---
    def failed_count(self) -> int:
        return sum(1 for node in self.manager.nodes if node.state != NodeState.HEALTHY)

    def run_cycle(self) -> Optional[int]:
        """
        Checks every node once, publishes the status snapshot, then counts the failing ones.

        :return: The number of nodes not Healthy, or None if shutdown was requested mid-cycle.
        """
        for node in self.manager.nodes:
            if self.manager.shutdown_signal_received.is_set():
                return None
            self.check_node(node, time.monotonic())
        self.manager.publish_status()
        return self.failed_count()

    def await_startup(self) -> bool:
        """
        Polls the freshly launched fleet until no node is Starting or the
        startup window has passed.

        :return: True if every node reached Healthy.
        """
        log.info("Waiting for all nodes to be healthy...")
        event = self.manager.shutdown_signal_received
        deadline = time.monotonic() + self.config.STARTUP_WINDOW_SECONDS
        while not event.is_set():
            if self.run_cycle() is None:
                return False
            starting = any(node.state == NodeState.STARTING for node in self.manager.nodes)
            if not starting or time.monotonic() > deadline:
                break
            event.wait(1.0)

        failed = self.failed_count()
        if failed == 0:
            log.info("All nodes are healthy and ready!")
            return True
        log.warning(f"{failed} of {len(self.manager.nodes)} node(s) not healthy after startup; monitor will keep restarting them.")
        return False

    def run(self) -> None:
        """Steady-state loop. Returns when shutdown is requested or after a fatal escalation."""
        log.info("Starting node monitor...")
        event = self.manager.shutdown_signal_received
        while not event.is_set():
            failed = self.run_cycle()
            if failed is None:
                break

            if self.escalation.record(failed, len(self.manager.nodes)):
                log.critical("Too many consecutive failures! Shutting down the fleet.")
                self.manager.shutdown(self.config.EXIT_FLEET_FAILURE, "fatal fleet escalation")
                return

            if self.manager.status_requested.is_set():
                self.manager.status_requested.clear()
                self.manager.report_status()

            event.wait(self.config.MONITOR_INTERVAL)

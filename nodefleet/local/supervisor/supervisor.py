import os
import time
import signal
import logging
import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from nodefleet.local.console import handler as console
from nodefleet.local.supervisor import health, isolation, persistence, planner, process_utils, shutdown, startup
from nodefleet.local.supervisor.errors import ConfigError, NodeStartError
from nodefleet.local.supervisor.models import ClusterPlan, NodeInstance, NodeState

if TYPE_CHECKING:
    from nodefleet.local.config import MergedSettings

log = logging.getLogger(__name__)


class FleetSupervisor:
    """
    Owns the node table and drives the fleet from planning to shutdown.

    All node state is touched only from the thread that calls run(); signal
    handlers just set events.
    """

    def __init__(self, config: "MergedSettings", isolation_provider: Optional[isolation.IsolationProvider] = None) -> None:
        """
        :param config: The merged, validated settings.
        :param isolation_provider: Overrides the probed provider (used by tests).
        """
        self.config = config
        self.plan: Optional[ClusterPlan] = None
        self.nodes: List[NodeInstance] = []
        self.isolation = isolation_provider
        self.monitor: Optional[health.HealthMonitor] = None

        self.shutdown_signal_received = threading.Event()
        self.status_requested = threading.Event()
        self.exit_code: Optional[int] = None
        self.shutdown_reason: Optional[str] = None
        self._stopped = False
        self.start_time: Optional[float] = None

    #* --- Signals ---
    def _handle_termination(self, signum, frame) -> None:
        if not self.shutdown_signal_received.is_set():
            self.shutdown_reason = f"external request ({signal.Signals(signum).name})"
        self.shutdown_signal_received.set()

    def _handle_status_request(self, signum, frame) -> None:
        self.status_requested.set()

    def install_signal_handlers(self) -> None:
        """Routes SIGTERM/SIGINT to a graceful shutdown and SIGUSR1 to a status report."""
        signal.signal(signal.SIGTERM, self._handle_termination)
        signal.signal(signal.SIGINT, self._handle_termination)
        if hasattr(signal, "SIGUSR1"):
            signal.signal(signal.SIGUSR1, self._handle_status_request)

    def request_shutdown(self, reason: str = "external request") -> None:
        if not self.shutdown_signal_received.is_set():
            self.shutdown_reason = reason
        self.shutdown_signal_received.set()

    #* --- Startup ---
    def prepare(self) -> ClusterPlan:
        """
        Plans resources, selects isolation and builds the node table. No process is started.

        :return: The cluster plan.
        """
        cores, memory = planner.measure_host()
        self.plan = planner.plan_cluster(
            self.config.NODE_COUNT,
            self.config.CPU_PER_NODE,
            self.config.memory_per_node_bytes,
            cores,
            memory,
        )
        if self.isolation is None:
            self.isolation = isolation.select_isolation_provider(self.config)
        self.nodes = [process_utils.build_node(self.config, self.plan, i) for i in range(self.plan.node_count)]
        return self.plan

    def start_fleet(self) -> None:
        """Starts every node, staggered. A node that fails to start enters the restart path."""
        log.info(f"Starting {len(self.nodes)} nodes...")
        for node in self.nodes:
            if self.shutdown_signal_received.is_set():
                return
            try:
                process_utils.start_node(self, node)
            except NodeStartError as e:
                node.transition(NodeState.UNHEALTHY, e.cause)

            # Stagger startup to avoid resource contention
            if node.index < len(self.nodes) - 1:
                self.shutdown_signal_received.wait(self.config.STAGGER_DELAY_SECONDS)
        log.info("All nodes launched.")

    #* --- Status ---
    def status_snapshot(self) -> Dict[str, Any]:
        """The fleet as the `status` command and SIGUSR1 reports show it."""
        return {
            "supervisor_pid": os.getpid(),
            "updated_at": time.time(),
            "isolation": self.isolation.status if self.isolation is not None else "unknown",
            "shared_cores": bool(self.plan and self.plan.shared_cores),
            "nodes": [node.snapshot() for node in self.nodes],
        }

    def publish_status(self) -> None:
        """Rewrites the status file in the PID directory. Called after every monitor cycle."""
        persistence.write_status(self.config.PID_DIR, self.status_snapshot())

    def report_status(self) -> None:
        snapshot = self.status_snapshot()
        for line in console.format_status_table(snapshot["nodes"], snapshot["isolation"]):
            log.info(line)

    def run(self) -> int:
        """
        Runs the supervisor until an external termination request or a fatal
        fleet escalation.

        :return: The process exit code.
        """
        self.start_time = time.time()
        try:
            startup.initialize_directories(self.config)
            if startup.check_if_already_running(self.config):
                return self.config.EXIT_STARTUP_FAILURE
            startup.check_worker_binary(self.config)
            self.prepare()
        except ConfigError as e:
            log.critical(f"Startup failed: {e}")
            return self.config.EXIT_STARTUP_FAILURE

        persistence.write_supervisor_pid(self.config.PID_DIR)
        console.print_banner(self.config, self.plan, self.isolation.status)

        self.monitor = health.HealthMonitor(self)
        try:
            self.start_fleet()
            if self.monitor.await_startup():
                self.report_status()
            self.monitor.run()
        except Exception as e:
            log.critical(f"Critical error in supervisor loop: {e}", exc_info=True)
            self.shutdown(self.config.EXIT_FLEET_FAILURE, f"supervisor error: {e}")

        if not self._stopped:
            self.shutdown(self.config.EXIT_OK, self.shutdown_reason or "external request")
        return self.exit_code

    #* --- Shutdown ---
    def shutdown(self, exit_code: int, reason: str) -> int:
        """
        Stops all nodes and records the exit code. Safe to call more than once;
        only the first call has any effect.

        :param exit_code: The code the supervisor should exit with.
        :param reason: The cause, used in the final summary line.
        :return: The recorded exit code.
        """
        if self._stopped:
            return self.exit_code
        self._stopped = True
        self.shutdown_signal_received.set()
        self.exit_code = exit_code
        self.shutdown_reason = reason

        log.info("Shutting down all nodes...")
        survivors = shutdown.stop_fleet(
            self.nodes, self.config.GRACEFUL_SHUTDOWN_TIMEOUT, self.isolation, self.config.PID_DIR
        )
        if survivors:
            log.error(f"{len(survivors)} process(es) could not be stopped: {[p.pid for p in survivors]}")
        persistence.remove_status(self.config.PID_DIR)
        persistence.remove_supervisor_pid(self.config.PID_DIR)

        if self.start_time:
            runtime = time.strftime('%H:%M:%S', time.gmtime(time.time() - self.start_time))
            log.info(f"All nodes stopped after {runtime}. Cause: {reason}. Exiting with code {exit_code}")
        else:
            log.info(f"All nodes stopped. Cause: {reason}. Exiting with code {exit_code}")
        return exit_code

"""Tests for the health monitor state machine and fleet escalation."""

from __future__ import annotations

import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from unittest.mock import MagicMock

import pytest

from nodefleet.local.supervisor import health, persistence, process_utils, shutdown
from nodefleet.local.supervisor.errors import NodeStartError
from nodefleet.local.supervisor.health import FleetEscalation, HealthMonitor, restart_delay
from nodefleet.local.supervisor.models import NodeState

from tests.helpers import FORKING_WORKER, is_running


def _fake_process(returncode=None, pid=4242):
    """A stand-in Popen handle: alive while returncode is None."""
    proc = MagicMock()
    proc.pid = pid
    proc.poll.return_value = returncode
    proc.returncode = returncode
    return proc


@pytest.fixture
def monitor(supervisor, monkeypatch) -> HealthMonitor:
    monkeypatch.setattr(shutdown, "kill_processes", MagicMock(return_value=[]))
    return HealthMonitor(supervisor)


@pytest.fixture
def starting_node(supervisor):
    node = supervisor.nodes[0]
    node.transition(NodeState.STARTING)
    node.process = _fake_process()
    node.ready_deadline = time.monotonic() + 60
    return node


def _make_healthy(node):
    node.transition(NodeState.STARTING)
    node.transition(NodeState.HEALTHY)
    node.process = _fake_process()


class TestEscalation:
    def test_majority_must_persist_beyond_limit(self):
        escalation = FleetEscalation(max_cycles=2)

        assert escalation.record(3, 4) is False
        assert escalation.record(3, 4) is False
        assert escalation.record(3, 4) is True

    def test_exactly_half_is_not_a_majority(self):
        escalation = FleetEscalation(max_cycles=0)
        assert escalation.record(2, 4) is False
        assert escalation.consecutive_failures == 0

    def test_recovery_resets_counter(self, caplog):
        escalation = FleetEscalation(max_cycles=1)

        with caplog.at_level(logging.ERROR):
            escalation.record(4, 4)
        escalation.record(0, 4)
        assert escalation.consecutive_failures == 0
        assert escalation.record(4, 4) is False
        assert "More than half of nodes are failing!" in caplog.text

    def test_zero_cycles_escalates_on_first_majority(self):
        assert FleetEscalation(max_cycles=0).record(1, 1) is True


class TestRestartDelay:
    def test_doubles_per_failure_and_caps(self, settings):
        settings.RESTART_COOLDOWN_SECONDS = 2
        settings.RESTART_BACKOFF_MAX_SECONDS = 60

        delays = [restart_delay(settings, streak) for streak in range(7)]

        assert delays == [2, 4, 8, 16, 32, 60, 60]

    def test_huge_streak_does_not_overflow(self, settings):
        settings.RESTART_BACKOFF_MAX_SECONDS = 60
        assert restart_delay(settings, 10_000) == 60


class TestStartingNode:
    def test_ready_endpoint_makes_node_healthy(self, monitor, starting_node, monkeypatch):
        starting_node.failure_streak = 4
        monkeypatch.setattr(monitor, "probe_ready", lambda node: True)

        monitor.check_node(starting_node, time.monotonic())

        assert starting_node.state == NodeState.HEALTHY
        assert starting_node.failure_streak == 0

    def test_not_ready_within_window_stays_starting(self, monitor, starting_node, monkeypatch):
        monkeypatch.setattr(monitor, "probe_ready", lambda node: False)

        monitor.check_node(starting_node, time.monotonic())

        assert starting_node.state == NodeState.STARTING

    def test_window_expiry_leads_to_restart(self, monitor, starting_node, monkeypatch):
        monkeypatch.setattr(monitor, "probe_ready", lambda node: False)

        monitor.check_node(starting_node, starting_node.ready_deadline + 1)

        assert starting_node.state == NodeState.RESTARTING
        assert starting_node.process is None
        shutdown.kill_processes.assert_called_once()

    def test_death_during_startup_records_cause(self, monitor, starting_node):
        starting_node.process = _fake_process(returncode=3, pid=777)

        monitor.check_node(starting_node, time.monotonic())

        assert starting_node.state == NodeState.RESTARTING
        assert starting_node.last_exit == "PID 777 exited with code 3"


class TestHealthyNode:
    def test_readiness_misses_below_threshold_are_tolerated(self, monitor, supervisor, monkeypatch):
        node = supervisor.nodes[1]
        _make_healthy(node)
        monkeypatch.setattr(monitor, "probe_ready", lambda n: False)

        for _ in range(monitor.config.READINESS_FAILURE_THRESHOLD - 1):
            monitor.check_node(node, time.monotonic())
        assert node.state == NodeState.HEALTHY

        monitor.check_node(node, time.monotonic())
        assert node.state == NodeState.RESTARTING

    def test_successful_readiness_check_clears_misses(self, monitor, supervisor, monkeypatch):
        node = supervisor.nodes[1]
        _make_healthy(node)
        node.readiness_misses = 2
        monkeypatch.setattr(monitor, "probe_ready", lambda n: True)

        monitor.check_node(node, time.monotonic())

        assert node.readiness_misses == 0
        assert node.state == NodeState.HEALTHY

    def test_dead_process_is_restarted_with_backoff(self, monitor, supervisor):
        node = supervisor.nodes[2]
        _make_healthy(node)
        node.process = _fake_process(returncode=-9)
        node.failure_streak = 2
        before = time.monotonic()

        monitor.check_node(node, before)

        assert node.state == NodeState.RESTARTING
        assert "killed by signal SIGKILL" in node.last_exit
        assert node.restart_at >= before + restart_delay(monitor.config, 2) - 0.01


class TestRestartingNode:
    def test_waits_for_backoff(self, monitor, supervisor, monkeypatch):
        launcher = MagicMock()
        monkeypatch.setattr(health, "start_node", launcher)
        node = supervisor.nodes[0]
        node.state = NodeState.RESTARTING
        node.restart_at = time.monotonic() + 60

        monitor.check_node(node, time.monotonic())

        launcher.assert_not_called()
        assert node.restart_count == 0

    def test_relaunch_counts_restarts(self, monitor, supervisor, monkeypatch):
        def fake_start(manager, node):
            node.transition(NodeState.STARTING)
            node.process = _fake_process()

        monkeypatch.setattr(health, "start_node", fake_start)
        node = supervisor.nodes[0]
        node.state = NodeState.RESTARTING
        node.restart_at = 0

        monitor.check_node(node, time.monotonic())

        assert node.state == NodeState.STARTING
        assert node.restart_count == 1
        assert node.failure_streak == 1
        assert node.last_restart_at is not None

    def test_failed_relaunch_is_rescheduled(self, monitor, supervisor, monkeypatch):
        def failing_start(manager, node):
            node.transition(NodeState.STARTING)
            raise NodeStartError(node.index, "exited with code 3")

        monkeypatch.setattr(health, "start_node", failing_start)
        node = supervisor.nodes[0]
        node.state = NodeState.RESTARTING
        node.restart_at = 0

        monitor.check_node(node, time.monotonic())

        assert node.state == NodeState.RESTARTING
        assert node.failure_streak == 1
        assert node.restart_at > 0

    def test_restart_limit_stops_node(self, monitor, supervisor, settings):
        settings.MAX_RESTART_ATTEMPTS = 2
        node = supervisor.nodes[0]
        persistence.write_node_pid(settings.PID_DIR, node.index, 999999)
        node.state = NodeState.UNHEALTHY
        node.failure_streak = 2

        monitor.check_node(node, time.monotonic())

        assert node.state == NodeState.STOPPED
        assert persistence.read_node_pids(settings.PID_DIR) == {}

    def test_zero_means_unlimited(self, monitor, supervisor, settings):
        settings.MAX_RESTART_ATTEMPTS = 0
        node = supervisor.nodes[0]
        node.state = NodeState.UNHEALTHY
        node.failure_streak = 500

        monitor.check_node(node, time.monotonic())

        assert node.state == NodeState.RESTARTING


class TestFleetCycle:
    def test_cycle_stops_on_shutdown_request(self, supervisor):
        monitor = HealthMonitor(supervisor)
        supervisor.request_shutdown("test")
        assert monitor.run_cycle() is None

    def test_failed_count_counts_non_healthy(self, supervisor):
        monitor = HealthMonitor(supervisor)
        _make_healthy(supervisor.nodes[0])
        assert monitor.failed_count() == 2

    def test_unreachable_endpoint_is_not_ready(self, supervisor):
        monitor = HealthMonitor(supervisor)
        # Nothing listens on the test ports.
        assert monitor.probe_ready(supervisor.nodes[0]) is False

    def test_run_escalates_to_fleet_failure(self, supervisor, settings, monkeypatch):
        settings.ESCALATION_CYCLES = 1
        monitor = HealthMonitor(supervisor)
        monkeypatch.setattr(monitor, "run_cycle", lambda: len(supervisor.nodes))
        stop = MagicMock()
        monkeypatch.setattr(supervisor, "shutdown", stop)

        monitor.run()

        stop.assert_called_once_with(settings.EXIT_FLEET_FAILURE, "fatal fleet escalation")

    def test_status_request_is_served_from_loop(self, supervisor, monkeypatch):
        monitor = HealthMonitor(supervisor)
        calls = []

        def one_cycle():
            if calls:
                supervisor.request_shutdown("done")
            calls.append(1)
            return 0

        monkeypatch.setattr(monitor, "run_cycle", one_cycle)
        report = MagicMock()
        monkeypatch.setattr(supervisor, "report_status", report)
        supervisor.status_requested.set()

        monitor.run()

        report.assert_called_once()
        assert not supervisor.status_requested.is_set()


def test_killing_one_node_leaves_others_untouched(supervisor, monkeypatch):
    """A real fleet: kill one worker and let the monitor restart only that node."""
    monitor = HealthMonitor(supervisor)
    monkeypatch.setattr(monitor, "probe_ready", process_utils.is_alive)
    for node in supervisor.nodes:
        process_utils.start_node(supervisor, node)
        monitor.check_node(node, time.monotonic())
    assert all(n.state == NodeState.HEALTHY for n in supervisor.nodes)
    original_pids = [n.pid for n in supervisor.nodes]

    victim = supervisor.nodes[1]
    victim.process.kill()
    victim.process.wait(timeout=5)

    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        monitor.run_cycle()
        if victim.state == NodeState.HEALTHY and victim.restart_count == 1:
            break
        time.sleep(0.05)

    assert victim.state == NodeState.HEALTHY
    assert victim.restart_count == 1
    assert victim.pid != original_pids[1]
    for node in (supervisor.nodes[0], supervisor.nodes[2]):
        assert node.state == NodeState.HEALTHY
        assert node.restart_count == 0
    assert [supervisor.nodes[0].pid, supervisor.nodes[2].pid] == [original_pids[0], original_pids[2]]


class _ReadinessHandler(BaseHTTPRequestHandler):
    """Answers every GET with the next queued status code."""
    codes: list = []
    paths: list = []

    def do_GET(self):
        self.paths.append(self.path)
        code = self.codes.pop(0) if self.codes else 200
        self.send_response(code)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format, *args):
        pass


@pytest.fixture
def readiness_server():
    _ReadinessHandler.codes = []
    _ReadinessHandler.paths = []
    server = HTTPServer(("127.0.0.1", 0), _ReadinessHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def test_readiness_follows_http_status(supervisor, settings, readiness_server):
    settings.READINESS_PATH = "/q/health/ready"
    monitor = HealthMonitor(supervisor)
    node = supervisor.nodes[0]
    node.ports = node.ports._replace(http=readiness_server.server_address[1])
    _ReadinessHandler.codes = [503, 200]

    assert monitor.probe_ready(node) is False
    assert monitor.probe_ready(node) is True
    assert _ReadinessHandler.paths == ["/q/health/ready", "/q/health/ready"]


def test_restart_kills_children_of_crashed_worker(supervisor, settings, make_worker, monkeypatch):
    settings.WORKER_BINARY = make_worker(FORKING_WORKER)
    monitor = HealthMonitor(supervisor)
    monkeypatch.setattr(monitor, "probe_ready", process_utils.is_alive)
    node = supervisor.nodes[0]
    process_utils.start_node(supervisor, node)
    monitor.check_node(node, time.monotonic())
    assert node.state == NodeState.HEALTHY
    children = [p.pid for p in node.process.children()]
    assert children

    node.process.kill()
    node.process.wait(timeout=5)
    monitor.check_node(node, time.monotonic())

    assert node.state == NodeState.RESTARTING
    assert node.pgid is None
    assert not any(is_running(pid) for pid in children)

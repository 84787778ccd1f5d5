"""Shared fixtures: tmp-path backed settings and throwaway worker binaries."""

from __future__ import annotations

import stat
from pathlib import Path
from typing import Callable

import pytest

from nodefleet.local.config import MergedSettings
from nodefleet.local.supervisor.isolation import NullIsolation
from nodefleet.local.supervisor.supervisor import FleetSupervisor

from tests.helpers import SLEEPING_WORKER


@pytest.fixture
def make_worker(tmp_path: Path) -> Callable[[str], Path]:
    """Return a factory writing an executable /bin/sh worker with the given body."""
    counter = {"n": 0}

    def _make(body: str) -> Path:
        counter["n"] += 1
        path = tmp_path / "bin" / f"worker{counter['n']}"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"#!/bin/sh\n{body}\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


@pytest.fixture
def settings(tmp_path: Path, make_worker) -> MergedSettings:
    """Settings pointing every path into tmp_path, with fast supervision timings."""
    config = MergedSettings(load_file=False)
    config.LOG_DIR = tmp_path / "logs"
    config.DATA_DIR = tmp_path / "data"
    config.PID_DIR = tmp_path / "pids"
    config.WORKER_BINARY = make_worker(SLEEPING_WORKER)
    config.CONTAINER_ID = "test-host"
    config.NODE_COUNT = 3
    config.BASE_HTTP_PORT = 19000
    config.BASE_RPC_PORT = 19001
    config.BASE_METRICS_PORT = 19002
    config.PORT_STRIDE = 10
    config.CPU_PER_NODE = 1
    config.MEMORY_PER_NODE = "64M"
    config.LAUNCH_GRACE_SECONDS = 0.2
    config.STAGGER_DELAY_SECONDS = 0
    config.STARTUP_WINDOW_SECONDS = 5
    config.MONITOR_INTERVAL = 0.05
    config.PROBE_TIMEOUT_SECONDS = 0.2
    config.RESTART_COOLDOWN_SECONDS = 0.01
    config.RESTART_BACKOFF_MAX_SECONDS = 0.05
    config.MAX_RESTART_ATTEMPTS = 0
    config.READINESS_FAILURE_THRESHOLD = 3
    config.ESCALATION_CYCLES = 3
    config.GRACEFUL_SHUTDOWN_TIMEOUT = 2
    config.ISOLATION_ENABLED = False
    config.LOKI_ENABLED = False
    return config


@pytest.fixture
def supervisor(settings: MergedSettings):
    """A prepared FleetSupervisor (plan and node table built, nothing started).

    Any worker left running by a test is stopped on teardown.
    """
    sup = FleetSupervisor(settings, isolation_provider=NullIsolation())
    sup.prepare()
    yield sup
    sup.shutdown(0, "test teardown")

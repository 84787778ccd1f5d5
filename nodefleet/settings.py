"""
This module contains all the default configuration settings for NodeFleet.
It defines the fleet shape, per-node budgets, paths, supervision policy and
logging options. Every value can be overridden from the environment (or a
.env file) and, for keys listed in CLI_SETTINGS, from the command line.
"""

import os
import socket
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Core Paths ---
BASE_DIR = pathlib.Path(os.getenv("NODEFLEET_HOME", "/app"))
LOG_DIR = pathlib.Path(os.getenv("NODEFLEET_LOG_DIR", str(BASE_DIR / "logs")))
DATA_DIR = pathlib.Path(os.getenv("NODEFLEET_DATA_DIR", str(BASE_DIR / "data")))
PID_DIR = pathlib.Path(os.getenv("NODEFLEET_PID_DIR", str(BASE_DIR / "pids")))
OVERRIDES_JSON_PATH = pathlib.Path(os.getenv("NODEFLEET_OVERRIDES", str(BASE_DIR / "overrides.json")))

#* --- Worker Binary ---
WORKER_BINARY = pathlib.Path(os.getenv("NODEFLEET_BINARY", str(BASE_DIR / "worker")))
CONTAINER_ID = os.getenv("NODEFLEET_CONTAINER_ID") or os.getenv("HOSTNAME") or socket.gethostname() or "container-1"

#* --- Fleet Shape ---
NODE_COUNT = int(os.getenv("NODEFLEET_NODE_COUNT", "4"))
BASE_HTTP_PORT = int(os.getenv("NODEFLEET_BASE_HTTP_PORT", "9003"))
BASE_RPC_PORT = int(os.getenv("NODEFLEET_BASE_RPC_PORT", "9004"))
BASE_METRICS_PORT = int(os.getenv("NODEFLEET_BASE_METRICS_PORT", "9005"))
PORT_STRIDE = int(os.getenv("NODEFLEET_PORT_STRIDE", "10"))

#* --- Per-Node Budgets ---
CPU_PER_NODE = int(os.getenv("NODEFLEET_CPU_PER_NODE", "8"))
MEMORY_PER_NODE = os.getenv("NODEFLEET_MEMORY_PER_NODE", "1024M")

#* --- Supervision Policy ---
MONITOR_INTERVAL = float(os.getenv("NODEFLEET_MONITOR_INTERVAL", "5"))
READINESS_PATH = os.getenv("NODEFLEET_READINESS_PATH", "/q/health/ready")
PROBE_HOST = os.getenv("NODEFLEET_PROBE_HOST", "127.0.0.1")
PROBE_TIMEOUT_SECONDS = float(os.getenv("NODEFLEET_PROBE_TIMEOUT", "2"))
STARTUP_WINDOW_SECONDS = float(os.getenv("NODEFLEET_STARTUP_WINDOW", "30"))
LAUNCH_GRACE_SECONDS = float(os.getenv("NODEFLEET_LAUNCH_GRACE", "2"))
STAGGER_DELAY_SECONDS = float(os.getenv("NODEFLEET_STAGGER_DELAY", "3"))
RESTART_COOLDOWN_SECONDS = float(os.getenv("NODEFLEET_RESTART_COOLDOWN", "2"))
RESTART_BACKOFF_MAX_SECONDS = float(os.getenv("NODEFLEET_RESTART_BACKOFF_MAX", "60"))
MAX_RESTART_ATTEMPTS = int(os.getenv("NODEFLEET_MAX_RESTART_ATTEMPTS", "0"))  # 0 = unlimited
READINESS_FAILURE_THRESHOLD = int(os.getenv("NODEFLEET_READINESS_FAILURES", "3"))
ESCALATION_CYCLES = int(os.getenv("NODEFLEET_ESCALATION_CYCLES", "3"))
GRACEFUL_SHUTDOWN_TIMEOUT = float(os.getenv("NODEFLEET_SHUTDOWN_GRACE", "10"))  # seconds before force-killing

#* --- Resource Isolation (cgroup v2) ---
ISOLATION_ENABLED = _env_bool("NODEFLEET_ISOLATION_ENABLED", "True")
CGROUP_ROOT = pathlib.Path(os.getenv("NODEFLEET_CGROUP_ROOT", "/sys/fs/cgroup"))
CGROUP_GROUP = os.getenv("NODEFLEET_CGROUP_GROUP", "nodefleet")
CGROUP_CPU_PERIOD = 100000  # microseconds, cpu.max period

#* --- Logging ---
DEBUG = _env_bool("NODEFLEET_DEBUG", "False")
LOKI_ENABLED = _env_bool("LOKI_ENABLED", "False")
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "")
LOG_BUFFER_SIZE = 100
LOG_BUFFER_FLUSH_INTERVAL = 10

#* --- Exit Codes ---
EXIT_OK = 0
EXIT_FLEET_FAILURE = 1
EXIT_STARTUP_FAILURE = 2

#* --- CLI SETTINGS (Changeable per run via '--key=value') ---
CLI_SETTINGS = {
    # Fleet shape
    "NODE_COUNT", "BASE_HTTP_PORT", "BASE_RPC_PORT", "BASE_METRICS_PORT", "PORT_STRIDE",
    # Budgets
    "CPU_PER_NODE", "MEMORY_PER_NODE",
    # Paths
    "WORKER_BINARY", "LOG_DIR", "DATA_DIR", "PID_DIR", "CONTAINER_ID",
    # Supervision
    "MONITOR_INTERVAL", "READINESS_PATH", "PROBE_HOST", "PROBE_TIMEOUT_SECONDS",
    "STARTUP_WINDOW_SECONDS", "LAUNCH_GRACE_SECONDS", "STAGGER_DELAY_SECONDS",
    "RESTART_COOLDOWN_SECONDS", "RESTART_BACKOFF_MAX_SECONDS", "MAX_RESTART_ATTEMPTS",
    "READINESS_FAILURE_THRESHOLD", "ESCALATION_CYCLES", "GRACEFUL_SHUTDOWN_TIMEOUT",
    # Isolation & logging
    "ISOLATION_ENABLED", "CGROUP_ROOT", "CGROUP_GROUP", "DEBUG",
}

#* --- Worker Invocation Template ---
# Each entry is formatted with the node identity before launch. Available fields:
# node_id, index, node_count, http_port, rpc_port, metrics_port, data_dir,
# log_dir, cpu_range, memory_mb, memory_min_mb.
WORKER_ARGS_TEMPLATE = [
    "-Dnode.id={node_id}",
    "-Dnode.index={index}",
    "-Dcluster.enabled=true",
    "-Dcluster.node-count={node_count}",
    "-Dquarkus.http.host=0.0.0.0",
    "-Dquarkus.http.port={http_port}",
    "-Dquarkus.grpc.server.host=0.0.0.0",
    "-Dquarkus.grpc.server.port={rpc_port}",
    "-Dquarkus.management.port={metrics_port}",
    "-Dnode.data.dir={data_dir}",
    "-Dnode.log.dir={log_dir}",
    "-Xmx{memory_mb}M",
    "-Xms{memory_min_mb}M",
]

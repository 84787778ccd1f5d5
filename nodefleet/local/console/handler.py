import os
import time
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List

import psutil
import requests

from nodefleet.local.supervisor import isolation, persistence, planner, process_utils, startup
from nodefleet.local.supervisor.errors import ConfigError
from nodefleet.local.supervisor.models import ClusterPlan, NodeState

if TYPE_CHECKING:
    from nodefleet.local.config import MergedSettings

log = logging.getLogger(__name__)

RULE = "═" * 64


def print_banner(config: "MergedSettings", plan: ClusterPlan, isolation_status: str) -> None:
    """Prints the startup banner with the fleet configuration."""
    last = plan.node_count - 1
    stride = config.PORT_STRIDE
    print("")
    print(RULE)
    print("  NodeFleet Multi-Node Supervisor")
    print(RULE)
    print("  Configuration:")
    print(f"  ├─ Container ID: {config.CONTAINER_ID}")
    print(f"  ├─ Node Count: {plan.node_count}")
    print(f"  ├─ CPU per Node: {plan.cpu_per_node} cores{' (shared)' if plan.shared_cores else ''}")
    print(f"  ├─ Memory per Node: {plan.memory_per_node // (1024 * 1024)}M")
    print(f"  ├─ HTTP Port Range: {config.BASE_HTTP_PORT}-{config.BASE_HTTP_PORT + last * stride}")
    print(f"  ├─ RPC Port Range: {config.BASE_RPC_PORT}-{config.BASE_RPC_PORT + last * stride}")
    print(f"  ├─ Metrics Port Range: {config.BASE_METRICS_PORT}-{config.BASE_METRICS_PORT + last * stride}")
    print(f"  └─ Isolation: {isolation_status}")
    print(RULE)
    print("")


def format_status_table(nodes: List[Dict[str, Any]], isolation_status: str) -> List[str]:
    """
    Renders node snapshots as status lines.

    :param nodes: One NodeInstance.snapshot() dict per node.
    :param isolation_status: 'enabled' or 'degraded'.
    :return: One string per line.
    """
    healthy = sum(1 for n in nodes if n["state"] == str(NodeState.HEALTHY))
    lines = [RULE, f"  Node Status: {healthy}/{len(nodes)} healthy | isolation {isolation_status}"]
    for node in nodes:
        pid = node["pid"] if node["pid"] is not None else "-"
        ports = node["ports"]
        line = (
            f"  {node['name']}: {node['state']:<10} (PID: {pid}, HTTP: {ports['http']}, "
            f"RPC: {ports['rpc']}, Metrics: {ports['metrics']}, CPU: {node['cpus']}, "
            f"restarts: {node['restarts']})"
        )
        if node.get("last_exit") and node["state"] != str(NodeState.HEALTHY):
            line += f" last exit: {node['last_exit']}"
        lines.append(line)
    lines.append(RULE)
    return lines


def _check_readiness(config: "MergedSettings", port: int) -> str:
    url = f"http://{config.PROBE_HOST}:{port}{config.READINESS_PATH}"
    try:
        response = requests.get(url, timeout=config.PROBE_TIMEOUT_SECONDS)
        return "ready" if response.ok else f"not ready ({response.status_code})"
    except requests.RequestException:
        return "unreachable"


def _rows_from_pid_files(config: "MergedSettings") -> List[Dict[str, Any]]:
    """Best-effort node rows for a supervisor that has not published a snapshot yet."""
    node_pids = persistence.read_node_pids(config.PID_DIR)
    rows = []
    for index in range(config.NODE_COUNT):
        pid = node_pids.get(index)
        alive = pid is not None and process_utils.pid_exists(pid)
        rows.append({
            "index": index,
            "name": f"node-{index}",
            "state": "Running" if alive else "Down",
            "pid": pid if alive else None,
            "ports": {
                "http": config.BASE_HTTP_PORT + index * config.PORT_STRIDE,
                "rpc": config.BASE_RPC_PORT + index * config.PORT_STRIDE,
                "metrics": config.BASE_METRICS_PORT + index * config.PORT_STRIDE,
            },
            "cpus": "-",
            "restarts": "-",
        })
    return rows


def display_status(config: "MergedSettings") -> bool:
    """
    Shows the state of a running fleet from the supervisor's status snapshot,
    followed by live readiness and resource usage per node.

    :return: True if a supervisor is running.
    """
    supervisor_pid = persistence.read_supervisor_pid(config.PID_DIR)
    if supervisor_pid is None or not process_utils.pid_exists(supervisor_pid):
        print("\nFleet is STOPPED (no running supervisor found).\n")
        return False

    print("\n--- Fleet Status ---")
    print(f"  Supervisor PID {supervisor_pid}")
    status = persistence.read_status(config.PID_DIR)
    if status is None:
        print("  No status snapshot published yet; falling back to PID files.")
        rows = _rows_from_pid_files(config)
        isolation_status = "unknown"
    else:
        rows = status.get("nodes", [])
        isolation_status = status.get("isolation", "unknown")
        age = time.time() - status.get("updated_at", time.time())
        print(f"  Snapshot age: {max(age, 0):.0f}s")
    for line in format_status_table(rows, isolation_status):
        print(line)

    print("  Resources:")
    total_cpu = 0.0
    total_mem = 0
    for row in rows:
        pid = row["pid"]
        if pid is None or not process_utils.pid_exists(pid):
            print(f"  - {row['name']:<8} : DOWN")
            continue
        try:
            p = process_utils.get_process_from_pid(pid)
            cpu = p.cpu_percent(interval=0.1)
            mem = p.memory_info().rss
        except psutil.Error:
            print(f"  - {row['name']:<8} : PID {pid:<8} | Status: UNKNOWN")
            continue
        total_cpu += cpu
        total_mem += mem
        print(
            f"  - {row['name']:<8} : PID {pid:<8} | {_check_readiness(config, row['ports']['http']):<12} "
            f"| CPU: {cpu:.1f}% | MEM: {mem / 1024 / 1024:.1f} MB"
        )
    print(f"  Total: CPU {total_cpu:.1f}% | MEM {total_mem / 1024 / 1024:.1f} MB")
    print("---\n")
    return True


def stop_supervisor(config: "MergedSettings") -> bool:
    """
    Asks a running supervisor to shut down and waits for it to exit.

    :return: True if the supervisor is gone.
    """
    pid = persistence.read_supervisor_pid(config.PID_DIR)
    if pid is None or not process_utils.pid_exists(pid):
        log.info("No running supervisor found.")
        return True

    log.info(f"Sending SIGTERM to supervisor (PID {pid})...")
    try:
        proc = process_utils.get_process_from_pid(pid)
        proc.terminate()
        proc.wait(timeout=config.GRACEFUL_SHUTDOWN_TIMEOUT + 15)
    except psutil.NoSuchProcess:
        pass
    except psutil.TimeoutExpired:
        log.error(f"Supervisor (PID {pid}) did not exit in time.")
        return False
    log.info("Supervisor stopped.")
    return True


def check_configuration(config: "MergedSettings") -> bool:
    """
    Validates the configuration, the worker binary, and previews the resource plan.

    :return: True if the fleet could be started with this configuration.
    """
    log.info("Performing configuration and path validation...")
    all_ok = True
    try:
        config.validate()
        log.info("Config Check OK: settings are consistent")
    except ConfigError as e:
        log.error(f"CONFIG CHECK FAILED: {e}")
        return False

    try:
        startup.check_worker_binary(config)
        log.info(f"Config Check OK: Found worker binary at '{config.WORKER_BINARY}'")
    except ConfigError as e:
        log.error(f"CONFIG CHECK FAILED: {e}")
        all_ok = False

    for directory in (config.LOG_DIR, config.DATA_DIR, config.PID_DIR):
        existing = Path(directory)
        while not existing.exists() and existing != existing.parent:
            existing = existing.parent
        if os.access(existing, os.W_OK):
            log.info(f"Config Check OK: '{directory}' is writable")
        else:
            log.error(f"CONFIG CHECK FAILED: '{directory}' is not writable (checked '{existing}')")
            all_ok = False

    cores, memory = planner.measure_host()
    plan = planner.plan_cluster(config.NODE_COUNT, config.CPU_PER_NODE, config.memory_per_node_bytes, cores, memory)
    provider = isolation.select_isolation_provider(config)
    print_banner(config, plan, provider.status)
    return all_ok


def print_help() -> None:
    """Prints the list of available commands."""
    print("\nAvailable commands:")
    print("  start         - Start the fleet in the foreground and supervise it.")
    print("  stop          - Stop a running supervisor and all of its nodes.")
    print("  status        - Show per-node state, ports, CPU range, restarts, readiness and resource usage.")
    print("  check-config  - Validate settings and the worker binary, preview the resource plan.")
    print("  help          - Show this help message.")
    print("\nOptions: --verbose, and --<setting>=<value> for any CLI setting, e.g. --node-count=3\n")

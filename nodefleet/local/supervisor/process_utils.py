import os
import signal
import logging
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

import psutil

from . import persistence
from .errors import NodeStartError
from .models import ClusterPlan, NodeInstance, NodePorts, NodeState
from .planner import cpu_range_for

if TYPE_CHECKING:
    from nodefleet.local.config import MergedSettings
    from .supervisor import FleetSupervisor

log = logging.getLogger(__name__)


#* --- Process Status ---
def pid_exists(pid: int) -> bool:
    """A wrapper for psutil.pid_exists for easy testing/mocking if needed."""
    return psutil.pid_exists(pid)

def get_process_from_pid(pid: int) -> psutil.Process:
    """A wrapper for psutil.Process for easy testing/mocking if needed."""
    return psutil.Process(pid)

def is_alive(node: NodeInstance) -> bool:
    """Checks whether the node's worker is still running. Reaps it if it has exited."""
    if node.process is None:
        return False
    return node.process.poll() is None

def describe_exit(returncode: Optional[int]) -> str:
    """Renders a Popen return code as a human-readable exit cause."""
    if returncode is None:
        return "still running"
    if returncode < 0:
        try:
            return f"killed by signal {signal.Signals(-returncode).name}"
        except ValueError:
            return f"killed by signal {-returncode}"
    return f"exited with code {returncode}"


#* --- Node Identity ---
def build_node(config: "MergedSettings", plan: ClusterPlan, index: int) -> NodeInstance:
    """
    Derives a node's full identity from its index. Pure: no I/O, no shared state.

    :param config: The merged settings.
    :param plan: The cluster plan.
    :param index: The node index in [0, plan.node_count).
    :return: A NodeInstance in the Pending state.
    """
    stride = config.PORT_STRIDE
    return NodeInstance(
        index=index,
        node_id=f"node-{config.CONTAINER_ID}-{index}",
        ports=NodePorts(
            http=config.BASE_HTTP_PORT + index * stride,
            rpc=config.BASE_RPC_PORT + index * stride,
            metrics=config.BASE_METRICS_PORT + index * stride,
        ),
        cpus=cpu_range_for(plan, index),
        memory_limit=plan.memory_per_node,
        data_dir=Path(config.DATA_DIR) / f"node-{index}",
        log_dir=Path(config.LOG_DIR) / f"node-{index}",
    )

def identity_fields(node: NodeInstance, plan: ClusterPlan) -> Dict[str, object]:
    """Values available to WORKER_ARGS_TEMPLATE entries."""
    memory_mb = node.memory_limit // (1024 * 1024)
    return {
        "node_id": node.node_id,
        "index": node.index,
        "node_count": plan.node_count,
        "http_port": node.ports.http,
        "rpc_port": node.ports.rpc,
        "metrics_port": node.ports.metrics,
        "data_dir": str(node.data_dir),
        "log_dir": str(node.log_dir),
        "cpu_range": node.cpu_range_str,
        "memory_mb": memory_mb,
        "memory_min_mb": memory_mb // 2,
    }

def worker_command(config: "MergedSettings", node: NodeInstance, plan: ClusterPlan) -> List[str]:
    """Returns the worker binary followed by the formatted template arguments."""
    fields = identity_fields(node, plan)
    return [str(config.WORKER_BINARY)] + [arg.format(**fields) for arg in config.WORKER_ARGS_TEMPLATE]

def worker_environment(node: NodeInstance, plan: ClusterPlan) -> Dict[str, str]:
    """Returns the parent environment plus the node identity as NODEFLEET_* variables."""
    env = dict(os.environ)
    for key, value in identity_fields(node, plan).items():
        env[f"NODEFLEET_{key.upper()}"] = str(value)
    return env

def worker_log_path(config: "MergedSettings", node: NodeInstance) -> Path:
    return node.log_dir / f"{Path(config.WORKER_BINARY).name}.log"


#* --- Process Creation ---
def pin_cpu_affinity(proc: psutil.Popen, cores: List[int]) -> None:
    """Pins a process to the given cores. Unsupported platforms only get a debug line."""
    try:
        proc.cpu_affinity(cores)
    except AttributeError:
        log.debug("CPU affinity is not supported on this platform.")
    except (psutil.Error, ValueError, OSError) as e:
        log.warning(f"Could not pin PID {proc.pid} to cores {cores}: {e}")

def _apply_isolation(manager: "FleetSupervisor", node: NodeInstance) -> None:
    """Registers a freshly started worker with the isolation provider."""
    isolation = manager.isolation
    if node.scope is None:
        node.scope = isolation.create_scope(node.index)
    isolation.set_cpu_limit(node.scope, manager.plan.cpu_per_node)
    isolation.set_memory_limit(node.scope, node.memory_limit)
    isolation.attach(node.scope, node.process.pid)

def _wait_for_early_exit(manager: "FleetSupervisor", proc: psutil.Popen, grace: float) -> Optional[int]:
    """
    Watches a new process for the launch grace period.

    :return: The return code if it exited, None if it is still running.
    """
    deadline = time.monotonic() + grace
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            return proc.returncode
        if manager.shutdown_signal_received.wait(0.1):
            break
    return proc.poll()

def start_node(manager: "FleetSupervisor", node: NodeInstance) -> None:
    """
    Launches the worker for a node and records its process handle.

    The node moves to Starting; the Health Monitor decides when it is Healthy.

    :param manager: The FleetSupervisor owning the node.
    :param node: The node to start.
    :raises NodeStartError: If the worker cannot be executed or exits during the grace period.
    """
    config = manager.config
    node.transition(NodeState.STARTING)
    node.data_dir.mkdir(parents=True, exist_ok=True)
    node.log_dir.mkdir(parents=True, exist_ok=True)

    args = worker_command(config, node, manager.plan)
    log_file = worker_log_path(config, node)

    log.info(f"Starting {node.name}...")
    log.info(f"  ├─ Node ID: {node.node_id}")
    log.info(f"  ├─ HTTP Port: {node.ports.http}")
    log.info(f"  ├─ RPC Port: {node.ports.rpc}")
    log.info(f"  ├─ Metrics Port: {node.ports.metrics}")
    log.info(f"  ├─ CPU Affinity: {node.cpu_range_str}")
    log.info(f"  └─ Memory Limit: {node.memory_limit // (1024 * 1024)}M")
    log.debug(f"Command for {node.name}: {' '.join(args)}")

    try:
        with log_file.open("ab") as out:
            proc = psutil.Popen(
                args,
                stdout=out,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=str(node.data_dir),
                env=worker_environment(node, manager.plan),
                start_new_session=True,
            )
    except OSError as e:
        node.last_exit = f"could not execute: {e}"
        log.error(f"Failed to launch {node.name}: {e}")
        raise NodeStartError(node.index, node.last_exit) from e

    node.process = proc
    # start_new_session makes the worker its own group leader.
    node.pgid = proc.pid
    node.readiness_misses = 0
    pin_cpu_affinity(proc, node.cpu_list)
    _apply_isolation(manager, node)
    persistence.write_node_pid(config.PID_DIR, node.index, proc.pid)
    log.info(f"{node.name} started with PID: {proc.pid}")

    returncode = _wait_for_early_exit(manager, proc, config.LAUNCH_GRACE_SECONDS)
    if returncode is not None:
        node.process = None
        node.last_exit = describe_exit(returncode)
        log.error(f"{node.name} failed to start ({node.last_exit})! Check logs: {log_file}")
        raise NodeStartError(node.index, node.last_exit)

    node.ready_deadline = time.monotonic() + config.STARTUP_WINDOW_SECONDS

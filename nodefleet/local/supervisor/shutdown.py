import os
import signal
import logging
from pathlib import Path
from typing import Iterable, List, Set

import psutil

from . import persistence
from .isolation import IsolationProvider
from .models import NodeInstance, NodeState

log = logging.getLogger(__name__)

KILL_CONFIRM_TIMEOUT = 5  # seconds to wait for SIGKILLed processes to vanish


def _is_zombie(proc: psutil.Process) -> bool:
    try:
        return proc.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def group_members(pgid: int) -> List[psutil.Process]:
    """
    Finds every live process in a process group.

    Workers are started in their own session, so the group outlives its
    leader: children a worker spawned keep the group ID after it dies.
    """
    members = []
    for proc in psutil.process_iter():
        try:
            if os.getpgid(proc.pid) == pgid and not _is_zombie(proc):
                members.append(proc)
        except (OSError, psutil.Error):
            continue
    return members


def kill_process_groups(pgids: Iterable[int]) -> None:
    """SIGKILLs whatever is left in the given process groups, e.g. processes forked mid-shutdown."""
    for pgid in pgids:
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            continue
        except PermissionError as e:
            log.warning(f"Could not kill process group {pgid}: {e}")


def collect_processes(nodes: List[NodeInstance]) -> Set[psutil.Process]:
    """
    Identifies every worker process, all of its descendants, and anything
    left in the worker's process group after the worker itself exited.

    :param nodes: The nodes whose processes should be collected.
    :return: A set of psutil.Process objects still running.
    """
    parent_procs: Set[psutil.Process] = {
        node.process for node in nodes
        if node.process is not None and node.process.poll() is None
    }

    all_procs: Set[psutil.Process] = set(parent_procs)
    for proc in parent_procs:
        try:
            all_procs.update(proc.children(recursive=True))
        except psutil.NoSuchProcess:
            log.warning(f"Process {proc.pid} no longer exists, skipping children retrieval.")
            continue

    for node in nodes:
        if node.pgid is not None:
            all_procs.update(group_members(node.pgid))
    return all_procs


def _terminate_processes(processes: Iterable[psutil.Process]) -> None:
    """Sends SIGTERM to all processes."""
    for proc in processes:
        try:
            log.debug(f"Sending SIGTERM to PID {proc.pid}")
            proc.terminate()
        except psutil.NoSuchProcess:
            continue


def kill_processes(processes: Iterable[psutil.Process]) -> List[psutil.Process]:
    """
    Forcefully kills processes and waits briefly for them to disappear.

    :return: Processes that are somehow still alive afterwards.
    """
    processes = list(processes)
    if not processes:
        return []

    for proc in processes:
        try:
            log.warning(f"Killing process PID {proc.pid}.")
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    _, alive = psutil.wait_procs(processes, timeout=KILL_CONFIRM_TIMEOUT)
    # An orphaned group member stays a zombie until init reaps it.
    alive = [proc for proc in alive if not _is_zombie(proc)]
    for proc in alive:
        log.error(f"PID {proc.pid} survived SIGKILL.")
    return alive


def graceful_shutdown_sequence(processes: Set[psutil.Process], grace_period: float) -> List[psutil.Process]:
    """
    SIGTERM everything, wait up to the grace period, SIGKILL the stragglers.

    The wait is polled per process, so workers that exit early do not hold
    up the rest.

    :param processes: The processes to stop.
    :param grace_period: Seconds to wait before force-killing.
    :return: Processes still alive after the forced kill (normally empty).
    """
    _terminate_processes(processes)

    procs_list = list(processes)
    try:
        _, alive = psutil.wait_procs(procs_list, timeout=grace_period)
    except psutil.TimeoutExpired:
        alive = procs_list
    alive = [proc for proc in alive if not _is_zombie(proc)]

    if alive:
        log.warning(f"{len(alive)} processes did not terminate gracefully. Forcing shutdown...")
    return kill_processes(alive)


def stop_fleet(nodes: List[NodeInstance], grace_period: float, isolation: IsolationProvider, pid_dir: Path) -> List[psutil.Process]:
    """
    Stops every node, clears their handles and cleans up pid files and scopes.

    :param nodes: The node table.
    :param grace_period: Seconds to wait for graceful termination.
    :param isolation: The isolation provider used at startup.
    :param pid_dir: The PID directory.
    :return: Processes that could not be killed (normally empty).
    """
    for node in nodes:
        if node.process is not None and node.process.poll() is None:
            log.info(f"Stopping {node.name} (PID: {node.process.pid})")

    processes = collect_processes(nodes)
    if processes:
        log.info(f"Initiating graceful shutdown for {len(processes)} total processes...")
    else:
        log.info("No running worker processes found to stop.")

    survivors = graceful_shutdown_sequence(processes, grace_period) if processes else []
    kill_process_groups(node.pgid for node in nodes if node.pgid is not None)

    for node in nodes:
        if node.process is not None:
            # Reap the Popen object so no zombie is left behind.
            node.process.poll()
            node.process = None
        if node.state != NodeState.STOPPED:
            node.transition(NodeState.STOPPED, "fleet shutdown")
        persistence.remove_node_pid(pid_dir, node.index)
        isolation.release(node.scope)
        node.scope = None
        node.pgid = None
    return survivors

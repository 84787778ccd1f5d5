import re
import logging
from typing import Sequence, Tuple, Union

import psutil

from .models import ClusterPlan, format_cpu_list

log = logging.getLogger(__name__)

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([KMGT]?)I?B?\s*$", re.IGNORECASE)
_SIZE_MULTIPLIERS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}


def parse_size(value) -> int:
    """
    Converts a memory size such as '1024M', '2G' or '536870912' into bytes.

    :param value: The size as a string or an integer byte count.
    :return: The size in bytes.
    :raises ValueError: If the value is not a recognised size.
    """
    if isinstance(value, int):
        return value
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid memory size '{value}'. Use bytes or a K/M/G/T suffix.")
    number, unit = match.groups()
    return int(number) * _SIZE_MULTIPLIERS[unit.upper()]


def usable_core_ids() -> Tuple[int, ...]:
    """Returns the IDs of the cores this process may run on, ascending."""
    try:
        return tuple(sorted(psutil.Process().cpu_affinity()))
    except (AttributeError, psutil.Error):
        # cpu_affinity is not implemented on every platform.
        return tuple(range(psutil.cpu_count(logical=True) or 1))


def measure_host() -> Tuple[Tuple[int, ...], int]:
    """
    Measures the cores usable by this process and the total physical memory.

    Inside a cpuset-restricted container the usable cores need not start at
    0, so the actual core IDs are returned rather than a count.

    :return: A tuple of (usable_core_ids, available_memory_bytes).
    """
    return usable_core_ids(), psutil.virtual_memory().total


def plan_cluster(requested_nodes: int, cpu_hint: int, memory_hint: int,
                 available_cores: Union[int, Sequence[int]], available_memory: int) -> ClusterPlan:
    """
    Splits the measured host capacity between the requested number of nodes.

    The node count is never reduced. Core over-subscription shrinks the
    per-node core count (minimum 1); memory shortfall is only reported.

    :param requested_nodes: The number of nodes to run.
    :param cpu_hint: Desired cores per node.
    :param memory_hint: Desired memory ceiling per node, in bytes.
    :param available_cores: The usable core IDs, or just their count when
        they are numbered from 0.
    :param available_memory: Physical memory on this host, in bytes.
    :return: The immutable ClusterPlan.
    """
    if requested_nodes < 1:
        raise ValueError(f"Node count must be at least 1, got {requested_nodes}.")
    if cpu_hint < 1 or memory_hint < 1:
        raise ValueError("Per-node CPU and memory hints must be positive.")
    if isinstance(available_cores, int):
        core_ids = tuple(range(max(1, available_cores)))
    else:
        core_ids = tuple(sorted(available_cores)) or (0,)
    available_cores = len(core_ids)

    cpu_per_node = cpu_hint
    shared_cores = False
    required_cores = requested_nodes * cpu_hint
    if required_cores > available_cores:
        log.warning(f"Available CPUs ({available_cores}) < Required CPUs ({required_cores})")
        cpu_per_node = max(1, available_cores // requested_nodes)
        if requested_nodes * cpu_per_node > available_cores:
            shared_cores = True
            log.warning(
                f"Fewer cores than nodes; all {requested_nodes} nodes will share cores "
                f"{format_cpu_list(core_ids)}."
            )
        else:
            log.warning(f"Adjusted per-node allocation to {cpu_per_node} core(s).")

    required_memory = requested_nodes * memory_hint
    if required_memory > available_memory:
        log.warning(
            f"Available Memory ({available_memory // 1024 ** 2}MB) < "
            f"Required Memory ({required_memory // 1024 ** 2}MB)"
        )

    log.info(
        f"Resource plan: {requested_nodes} node(s), {cpu_per_node} core(s) and "
        f"{memory_hint // 1024 ** 2}MB per node on {available_cores} CPUs, "
        f"{available_memory // 1024 ** 2}MB RAM"
    )
    return ClusterPlan(
        node_count=requested_nodes,
        cpu_per_node=cpu_per_node,
        memory_per_node=memory_hint,
        available_cores=available_cores,
        available_memory=available_memory,
        shared_cores=shared_cores,
        core_ids=core_ids,
    )


def cpu_range_for(plan: ClusterPlan, index: int) -> Tuple[int, ...]:
    """
    Returns the core IDs assigned to a node.

    Each node takes the next cpu_per_node entries of the plan's usable cores,
    so assignments are disjoint and follow the host's actual core numbering.
    A slice that would run past the last core, or any node under the
    shared-cores fallback, gets every usable core.
    """
    cores = plan.cores
    if plan.shared_cores:
        return cores

    start = index * plan.cpu_per_node
    end = start + plan.cpu_per_node
    if end > len(cores):
        log.warning(f"Adjusted CPU range for node-{index} to {format_cpu_list(cores)}")
        return cores
    return cores[start:end]

"""Worker script bodies and process checks used by the process tests."""

import psutil

SLEEPING_WORKER = "exec sleep 300"
CRASHING_WORKER = "exit 3"
# An ignored signal stays ignored across exec, so sleep itself shrugs off SIGTERM.
STUBBORN_WORKER = "trap '' TERM\nexec sleep 300"
# Leaves a background child in the worker's process group.
FORKING_WORKER = "sleep 313 &\nexec sleep 300"


def is_running(pid: int) -> bool:
    """True while the process exists and is not a zombie awaiting reaping."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False

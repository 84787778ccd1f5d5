import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)

SUPERVISOR_PID_NAME = "supervisor.pid"
STATUS_FILE_NAME = "status.json"


def node_pid_path(pid_dir: Path, index: int) -> Path:
    return Path(pid_dir) / f"node-{index}.pid"


def _write_atomic(path: Path, text: str) -> None:
    """Writes a file via a temporary file and an atomic rename, so readers never see a partial write."""
    temp_path = path.with_suffix(".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path.write_text(text)
        temp_path.replace(path)
    except OSError as e:
        log.error(f"Failed to write {path}: {e}", exc_info=True)
    finally:
        temp_path.unlink(missing_ok=True)


def _read_pid(path: Path) -> Optional[int]:
    """Reads a PID file, removing it if it is malformed."""
    if not path.exists():
        return None
    try:
        return int(path.read_text().strip())
    except ValueError:
        log.warning(f"Removing malformed PID file {path}")
        path.unlink(missing_ok=True)
        return None
    except OSError:
        return None


def write_node_pid(pid_dir: Path, index: int, pid: int) -> None:
    """
    Records the last known PID for a node index, overwriting any previous one.

    :param pid_dir: The PID directory.
    :param index: The node index.
    :param pid: The worker's process ID.
    """
    _write_atomic(node_pid_path(pid_dir, index), f"{pid}\n")


def remove_node_pid(pid_dir: Path, index: int) -> None:
    node_pid_path(pid_dir, index).unlink(missing_ok=True)


def read_node_pids(pid_dir: Path) -> Dict[int, int]:
    """
    Reads every node PID file in the directory.

    :param pid_dir: The PID directory.
    :return: A dictionary of node index to PID.
    """
    pids: Dict[int, int] = {}
    pid_dir = Path(pid_dir)
    if not pid_dir.is_dir():
        return pids
    for path in sorted(pid_dir.glob("node-*.pid")):
        try:
            index = int(path.stem.split("-", 1)[1])
        except (IndexError, ValueError):
            continue
        pid = _read_pid(path)
        if pid is not None:
            pids[index] = pid
    return pids


def write_supervisor_pid(pid_dir: Path) -> None:
    _write_atomic(Path(pid_dir) / SUPERVISOR_PID_NAME, f"{os.getpid()}\n")


def read_supervisor_pid(pid_dir: Path) -> Optional[int]:
    return _read_pid(Path(pid_dir) / SUPERVISOR_PID_NAME)


def remove_supervisor_pid(pid_dir: Path) -> None:
    (Path(pid_dir) / SUPERVISOR_PID_NAME).unlink(missing_ok=True)


#* --- Status snapshot ---
def status_path(pid_dir: Path) -> Path:
    return Path(pid_dir) / STATUS_FILE_NAME


def write_status(pid_dir: Path, status: Dict[str, Any]) -> None:
    """
    Publishes the supervisor's view of the fleet for the `status` command.

    :param pid_dir: The PID directory.
    :param status: A JSON-serialisable snapshot (see FleetSupervisor.status_snapshot).
    """
    _write_atomic(status_path(pid_dir), json.dumps(status, indent=2) + "\n")


def read_status(pid_dir: Path) -> Optional[Dict[str, Any]]:
    """
    Reads the last published status snapshot.

    :return: The snapshot, or None if it is missing or unreadable.
    """
    path = status_path(pid_dir)
    if not path.exists():
        return None
    try:
        status = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        log.warning(f"Could not read status snapshot {path}: {e}")
        return None
    return status if isinstance(status, dict) else None


def remove_status(pid_dir: Path) -> None:
    status_path(pid_dir).unlink(missing_ok=True)

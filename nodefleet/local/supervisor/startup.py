import os
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from nodefleet.local.supervisor import persistence, process_utils
from nodefleet.local.supervisor.errors import ConfigError

if TYPE_CHECKING:
    from nodefleet.local.config import MergedSettings

log = logging.getLogger(__name__)


def check_if_already_running(config: "MergedSettings") -> bool:
    """
    Checks if another supervisor is already running based on the supervisor PID file.

    :param config: The merged settings.
    :return: True if already running, False otherwise.
    """
    pid = persistence.read_supervisor_pid(config.PID_DIR)
    if pid is None or pid == os.getpid():
        return False
    if process_utils.pid_exists(pid):
        log.error(f"A supervisor appears to be running (PID: {pid}). Use 'stop' first.")
        return True
    log.warning(f"Removing stale supervisor PID file (PID {pid} is gone).")
    persistence.remove_supervisor_pid(config.PID_DIR)
    return False


def initialize_directories(config: "MergedSettings") -> None:
    """
    Creates the log, data and PID roots.

    :param config: The merged settings.
    :raises ConfigError: If a directory cannot be created.
    """
    log.info("Initializing directories...")
    for directory in (config.LOG_DIR, config.DATA_DIR, config.PID_DIR):
        try:
            Path(directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create directory '{directory}': {e}") from e
    log.info("Directories initialized successfully")


def check_worker_binary(config: "MergedSettings") -> None:
    """
    Validates that the worker binary exists and is executable.

    :raises ConfigError: If it does not.
    """
    binary = Path(config.WORKER_BINARY)
    if not binary.is_file():
        raise ConfigError(f"Worker binary not found at '{binary}'")
    if not os.access(binary, os.X_OK):
        raise ConfigError(f"Worker binary '{binary}' is not executable")
    log.debug(f"Worker binary OK: {binary}")

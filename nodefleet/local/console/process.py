import logging
from typing import Dict, List, Tuple

import setproctitle

import nodefleet.settings as default_settings
from nodefleet.local.config import MergedSettings
from nodefleet.local.console.handler import check_configuration, display_status, print_help, stop_supervisor
from nodefleet.local.supervisor import FleetSupervisor
from nodefleet.local.supervisor.errors import ConfigError
from nodefleet.log.setup import setup_logging

log = logging.getLogger(__name__)

SUPERVISOR_TITLE = "NodeFleet - Supervisor"


def parse_options(args: List[str]) -> Tuple[Dict[str, str], bool]:
    """
    Splits command arguments into setting overrides and the verbose flag.

    :param args: Arguments following the command, e.g. ['--node-count=3', '--verbose'].
    :return: A tuple of (overrides, verbose).
    :raises ConfigError: On an argument that is not of the form --key=value.
    """
    overrides: Dict[str, str] = {}
    verbose = False
    for arg in args:
        if arg in ("--verbose", "-v"):
            verbose = True
            continue
        if not arg.startswith("--") or "=" not in arg:
            raise ConfigError(f"Unrecognised argument '{arg}'. Use --<setting>=<value>.")
        key, value = arg[2:].split("=", 1)
        overrides[key] = value
    return overrides, verbose


def _run_supervisor(config: MergedSettings) -> int:
    setproctitle.setproctitle(SUPERVISOR_TITLE)
    supervisor = FleetSupervisor(config)
    supervisor.install_signal_handlers()
    return supervisor.run()


def execute_command(command: str, args: List[str]) -> int:
    """
    Executes a single command from the command line.

    :param command: The main command string (e.g., 'start', 'status').
    :param args: A list of arguments for the command.
    :return: The process exit code.
    """
    try:
        overrides, verbose = parse_options(args)
        config = MergedSettings(overrides)
    except ConfigError as e:
        setup_logging(logging.INFO)
        log.error(str(e))
        return default_settings.EXIT_STARTUP_FAILURE

    setup_logging(logging.DEBUG if (verbose or config.DEBUG) else logging.INFO, config)
    log.debug(f"Executing command: {command}, args: {args}")

    if command == "start":
        try:
            config.validate()
        except ConfigError as e:
            log.critical(f"Invalid configuration: {e}")
            return config.EXIT_STARTUP_FAILURE
        return _run_supervisor(config)

    command_map = {
        "stop": lambda: stop_supervisor(config),
        "status": lambda: display_status(config),
        "check-config": lambda: check_configuration(config),
        "help": lambda: print_help() or True,
    }
    if command in command_map:
        return 0 if command_map[command]() else 1

    log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    return 1

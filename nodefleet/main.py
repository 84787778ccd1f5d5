import sys
import logging

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by setup_logging() once the settings are merged.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)

from nodefleet.local.console.process import execute_command


def main() -> None:
    """The main entry point for the command-line application."""
    if len(sys.argv) < 2:
        execute_command("help", [])
        sys.exit(1)

    command, args = sys.argv[1].lower(), sys.argv[2:]
    sys.exit(execute_command(command, args))


if __name__ == "__main__":
    main()

import sys
import logging
from typing import TYPE_CHECKING, Optional

from nodefleet.log.handler import LokiHandler

if TYPE_CHECKING:
    from nodefleet.local.config import MergedSettings

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'


class MainFormatter(logging.Formatter):
    """Formatter used by every console handler of the supervisor."""

    def __init__(self) -> None:
        super().__init__(LOG_FORMAT)


def setup_logging(console_level: int = logging.INFO, config: Optional["MergedSettings"] = None) -> None:
    """
    Configures the root logger for the supervisor.
    This sets up the console handler and optionally Loki, clearing any
    previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param config: The merged settings; Loki is only considered when given.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # urllib3 logs every probe connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    # --- Loki Handler (conditional) ---
    if config is not None and config.LOKI_ENABLED:
        try:
            loki_handler = LokiHandler(
                url=config.LOKI_URL,
                container_id=config.CONTAINER_ID,
                org_id=config.LOKI_ORG_ID or None,
                flush_interval=config.LOG_BUFFER_FLUSH_INTERVAL,
                batch_size=config.LOG_BUFFER_SIZE,
            )
            loki_handler.setLevel(logging.INFO)  # Avoid spamming Loki with DEBUG logs
            loki_handler.setFormatter(MainFormatter())
            root_logger.addHandler(loki_handler)
            root_logger.info(f"Grafana Loki logging handler initialized for {config.LOKI_URL}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")

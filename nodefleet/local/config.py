import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import nodefleet.settings as default_settings
from nodefleet.local.supervisor.errors import ConfigError
from nodefleet.local.supervisor.planner import parse_size

log = logging.getLogger(__name__)

_TRUE_STRINGS = ('true', '1', 't', 'yes', 'y')


class MergedSettings:
    """
    Merges the default settings with JSON and command-line overrides.

    This class provides a unified, attribute-based access point for all
    fleet configuration. It follows a clear precedence:
    1. Base values from `settings.py` (environment and `.env` included).
    2. Overrides from the overrides JSON file, for keys in `CLI_SETTINGS`.
    3. Overrides passed on the command line as `--key=value`.
    """

    def __init__(self, cli_overrides: Optional[Dict[str, Any]] = None, load_file: bool = True) -> None:
        """
        Initializes the settings object by loading defaults and overrides.

        :param cli_overrides: Setting names mapped to raw values from the command line.
        :param load_file: If False, the overrides JSON file is ignored.
        """
        self._load_defaults()
        if load_file:
            self._load_overrides_file()
        for key, value in (cli_overrides or {}).items():
            self.set(key, value)

    def _load_defaults(self) -> None:
        """Loads all uppercase attributes from the settings module as defaults."""
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))

    def _load_overrides_file(self) -> None:
        """Applies settings from the overrides JSON file, if one exists."""
        overrides_path = Path(self.OVERRIDES_JSON_PATH)
        if not overrides_path.exists():
            return

        try:
            overrides = json.loads(overrides_path.read_text())
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file '{overrides_path}': {e}")
            return

        log.info(f"Loading configuration overrides from {overrides_path}")
        for key, value in overrides.items():
            try:
                self.set(key, value)
            except ConfigError as e:
                log.warning(f"Ignoring override '{key}': {e}")

    def set(self, key: str, value: Any) -> None:
        """
        Overrides a single setting, coercing the value to the type of its default.

        :param key: The setting name (case-insensitive, dashes allowed).
        :param value: The raw value.
        :raises ConfigError: If the key is unknown, not overridable, or the value does not convert.
        """
        key = key.upper().replace("-", "_")
        if key not in self.CLI_SETTINGS:
            raise ConfigError(f"Setting '{key}' cannot be overridden.")

        original_value = getattr(self, key)
        try:
            if isinstance(original_value, bool):
                new_value = str(value).lower() in _TRUE_STRINGS
            elif isinstance(original_value, Path):
                new_value = Path(value)
            else:
                new_value = type(original_value)(value)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Could not convert value '{value}' for '{key}': {e}") from e

        setattr(self, key, new_value)
        log.debug(f"Overridden setting: {key} = {new_value}")

    @property
    def memory_per_node_bytes(self) -> int:
        return parse_size(self.MEMORY_PER_NODE)

    def validate(self) -> None:
        """
        Checks the merged configuration for values the supervisor cannot run with.

        :raises ConfigError: On the first invalid setting found.
        """
        if self.NODE_COUNT < 1:
            raise ConfigError(f"NODE_COUNT must be at least 1, got {self.NODE_COUNT}.")
        if self.CPU_PER_NODE < 1:
            raise ConfigError(f"CPU_PER_NODE must be at least 1, got {self.CPU_PER_NODE}.")
        if self.PORT_STRIDE < 1:
            raise ConfigError(f"PORT_STRIDE must be at least 1, got {self.PORT_STRIDE}.")
        try:
            if self.memory_per_node_bytes <= 0:
                raise ConfigError("MEMORY_PER_NODE must be positive.")
        except ValueError as e:
            raise ConfigError(str(e)) from e

        ports = []
        for base in (self.BASE_HTTP_PORT, self.BASE_RPC_PORT, self.BASE_METRICS_PORT):
            ports.extend(base + i * self.PORT_STRIDE for i in range(self.NODE_COUNT))
        if min(ports) < 1 or max(ports) > 65535:
            raise ConfigError(f"Port range {min(ports)}-{max(ports)} is outside 1-65535.")
        if len(set(ports)) != len(ports):
            raise ConfigError(
                "Base ports and PORT_STRIDE produce colliding ports; "
                "keep the three base ports within one stride of each other."
            )

        for key in ("MONITOR_INTERVAL", "PROBE_TIMEOUT_SECONDS", "STARTUP_WINDOW_SECONDS"):
            if getattr(self, key) <= 0:
                raise ConfigError(f"{key} must be positive.")
        if self.ESCALATION_CYCLES < 0:
            raise ConfigError("ESCALATION_CYCLES cannot be negative.")

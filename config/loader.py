"""
Configuration loader for the market filters client.

JSON files under config/ hold the defaults; a handful of environment
variables (read after .env is loaded) override the node endpoints, the
heartbeat pulse and the label list for a single run.

Usage:
    from config.loader import get_config

    config = get_config()
    pulse = config.get_timing_config()["filters"]["pulse_seconds"]
    events = config.get_event_abi()
"""

import copy
import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

_CONFIG_DIR = Path(__file__).parent

_CONFIG_FILES = {
    "app": "app.json",
    "rpc": "rpc.json",
    "timing": "timing.json",
    "contracts": "contracts.json",
    "events": "abis/events.json",
}

# env var -> (config section, key path, type)
_ENV_OVERRIDES = {
    "MARKET_RPC_URL_HTTP": ("rpc", ("http_url",), str),
    "MARKET_RPC_URL_WS": ("rpc", ("ws_url",), str),
    "FILTER_PULSE_SECONDS": ("timing", ("filters", "pulse_seconds"), float),
}

_DEFAULT_LABELS = ["block", "contracts"]


def _load_json(filepath: Path) -> Any:
    """Read one config file; a missing or malformed file reads as {}."""
    if not filepath.is_file():
        print(f"[CONFIG_WARN] No config file at {filepath}, using empty defaults")
        return {}
    try:
        return json.loads(filepath.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        print(f"[CONFIG_ERROR] Could not parse {filepath}: {e}")
        return {}


def get_env_var(var_name: str, default_value: Any, var_type: type) -> Any:
    """Read an environment variable as `var_type`, or `default_value` if unset/unparsable."""
    raw = os.getenv(var_name)
    if raw is None:
        return default_value
    if var_type is bool:
        return raw.strip().lower() in ("true", "1", "yes")
    try:
        return var_type(raw)
    except (ValueError, TypeError):
        return default_value


def _set_path(config: Dict[str, Any], path: tuple, value: Any) -> None:
    node = config
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


class ConfigLoader:
    """
    Singleton view over config/*.json with environment overrides applied.

    Each section is read once and cached; call clear_cache() after changing
    files or environment variables.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self, config_dir: Optional[Path] = None):
        self._config_dir = config_dir or _CONFIG_DIR

    @classmethod
    def get_instance(cls) -> "ConfigLoader":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @lru_cache(maxsize=8)
    def _section(self, name: str) -> Dict[str, Any]:
        config = _load_json(self._config_dir / _CONFIG_FILES[name])
        for var_name, (section, path, var_type) in _ENV_OVERRIDES.items():
            if section != name:
                continue
            value = get_env_var(var_name, None, var_type)
            if value is not None:
                config = copy.deepcopy(config)
                _set_path(config, path, value)
        return config

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def get_app_config(self) -> Dict[str, Any]:
        """Logging directory and per-module log folders."""
        return self._section("app")

    def get_rpc_config(self) -> Dict[str, Any]:
        """Node endpoints: `http_url`, `ws_url` (empty -> poll over HTTP), request timeout."""
        return self._section("rpc")

    def get_timing_config(self) -> Dict[str, Any]:
        """Heartbeat pulse, poll failure threshold and reconnection backoff."""
        return self._section("timing")

    def get_contracts_config(self) -> Dict[str, str]:
        """Contract name -> deployed address."""
        return self._section("contracts")

    def get_event_abi(self) -> Dict[str, Any]:
        """Event table: label -> {contract, signature, topic?, inputs}."""
        return self._section("events").get("events", {})

    def get_filter_labels(self) -> List[str]:
        """Labels to listen on: FILTER_LABELS (comma separated) or app.json `default_labels`."""
        raw = os.getenv("FILTER_LABELS")
        if raw is None:
            return list(self.get_app_config().get("default_labels", _DEFAULT_LABELS))
        return [label.strip() for label in raw.split(",") if label.strip()]

    def clear_cache(self) -> None:
        """Drop cached sections so the next access re-reads files and environment."""
        self._section.cache_clear()


def get_config() -> ConfigLoader:
    """Get the singleton ConfigLoader instance."""
    return ConfigLoader.get_instance()

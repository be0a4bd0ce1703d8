"""
Configuration schema validation for the market filters client.

Validates that all required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from typing import Any

from config.loader import get_config
from shared.types import FieldKind

_FIELD_KINDS = {kind.value for kind in FieldKind}


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def validate_rpc_config(config: dict[str, Any]) -> list[str]:
    """Validate rpc.json has required fields."""
    return _check_keys(config, ["http_url", "ws_url"], "rpc.json")


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields."""
    errors = _check_keys(
        config,
        [
            "filters.pulse_seconds",
            "filters.max_consecutive_poll_failures",
            "reconnection.base_delay_seconds",
            "reconnection.max_delay_seconds",
            "reconnection.jitter_max_seconds",
            "reconnection.max_retries",
        ],
        "timing.json",
    )
    if not errors and float(config["filters"]["pulse_seconds"]) <= 0:
        errors.append("filters.pulse_seconds: must be positive")
    return errors


def validate_contracts_config(config: dict[str, Any]) -> list[str]:
    """Validate contracts.json maps names to 20-byte hex addresses."""
    errors = []
    for name, address in config.items():
        if not isinstance(address, str) or not address.startswith("0x") or len(address) != 42:
            errors.append(f"{name}: not a 0x-prefixed 20-byte address")
    return errors


def validate_event_abi(events: dict[str, Any], contracts: dict[str, Any]) -> list[str]:
    """Validate abis/events.json entries against the contract list."""
    errors = []
    for label, event in events.items():
        missing = _check_keys(event, ["contract", "inputs"], "abis/events.json")
        errors.extend(f"{label}.{key}" for key in missing)
        if "topic" not in event and "signature" not in event:
            errors.append(f"{label}.signature")
        if event.get("contract") and event["contract"] not in contracts:
            errors.append(f"{label}.contract: unknown contract {event['contract']}")
        for item in event.get("inputs", []):
            if item.get("kind") not in _FIELD_KINDS:
                errors.append(f"{label}.inputs.{item.get('name')}: unknown kind {item.get('kind')}")
    return errors


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "rpc.json": (loader.get_rpc_config, validate_rpc_config),
        "timing.json": (loader.get_timing_config, validate_timing_config),
        "contracts.json": (loader.get_contracts_config, validate_contracts_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    events = loader.get_event_abi()
    if not events:
        all_errors["abis/events.json"] = ["Config file is empty or not found"]
    else:
        errors = validate_event_abi(events, loader.get_contracts_config())
        if errors:
            all_errors["abis/events.json"] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - missing: {error}")
        raise ConfigValidationError("\n".join(lines))

"""
Configuration schema validation for the net-flow indexer.

Validates that all required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from typing import Any

from web3 import Web3

from config.loader import get_config


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
                missing.append(f"missing: {key}")
                break
            current = current[part]
    return missing


def _check_address_list(entries: Any, field_name: str) -> list[str]:
    """Each entry must be a dict carrying a well-formed 20-byte hex address."""
    if not isinstance(entries, list) or len(entries) == 0:
        return [f"{field_name}: must be a non-empty list"]
    errors = []
    for i, entry in enumerate(entries):
        address = entry.get("address") if isinstance(entry, dict) else None
        if not address or not Web3.is_address(address):
            errors.append(f"{field_name}[{i}]: invalid address {address!r}")
    return errors


def validate_app_config(config: dict[str, Any]) -> list[str]:
    """Validate app.json has required fields."""
    return _check_keys(
        config,
        [
            "logging.log_dir",
            "storage.db_path",
            "api.host",
            "api.port",
        ],
        "app.json",
    )


def validate_chain_config(config: dict[str, Any]) -> list[str]:
    """Validate chain.json has required fields and well-formed addresses."""
    errors = _check_keys(
        config,
        [
            "rpc.http_url",
            "confirmations",
            "tokens",
            "watched_addresses",
        ],
        "chain.json",
    )
    if errors:
        return errors

    confirmations = config.get("confirmations")
    if not isinstance(confirmations, int) or confirmations < 0:
        errors.append("confirmations: must be a non-negative integer")

    errors.extend(_check_address_list(config.get("tokens"), "tokens"))
    errors.extend(_check_address_list(config.get("watched_addresses"), "watched_addresses"))

    for i, token in enumerate(config.get("tokens") or []):
        decimals = token.get("decimals", 18) if isinstance(token, dict) else None
        if not isinstance(decimals, int) or not 0 <= decimals <= 36:
            errors.append(f"tokens[{i}].decimals: must be an integer in [0, 36]")
    return errors


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields."""
    errors = _check_keys(
        config,
        [
            "indexer.backfill_window_blocks",
            "indexer.lookback_window_blocks",
            "indexer.base_retry_delay_seconds",
            "indexer.max_retry_delay_seconds",
        ],
        "timing.json",
    )
    if not errors:
        indexer = config["indexer"]
        if indexer["max_retry_delay_seconds"] < indexer["base_retry_delay_seconds"]:
            errors.append("indexer.max_retry_delay_seconds: must be >= base_retry_delay_seconds")
    return errors


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "app.json": (loader.get_app_config, validate_app_config),
        "chain.json": (loader.get_chain_config, validate_chain_config),
        "timing.json": (loader.get_timing_config, validate_timing_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - {error}")
        raise ConfigValidationError("\n".join(lines))

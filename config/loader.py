"""
Configuration loader for the net-flow indexer.

Provides centralized configuration management with .env overrides.
JSON files under config/ hold the defaults; the environment variable
names used by existing deployments still take precedence.

Usage:
    from config.loader import get_config

    config = get_config()
    chain_config = config.get_chain_config()
    timing = config.get_timing_config()
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

# Resolve config directory relative to this file
_CONFIG_DIR = Path(__file__).parent
_PROJECT_ROOT = _CONFIG_DIR.parent

_ENV_LABEL = "env"


def _load_json(filepath: Path) -> Dict[str, Any]:
    """Load a JSON config file. Returns empty dict if file doesn't exist."""
    try:
        with open(filepath, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"[CONFIG_WARN] Config file not found: {filepath}")
        return {}
    except json.JSONDecodeError as e:
        print(f"[CONFIG_ERROR] Invalid JSON in {filepath}: {e}")
        return {}


def get_env_var(var_name: str, default_value: Any, var_type: type) -> Any:
    """Get environment variable with type conversion and fallback."""
    value = os.getenv(var_name, None)
    if value is None:
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError):
        return default_value


def _first_env(*var_names: str) -> Optional[str]:
    """Return the first non-empty value among aliased environment variables."""
    for name in var_names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class ConfigLoader:
    """
    Central configuration manager for the net-flow indexer.

    Loads configuration from JSON files in the config/ directory with .env overrides.
    All accessor methods are cached via @lru_cache, so configuration is read
    once per process and stays immutable afterwards.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self, config_dir: Optional[Path] = None):
        self._config_dir = config_dir or _CONFIG_DIR
        self._project_root = _PROJECT_ROOT

    @classmethod
    def get_instance(cls) -> "ConfigLoader":
        """Singleton accessor."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def project_root(self) -> Path:
        return self._project_root

    # ------------------------------------------------------------------
    # Core config file loaders (cached)
    # ------------------------------------------------------------------

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings (logging, storage, API)."""
        config = _load_json(self._config_dir / "app.json")

        db_path = os.getenv("DATABASE_URL")
        if db_path:
            config.setdefault("storage", {})["db_path"] = db_path

        if os.getenv("PORT"):
            api = config.setdefault("api", {})
            api["port"] = get_env_var("PORT", api.get("port", 8080), int)

        return config

    @lru_cache(maxsize=1)
    def get_chain_config(self) -> Dict[str, Any]:
        """Load RPC endpoint, confirmation depth, tracked tokens and watched addresses."""
        config = _load_json(self._config_dir / "chain.json")

        rpc_url = _first_env("RPC_HTTP_URL", "POLYGON_RPC")
        if rpc_url:
            config.setdefault("rpc", {})["http_url"] = rpc_url

        if os.getenv("CONFIRMATIONS"):
            config["confirmations"] = get_env_var(
                "CONFIRMATIONS", config.get("confirmations", 2), int
            )

        tokens = _first_env("TOKEN_ADDRESSES", "POL_TOKEN")
        if tokens:
            config["tokens"] = [{"address": addr, "decimals": 18} for addr in _split_csv(tokens)]

        watched = _first_env("EXCHANGE_ADDRESSES", "BINANCE_WALLETS")
        if watched:
            config["watched_addresses"] = [
                {"address": addr, "label": _ENV_LABEL} for addr in _split_csv(watched)
            ]

        return config

    @lru_cache(maxsize=1)
    def get_timing_config(self) -> Dict[str, Any]:
        """Load scan windows, pauses, backoff bounds and RPC timeouts."""
        return _load_json(self._config_dir / "timing.json")

    # ------------------------------------------------------------------
    # Derived accessors
    # ------------------------------------------------------------------

    def get_db_path(self) -> str:
        """Absolute path of the SQLite database (relative paths resolve from project root)."""
        db_path = self.get_app_config().get("storage", {}).get("db_path", "data/netflow.db")
        path = Path(db_path)
        if not path.is_absolute():
            path = self._project_root / path
        return str(path)

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Clear all cached configurations (useful for testing)."""
        for method_name in dir(self):
            method = getattr(self, method_name)
            if hasattr(method, "cache_clear"):
                method.cache_clear()


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

def get_config() -> ConfigLoader:
    """Get the singleton ConfigLoader instance."""
    return ConfigLoader.get_instance()

"""
Settings for the sync job and the report layer, read from config.json
(or the file named by ETL_CONFIG). Secrets and machine-specific paths stay in
the environment; config.json only names the variables that hold them.
"""
import json
import os
from pathlib import Path
from typing import Any, Dict, Tuple

import pytz

REQUIRED_SECTIONS = ("paths", "warehouse", "store", "sync", "filters", "cache")

# key path -> (accepted types, minimum, maximum or None)
NUMERIC_RULES: Dict[str, Tuple[tuple, float, float]] = {
    "store.batch_size": ((int,), 1, 10000),
    "sync.stale_run_minutes": ((int, float), 1, None),
    "cache.ttl_seconds": ((int, float), 1, None),
}


class ConfigLoader:
    """Singleton over the parsed config file."""

    _instance = None
    _config: Dict[str, Any] = {}
    _loaded = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConfigLoader, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._loaded:
            self._config = self._read(os.getenv("ETL_CONFIG", "config.json"))
            self._validate()
            self._loaded = True

    @staticmethod
    def _read(config_path: str) -> Dict[str, Any]:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}. "
                "Create config.json or point ETL_CONFIG at one."
            )
        with open(config_file, "r") as f:
            return json.load(f)

    def _validate(self):
        missing = [s for s in REQUIRED_SECTIONS if s not in self._config]
        if missing:
            raise ValueError(f"Missing required config sections: {missing}")

        for key_path, (types, low, high) in NUMERIC_RULES.items():
            value = self.get(key_path)
            in_range = (
                isinstance(value, types)
                and not isinstance(value, bool)
                and value >= low
                and (high is None or value <= high)
            )
            if not in_range:
                bound = f"between {low} and {high}" if high else f">= {low}"
                raise ValueError(f"{key_path} must be a number {bound}, got {value!r}")

        # Report windows are computed in this zone, never the host's
        tz_name = self.get("filters.business_timezone")
        if tz_name not in pytz.all_timezones_set:
            raise ValueError(
                f"filters.business_timezone must be an IANA timezone name, got {tz_name!r}"
            )

    def get(self, key_path: str, default: Any = None) -> Any:
        """Dot-notation lookup, e.g. get('store.batch_size', 1000)."""
        value = self._config
        for key in key_path.split("."):
            if not isinstance(value, dict) or key not in value:
                return default
            value = value[key]
        return value

    def get_env_value(self, config_key: str, required: bool = True) -> str:
        """
        Read the environment variable whose name is stored at config_key.

        config has "store": {"path_env": "ANALYTICS_DB_PATH"}, so
        get_env_value('store.path_env') returns $ANALYTICS_DB_PATH.
        """
        env_var_name = self.get(config_key)
        if not env_var_name:
            raise ValueError(f"Config key '{config_key}' not found")

        value = os.getenv(env_var_name)
        if required and not value:
            raise ValueError(
                f"Environment variable '{env_var_name}' (from config key '{config_key}') is not set. "
                f"Please set it in your .env file."
            )
        return value

    def get_path(self, path_key: str, create: bool = False) -> Path:
        """Config path resolved against the working directory; optionally created."""
        path_str = self.get(path_key)
        if not path_str:
            raise ValueError(f"Path key '{path_key}' not found in config")
        path = Path(path_str)
        if not path.is_absolute():
            path = Path.cwd() / path
        if create:
            path.mkdir(parents=True, exist_ok=True)
        return path

    @classmethod
    def reset(cls):
        """Forget the loaded file so the next load_config() re-reads it."""
        global _loader
        cls._instance = None
        cls._loaded = False
        _loader = None


_loader = None


def load_config() -> ConfigLoader:
    """Get or create the process-wide configuration."""
    global _loader
    if _loader is None:
        _loader = ConfigLoader()
    return _loader

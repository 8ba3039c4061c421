# stream_sync_API/app/core/Sync/config.py
# Description: Configuration management for the sync client.
#
# Imports
import tomllib
import logging
import os
from pathlib import Path
from typing import Dict, Any, List, Optional
#
# Third-Party Imports
import toml
#
#######################################################################################################################
#
# Functions:

log = logging.getLogger(__name__)

CONFIG_ENV_VAR = "STREAM_SYNC_CLIENT_CONFIG"

# --- Default Configuration ---
DEFAULT_CONFIG = {
    "sync": {
        "enabled": False,
        "endpoint": "http://localhost:4000",
        "interval_seconds": 60,
        "timeout_seconds": 15,
        "tracked_keys": ["notes", "settings"],
        "collection_keys": ["notes"],
    },
    "cache": {
        "backend": "sqlite",
        "path": "~/.local/share/stream_sync/cache.db",
    },
    "history": {
        "limit": 15,
        "keys": ["notes"],
    },
}


def get_config_path() -> Path:
    """Determines the path to the configuration file."""
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        path = Path(env_path).expanduser().resolve()
        log.debug(f"Using config path from {CONFIG_ENV_VAR}: {path}")
        return path

    default_path = Path.home() / ".config" / "stream_sync" / "config.toml"
    log.debug(f"Using default config path: {default_path}")
    return default_path


def load_client_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Loads the client configuration from a TOML file and merges it over the defaults.
    Creates a default config file when none exists.
    """
    config_path = Path(config_path) if config_path is not None else get_config_path()

    config = {k: v.copy() if isinstance(v, dict) else v for k, v in DEFAULT_CONFIG.items()}

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        log.info(f"Attempting to load configuration from: {config_path}")

        if config_path.exists():
            try:
                with open(config_path, "rb") as f:
                    user_config = tomllib.load(f)

                # one-level deep merge
                for section, section_config in user_config.items():
                    if section in config and isinstance(config[section], dict) and isinstance(section_config, dict):
                        config[section].update(section_config)
                    else:
                        config[section] = section_config
                log.info(f"Successfully loaded and merged config from {config_path}")
            except tomllib.TOMLDecodeError as e:
                log.error(f"Error decoding TOML file {config_path}: {e}", exc_info=True)
                log.warning("Using default configuration values due to TOML error.")
        else:
            log.warning(f"Config file not found at {config_path}. Creating default config.")
            try:
                with open(config_path, "w", encoding="utf-8") as f:
                    toml.dump(DEFAULT_CONFIG, f)
                log.info(f"Created default configuration file at: {config_path}")
            except OSError as e:
                log.error(f"Failed to create default config file at {config_path}: {e}", exc_info=True)

    except OSError as e:
        log.error(f"OS error accessing config directory or file {config_path}: {e}", exc_info=True)
        log.warning("Using default configuration values due to OS error.")

    log.debug(f"Configuration loaded: Sections={list(config.keys())}")
    return config

# --- Convenience Access Functions ---

def get_setting(config: Dict[str, Any], section: str, key: str, default: Any = None) -> Any:
    """Gets a specific setting, returning a default if not found."""
    return config.get(section, {}).get(key, default)


def get_key_list(config: Dict[str, Any], section: str, key: str) -> List[str]:
    """Returns a list-of-strings setting, skipping anything that is not a non-empty string."""
    values = get_setting(config, section, key, []) or []
    if not isinstance(values, list):
        log.warning(f"Setting [{section}].{key} should be a list. Ignoring it.")
        return []
    valid = [v for v in values if isinstance(v, str) and v]
    if len(valid) != len(values):
        log.warning(f"Invalid entries in [{section}].{key} were skipped.")
    return valid


def get_cache_path(config: Dict[str, Any]) -> Path:
    """Gets the resolved local cache path from config."""
    path_str = get_setting(config, "cache", "path", DEFAULT_CONFIG["cache"]["path"])
    return Path(path_str).expanduser().resolve()

#
# End of stream_sync_API/app/core/Sync/config.py
#######################################################################################################################

# config.py
# Description: Configuration settings for the stream sync server application.
#
# Imports
import configparser
import os
from pathlib import Path
from typing import Optional, Dict, Any, List
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Constants ---
DEFAULT_DB_PATH = "stream-sync.db"
DEFAULT_PORT = 4000
DEFAULT_MAX_BODY_BYTES = 1024 * 1024  # 1 MiB
DEFAULT_RATE_LIMIT = "120/minute"

CONFIG_SECTION = "Server"


def get_config_file_path() -> Path:
    """Config_Files/config.txt next to the app package, unless STREAM_SYNC_CONFIG points elsewhere."""
    env_path = os.getenv("STREAM_SYNC_CONFIG")
    if env_path:
        return Path(env_path).expanduser().resolve()
    project_root = Path(__file__).resolve().parent.parent.parent
    return project_root / 'Config_Files' / 'config.txt'


def load_config_file(config_path: Optional[Path] = None) -> configparser.ConfigParser:
    """Reads the INI-style config file. A missing file yields an empty parser."""
    config_path = config_path or get_config_file_path()
    config_parser = configparser.ConfigParser()
    if not config_path.exists():
        logger.debug(f"No config file at {config_path}; using environment and defaults only.")
        return config_parser
    try:
        config_parser.read(config_path)
    except configparser.Error as e:
        logger.error(f"Error parsing config file {config_path}: {e}")
        raise
    logger.info(f"Loaded config file {config_path}. Sections: {config_parser.sections()}")
    return config_parser


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_origins(value: str) -> List[str]:
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def load_settings(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Loads all settings from environment variables, then the config file, then defaults."""
    parser = load_config_file(config_path)

    def pick(env_name: str, file_key: str, default: str) -> str:
        env_value = os.getenv(env_name)
        if env_value is not None and env_value != "":
            return env_value
        return parser.get(CONFIG_SECTION, file_key, fallback=default)

    # --- Database Settings ---
    db_path = pick("STREAM_SYNC_DB", "db_path", DEFAULT_DB_PATH)

    # --- Network ---
    host = pick("HOST", "host", "0.0.0.0")
    port = int(pick("PORT", "port", str(DEFAULT_PORT)))
    allowed_origins = _parse_origins(pick("ALLOWED_ORIGINS", "allowed_origins", "*"))
    max_body_bytes = int(pick("MAX_BODY_BYTES", "max_body_bytes", str(DEFAULT_MAX_BODY_BYTES)))

    # --- Rate limiting ---
    rate_limit = pick("SYNC_RATE_LIMIT", "rate_limit", DEFAULT_RATE_LIMIT)
    rate_limit_enabled = _parse_bool(pick("RATE_LIMIT_ENABLED", "rate_limit_enabled", "true"))

    # --- Logging ---
    log_level = pick("LOG_LEVEL", "log_level", "INFO").upper()

    config_dict = {
        "SYNC_DB_PATH": db_path,
        "HOST": host,
        "PORT": port,
        "ALLOWED_ORIGINS": allowed_origins,
        "MAX_BODY_BYTES": max_body_bytes,
        "RATE_LIMIT": rate_limit,
        "RATE_LIMIT_ENABLED": rate_limit_enabled,
        "LOG_LEVEL": log_level,
    }

    if max_body_bytes <= 0:
        logger.warning(f"MAX_BODY_BYTES={max_body_bytes} disables the request size guard.")
    if "*" in allowed_origins:
        logger.debug("CORS is open to all origins.")

    return config_dict


settings = load_settings()

#
# End of config.py
#######################################################################################################################

# zonesync/config.py
# Description: Configuration management for the zonesync client.
#
# Imports
import copy
import os
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional
#
# Third-Party Imports
import toml
from loguru import logger
#
#######################################################################################################################
#
# Functions:

# --- Constants ---
DEFAULT_CLIENT_ID = "zonesync_local_client_v1"
CONFIG_PATH_ENV_VAR = "ZONESYNC_CONFIG"
SERVER_URL_ENV_VAR = "ZONESYNC_SERVER_URL"
API_TOKEN_ENV_VAR = "ZONESYNC_API_TOKEN"

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "zonesync" / "config.toml"
BASE_DATA_DIR = Path.home() / ".local" / "share" / "zonesync"

CONFIG_TOML_CONTENT = """
# Configuration for zonesync
# This file is created with default values on first run.

[general]
client_id = "zonesync_local_client_v1"

[logging]
log_level = "INFO"
log_filename = "zonesync.log"
metrics_filename = "zonesync_metrics.json"
file_log_level = "DEBUG"
log_max_bytes = 10485760 # 10 MB
log_backup_count = 5

[database]
store_db_path = "~/.local/share/zonesync/zonesync_store.db"

[server]
base_url = "http://127.0.0.1:8000"
# api_token can also be supplied with the ZONESYNC_API_TOKEN environment variable
api_token = ""
timeout = 45.0

[sync]
batch_size = 200          # record changes per modify request (hard cap 400)
fetch_limit = 200         # records per fetch page
atomic_batches = false
interval_seconds = 60
max_item_attempts = 5
min_interval = 0.5        # minimum seconds between server operations
backoff_base = 1.0
backoff_max = 300.0
recovery_factor = 0.5
conflict_policy = "server_wins"   # server_wins | client_wins | field_merge | edit_counter
prefer_on_field_clash = "client"

[sync.type_policies]
# RecordType = "field_merge"
"""

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"FATAL: Could not parse internal CONFIG_TOML_CONTENT: {e}.")
    DEFAULT_CONFIG_FROM_TOML = {}


# --- Helper for deep merging dictionaries ---
def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update_dict into base_dict."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_config_path() -> Path:
    """Config file location; ZONESYNC_CONFIG overrides the default."""
    override = os.environ.get(CONFIG_PATH_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return DEFAULT_CONFIG_PATH


# --- Primary Configuration Loading Logic ---
_CONFIG_CACHE: Optional[Dict[str, Any]] = None

def load_settings(force_reload: bool = False) -> Dict[str, Any]:
    """
    Loads settings from the config TOML (~/.config/zonesync/config.toml by default).
    If the file doesn't exist, it's created with default values. Environment
    variables override the server URL and API token.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not force_reload:
        return _CONFIG_CACHE

    config_path = get_config_path()
    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)

    if not config_path.exists():
        logger.info(f"Config file not found at {config_path}. Creating with default values.")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(CONFIG_TOML_CONTENT)
        except OSError as e:
            logger.error(f"Could not create default config file {config_path}: {e}. Using internal defaults.")
    else:
        logger.debug(f"Loading config from: {config_path}")
        try:
            with open(config_path, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {config_path}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {config_path}: {e}. Using internal defaults.")

    server_section = loaded_config.setdefault("server", {})
    if os.environ.get(SERVER_URL_ENV_VAR):
        server_section["base_url"] = os.environ[SERVER_URL_ENV_VAR]
    if os.environ.get(API_TOKEN_ENV_VAR):
        server_section["api_token"] = os.environ[API_TOKEN_ENV_VAR]

    _CONFIG_CACHE = loaded_config
    logger.debug(f"load_settings returning config with top-level keys: {list(loaded_config.keys())}")
    return _CONFIG_CACHE


def get_cli_setting(section: str, key: str, default: Any = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = load_settings()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def save_setting(section: str, key: str, value: Any) -> Path:
    """
    Persists one setting into the user's config file and refreshes the cache.

    Returns:
        The path of the written config file.
    """
    config_path = get_config_path()
    user_config: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            user_config = tomllib.load(f)
    user_config.setdefault(section, {})[key] = value
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        toml.dump(user_config, f)
    logger.info(f"Saved setting [{section}] {key} to {config_path}")
    load_settings(force_reload=True)
    return config_path


# --- Path Getters ---
def get_store_db_path() -> Path:
    default_db_path_str = DEFAULT_CONFIG_FROM_TOML.get("database", {}).get(
        "store_db_path", str(BASE_DATA_DIR / "zonesync_store.db"))
    db_path_str = get_cli_setting("database", "store_db_path", default_db_path_str)
    return Path(db_path_str).expanduser().resolve()


def _log_path_for(key: str, default_name: str) -> Path:
    log_filename = get_cli_setting("logging", key, default_name)
    log_file_path = get_store_db_path().parent / "Logs" / log_filename
    try:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create log directory {log_file_path.parent}: {e}")
    return log_file_path


def get_log_file_path() -> Path:
    return _log_path_for("log_filename", "zonesync.log")


def get_metrics_log_file_path() -> Path:
    return _log_path_for("metrics_filename", "zonesync_metrics.json")


def get_client_id() -> str:
    return get_cli_setting("general", "client_id", DEFAULT_CLIENT_ID) or DEFAULT_CLIENT_ID

#
# End of zonesync/config.py
#######################################################################################################################

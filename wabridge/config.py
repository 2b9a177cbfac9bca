"""
Configuration module for the WhatsApp bridge.

Handles path resolution, logging setup, and configuration loading.
All paths are resolved relative to PROJECT_ROOT so the MCP server and the
bridge daemon behave the same regardless of the working directory they are
started from.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

# Project root directory (for resolving relative paths)
PROJECT_ROOT = Path(__file__).parent.parent

DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "wabridge.json"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def default_config() -> Dict[str, Any]:
    """Default bridge settings."""
    return {
        "server_name": "whatsapp-bridge",
        "version": "0.3.0",
        "paths": {
            "store_db": "data/store/messages.db",
            "log_dir": "logs",
        },
        "daemon": {
            "socket": "~/.wabridge/bridge.sock",
            "pidfile": "~/.wabridge/bridge.pid",
        },
        "protocol": {
            "socket": "~/.wabridge/protocol.sock",
            "send_timeout_s": 10.0,
            "individual_suffix": "@s.whatsapp.net",
        },
        "limits": {
            "max_message_limit": 500,
            "max_search_results": 500,
            "max_context_window": 50,
        },
        "store": {
            "read_retries": 3,
            "busy_timeout_ms": 5000,
        },
    }


# Env var -> (section, key, cast)
ENV_OVERRIDES = {
    "WABRIDGE_DB_PATH": ("paths", "store_db", str),
    "WABRIDGE_LOG_DIR": ("paths", "log_dir", str),
    "WABRIDGE_MAX_LIMIT": ("limits", "max_message_limit", int),
    "WABRIDGE_MAX_SEARCH": ("limits", "max_search_results", int),
    "WABRIDGE_PROTOCOL_SOCKET": ("protocol", "socket", str),
    "WABRIDGE_SEND_TIMEOUT": ("protocol", "send_timeout_s", float),
    "WABRIDGE_DAEMON_SOCKET": ("daemon", "socket", str),
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _save_json(file_path: Path, data: Dict[str, Any]) -> None:
    """Save data to JSON file"""
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, 'w') as f:
        json.dump(data, f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load bridge configuration.

    Reads the JSON config file (creating it with defaults when missing),
    merges it over the defaults, then applies environment overrides.

    Args:
        config_path: Optional path to the JSON file. Falls back to the
            WABRIDGE_CONFIG env var, then to config/wabridge.json.

    Returns:
        Fully populated configuration dict
    """
    if config_path is None:
        config_path = Path(os.getenv("WABRIDGE_CONFIG", str(DEFAULT_CONFIG_PATH)))
    config_path = Path(config_path)

    defaults = default_config()
    if config_path.exists():
        with open(config_path) as f:
            config = _merge(defaults, json.load(f))
    else:
        _save_json(config_path, defaults)
        config = defaults

    for env_name, (section, key, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            config[section][key] = cast(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid {env_name}={raw!r}")

    return config


def resolve_path(path_str: str) -> Path:
    """
    Resolve a config path relative to PROJECT_ROOT or expand ~.

    Args:
        path_str: Path string from configuration

    Returns:
        Resolved absolute path
    """
    path = Path(path_str)
    if path_str.startswith("~"):
        return path.expanduser()
    elif path.is_absolute():
        return path
    else:
        return PROJECT_ROOT / path


def setup_logging(config: Dict[str, Any], filename: str, level: int = logging.INFO) -> None:
    """
    Configure root logging with a file handler under the log dir.

    The stream handler writes to stderr, which keeps stdout free for the
    MCP stdio transport.
    """
    log_dir = resolve_path(config["paths"]["log_dir"])
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_dir / filename),
            logging.StreamHandler()
        ]
    )

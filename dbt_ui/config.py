"""Configuration for store and manifest locations.

Resolution order for every setting: environment variable, then the
``[dbt_ui]`` table of ``dbt_ui.toml`` in the working directory, then the
built-in default.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Tuple

import toml

DB_PATH_ENV = "DBT_UI_DB_PATH"
CONFIG_PATH_ENV = "DBT_UI_CONFIG"

DEFAULT_DB_PATH = "target/dbt_ui.sqlite"
DEFAULT_MANIFEST_PATH = "target/manifest.json"
DEFAULT_CONFIG_FILE = "dbt_ui.toml"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8421


def config_file() -> Path:
    return Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_FILE)).expanduser()


def load_config() -> Dict[str, Any]:
    """Load the ``[dbt_ui]`` table from the TOML config file.

    Returns an empty dict when the file is missing or unreadable.
    """
    path = config_file()
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = toml.load(f)
    except (OSError, toml.TomlDecodeError):
        return {}
    section = payload.get("dbt_ui", {})
    return section if isinstance(section, dict) else {}


def get_db_path() -> Path:
    """Absolute path of the SQLite store the query side should open."""
    env_path = os.environ.get(DB_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser().resolve()
    configured = load_config().get("db_path")
    if isinstance(configured, str) and configured:
        return Path(configured).expanduser().resolve()
    return (Path.cwd() / DEFAULT_DB_PATH).resolve()


def get_manifest_path() -> Path:
    configured = load_config().get("manifest_path")
    if isinstance(configured, str) and configured:
        return Path(configured).expanduser()
    return Path(DEFAULT_MANIFEST_PATH)


def get_server_address() -> Tuple[str, int]:
    cfg = load_config()
    host = cfg.get("host") if isinstance(cfg.get("host"), str) else DEFAULT_HOST
    port = cfg.get("port") if isinstance(cfg.get("port"), int) else DEFAULT_PORT
    return host, port

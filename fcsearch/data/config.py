from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from .models import ServiceConfig


STATE_DIR_ENV_VAR = "FCSEARCH_STATE_DIR"
CONFIG_FILE_NAME = "config.yaml"
STATE_DB_FILE_NAME = "state.db"
FEED_CACHE_DIR_NAME = "feeds"

# Resolve repository root (project root, not the Python package root)
_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_STATE_DIR = _REPO_ROOT / "data"

logger = logging.getLogger(__name__)


def get_state_dir() -> Path:
    """
    Determine the state directory path.

    Priority:
    1. Environment variable FCSEARCH_STATE_DIR
    2. '<project root>/data'
    """
    env_path = os.environ.get(STATE_DIR_ENV_VAR)
    if env_path:
        state_dir = Path(env_path).expanduser()
    else:
        state_dir = _DEFAULT_STATE_DIR
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def config_path(state_dir: Path) -> Path:
    return state_dir / CONFIG_FILE_NAME


def state_db_path(state_dir: Path) -> Path:
    return state_dir / STATE_DB_FILE_NAME


def feed_cache_dir(state_dir: Path) -> Path:
    return state_dir / FEED_CACHE_DIR_NAME


def load_service_config(state_dir: Optional[Path] = None) -> ServiceConfig:
    """
    Load config.yaml, merging with defaults for any missing fields,
    and write it back so any new fields are persisted.

    A file that cannot be parsed or validated falls back to the defaults
    and is left untouched so the operator can fix it.
    """
    state_dir = state_dir or get_state_dir()
    path = config_path(state_dir)

    if not path.exists():
        config = ServiceConfig()
        _write_config(path, config)
        return config

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        config = ServiceConfig(**raw)
    except (yaml.YAMLError, ValidationError, TypeError) as e:
        logger.error(f"Invalid configuration in {path}, using defaults: {e}")
        return ServiceConfig()

    # Persist before resolving paths so relative entries stay relative on disk.
    _write_config(path, config)

    # Relative channel paths are relative to the state directory.
    for channel in config.channels:
        if channel.path is not None and not channel.path.is_absolute():
            channel.path = state_dir / channel.path
    return config


def _write_config(path: Path, config: ServiceConfig) -> None:
    data = config.model_dump(mode="json", exclude_none=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")

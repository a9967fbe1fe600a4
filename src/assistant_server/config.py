"""Configuration loading utilities for the assistant server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable ASSISTANT_SERVER_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``ASSISTANT_SERVER__`` (e.g., ASSISTANT_SERVER__MEMORY__DATA_DIR=/srv/chats).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "ASSISTANT_SERVER__"

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"], "log_level": "info"},
    "assistant": {
        "system_prompt": "You are a helpful personal assistant. Be concise and friendly.",
        "default_user_id": "default-user",
    },
    "memory": {"data_dir": "data/conversations"},
    "model": {"provider": "workers_ai", "timeout": 60},
    "generation": {"max_new_tokens": 512, "temperature": 0.7, "top_p": 0.95},
}


def _parse_scalar(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    if value.lower() in {"null", "none", "~"}:
        return None
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix ASSISTANT_SERVER__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., ASSISTANT_SERVER__MODEL__PROVIDER -> cfg["model"]["provider"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _parse_scalar(value)
    return cfg


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the assistant server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``ASSISTANT_SERVER_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Built-in defaults, overlaid with the file, then environment overrides.
    """
    if path is None:
        path = os.environ.get("ASSISTANT_SERVER_CONFIG", "config/default.yaml")

    cfg = copy.deepcopy(DEFAULTS)
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(cfg)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(cfg, loaded))

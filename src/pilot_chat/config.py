"""Configuration loading utilities for Pilot Chat.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable PILOT_CHAT_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``PILOT_CHAT__`` (e.g., PILOT_CHAT__GEMINI__MODEL=gemini-2.0-flash).

Secrets never live in the YAML file; they are read from ``GEMINI_API_KEY``,
``SUPABASE_URL`` and ``SUPABASE_SERVICE_ROLE_KEY``.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "gemini": {
        "model": "gemini-2.0-flash-exp",
        "base_url": "https://generativelanguage.googleapis.com/v1beta/models",
        "timeout": 60.0,
    },
    "context": {
        "max_messages": 12,
        "max_context_chars": 5000,
        "fallback_prompt_chars": 1000,
        "single_shot_prompt_chars": 5000,
    },
    "store": {"backend": "postgrest", "data_dir": "data", "timeout": 15.0},
    "chat": {
        "proxy_url": "http://127.0.0.1:8000/gemini",
        "duplicate_window_seconds": 10,
        "completion_timeout": 90.0,
        "health_timeout": 6.0,
        "health_interval": 15.0,
        "local_storage_dir": ".pilot_local",
    },
    "features": {"gemini": True},
    "logging": {"level": "INFO"},
}


class _NotConfigured:
    """Sentinel for credentials that were not supplied."""

    _instance: Optional["_NotConfigured"] = None

    def __new__(cls) -> "_NotConfigured":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_CONFIGURED"


NOT_CONFIGURED = _NotConfigured()


@dataclass(frozen=True)
class StoreCredentials:
    url: str
    key: str

    def __repr__(self) -> str:
        # Keys must never end up in logs.
        return f"StoreCredentials(url={self.url!r}, key=<redacted>)"


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix PILOT_CHAT__."""
    prefix = "PILOT_CHAT__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., PILOT_CHAT__CHAT__PROXY_URL -> cfg["chat"]["proxy_url"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration merged over :data:`DEFAULTS`.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``PILOT_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get("PILOT_CHAT_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded))


def store_credentials() -> Union[StoreCredentials, _NotConfigured]:
    """Server-side store credentials from the environment, or NOT_CONFIGURED."""
    url = os.environ.get("SUPABASE_URL", "").strip()
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "").strip()
    if not url or not key:
        return NOT_CONFIGURED
    return StoreCredentials(url=url, key=key)


def gemini_api_key() -> Union[str, _NotConfigured]:
    key = os.environ.get("GEMINI_API_KEY", "").strip()
    return key or NOT_CONFIGURED


def configure_logging(cfg: Dict[str, Any]) -> None:
    level = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

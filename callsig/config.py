"""Lazily loaded YAML configuration (``callsig/config.yaml`` or ``$CALLSIG_CONFIG``)."""

import os
from typing import Any, Dict, Optional

import yaml

CONFIG_ENV = "CALLSIG_CONFIG"
DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "config.yaml")

_config: Optional[Dict[str, Any]] = None


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Read a configuration file; a missing or empty file yields an empty dict."""
    path = path or os.getenv(CONFIG_ENV) or DEFAULT_CONFIG_PATH
    if not os.path.exists(path):
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def get_config() -> Dict[str, Any]:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[Dict[str, Any]]):
    """Replace the cached configuration; ``None`` reloads it on next use."""
    global _config
    _config = config

"""Configuration loading utilities for the storyteller server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable STORYTELLER_CONFIG
3. Fallback to "config/default.yaml"

Values from the file are laid over built-in defaults. It also supports
overrides from environment variables with prefix ``STORYTELLER__``
(e.g., STORYTELLER__BACKEND__HOST=http://gpu-box:11434). Override values
are read as YAML, so ``STORYTELLER__HISTORY__MAX_DEPTH=null`` lifts the
undo limit and a flow list sets ``server.cors_origins``.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "STORYTELLER__"

DEFAULTS: Dict[str, Any] = {
    "backend": {"kind": "ollama", "host": None, "timeout": 120.0},
    "model": {"default": "cogito:8b"},
    "history": {"max_depth": None},
    "prompt": {"system_prompt": None, "instruction": None, "agent_label": "Storyteller"},
    "server": {"cors_origins": ["*"]},
    "logging": {"level": "INFO"},
}


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _coerce(value: str) -> Any:
    """Read an env value as a YAML scalar so "10", "true" and "null" get types."""
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect ``STORYTELLER__SECTION__KEY=value`` pairs into a nested dict."""
    overrides: Dict[str, Any] = {}
    for name in sorted(environ):
        if not name.startswith(ENV_PREFIX):
            continue
        *sections, leaf = name[len(ENV_PREFIX):].lower().split("__")
        node = overrides
        for section in sections:
            if not isinstance(node.get(section), dict):
                node[section] = {}
            node = node[section]
        node[leaf] = _coerce(environ[name])
    return overrides


def _read_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found at %s. Using defaults.", path)
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise RuntimeError(f"Failed to parse config file {path}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise RuntimeError(f"Invalid config format in {path}, expected a mapping.")
    return raw


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load the storyteller configuration.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``STORYTELLER_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Built-in defaults, then the file, then ``STORYTELLER__`` variables.
    """
    source = Path(path or os.environ.get("STORYTELLER_CONFIG", "config/default.yaml"))
    cfg = _deep_merge(DEFAULTS, _read_file(source))
    return _deep_merge(cfg, _env_overrides(os.environ))


def configure_logging(cfg: Dict[str, Any]) -> None:
    """Set up root logging from the ``logging`` section."""
    level_name = str((cfg.get("logging") or {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

#!/usr/bin/env python3
"""Runtime settings for a pipeline run.

Thresholds and vocabularies are module constants next to the code that uses
them. The knobs an operator tunes per deployment (batch sizes, lookbacks,
timeouts, the engineering inbox) live in ``data/config/pipeline.yaml`` and
are merged over the defaults below.

Usage (from Python):
    from selfheal.config import load_settings
    settings = load_settings()                      # project default file
    settings = load_settings(Path("custom.yaml"))   # explicit file
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "data" / "config" / "pipeline.yaml"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "event_batch_size": 50,             # raw events pulled per cluster pass
    "max_observations_per_run": 5,      # active observations analyzed per run
    "history_lookback": 5,              # resolved observations checked for recurrence
    "max_sample_event_ids": 10,         # sample ids kept on an observation
    "merge_retry_attempts": 3,          # retries after a unique-constraint race
    "hypothesis_timeout_seconds": 30.0,
    "tool_timeout_seconds": 15.0,
    "engineering_email": "engineering@example.com",
}

# Environment variables that override file values.
ENV_OVERRIDES = {
    "ENGINEERING_EMAIL": "engineering_email",
}


def _coerce(key: str, value: Any) -> Any:
    """Cast a raw YAML/env value to the type of its default."""
    default = DEFAULT_SETTINGS[key]
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load settings from YAML, falling back to defaults for missing keys.

    A missing default file is not an error (defaults apply). An explicit
    path that does not exist raises FileNotFoundError. Unknown keys are
    ignored with a warning; values that cannot be cast raise ValueError.
    """
    settings = dict(DEFAULT_SETTINGS)

    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if config_path.exists():
        with open(config_path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must contain a mapping: {config_path}")
        for key, value in loaded.items():
            if key not in DEFAULT_SETTINGS:
                logger.warning("Ignoring unknown setting %r in %s", key, config_path)
                continue
            settings[key] = _coerce(key, value)
    elif path is not None:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    for env_name, key in ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            settings[key] = _coerce(key, os.environ[env_name])

    return settings

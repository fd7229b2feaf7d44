"""Load per-bot configuration overrides from YAML.

Optional file path via env `GP_PER_BOT_CONFIG`, default `configs/per_bot.yaml`.
Returns a dict mapping bot id -> dict of overrides merged over the stored config.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

log = logging.getLogger("gridpilot")


def load_per_bot_overrides(path: str | None = None) -> Dict[str, Dict[str, Any]]:
    if path is None:
        path = os.getenv("GP_PER_BOT_CONFIG", "configs/per_bot.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        log.warning(f"per_bot_config_load_error:{exc}")
        return {}
    if isinstance(data, dict):
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}
    return {}


def apply_overrides(
    bot_id: str,
    config: Mapping[str, Any],
    overrides: Optional[Mapping[str, Mapping[str, Any]]],
) -> Dict[str, Any]:
    """Stored config with the bot's YAML overrides on top."""
    merged = dict(config)
    if overrides and bot_id in overrides:
        merged.update(overrides[bot_id])
    return merged

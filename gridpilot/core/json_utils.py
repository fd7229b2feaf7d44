"""
Fast JSON helpers backed by orjson.

Usage:
    from gridpilot.core.json_utils import dumps, loads

    log.info(dumps({"event": "order_placed", "bot": "bot_1"}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Encode to a compact JSON string."""
    return orjson.dumps(obj, default=_default).decode("utf-8")


def dumps_bytes(obj: Any, pretty: bool = False) -> bytes:
    """Encode to bytes; `pretty` indents for files humans read."""
    option = orjson.OPT_INDENT_2 if pretty else 0
    return orjson.dumps(obj, default=_default, option=option)


def loads(s: str | bytes) -> Any:
    return orjson.loads(s)


def _default(obj: Any) -> Any:
    # Enums and other simple wrappers log as their string form
    value = getattr(obj, "value", None)
    if value is not None:
        return value
    return str(obj)

"""
Per-(bot, alert type) cooldown for outbound notifications.

A condition that persists across many ticks (stale feed, near-breaker)
would otherwise alert on every tick. The map is owned by the orchestrator
and only touched from the control loop, so it carries no lock.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from gridpilot.core.json_utils import dumps_bytes, loads
from gridpilot.core.utils import now_ms
from gridpilot.infra.logging_cfg import log_event

log = logging.getLogger("gridpilot")


class AlertThrottle:
    """
    Last-sent timestamps keyed by "<bot>::<alert type>".

    `cooldowns` overrides `default_cooldown_sec` per alert type; a cooldown
    of 0 never suppresses. With `path` set, state is loaded on construction
    and written back by `flush()` so cooldowns survive restarts.
    """

    def __init__(
        self,
        default_cooldown_sec: float = 300.0,
        cooldowns: Optional[Mapping[str, float]] = None,
        path: Optional[Union[str, Path]] = None,
    ) -> None:
        self.default_cooldown_sec = default_cooldown_sec
        self.cooldowns: Dict[str, float] = dict(cooldowns or {})
        self.path = Path(path) if path else None
        self._last_sent: Dict[str, int] = {}
        self._dirty = False
        if self.path is not None:
            self._load()

    @staticmethod
    def key(bot_id: str, alert_type: str) -> str:
        return f"{bot_id}::{alert_type}"

    def cooldown_ms(self, alert_type: str) -> int:
        return int(self.cooldowns.get(alert_type, self.default_cooldown_sec) * 1000)

    def can_send(self, bot_id: str, alert_type: str, now: Optional[int] = None) -> bool:
        now = now if now is not None else now_ms()
        last = self._last_sent.get(self.key(bot_id, alert_type), 0)
        return last == 0 or now - last >= self.cooldown_ms(alert_type)

    def mark_sent(self, bot_id: str, alert_type: str, now: Optional[int] = None) -> None:
        self._last_sent[self.key(bot_id, alert_type)] = now if now is not None else now_ms()
        self._dirty = True

    def forget_bot(self, bot_id: str) -> None:
        prefix = f"{bot_id}::"
        for k in [k for k in self._last_sent if k.startswith(prefix)]:
            del self._last_sent[k]
            self._dirty = True

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = loads(self.path.read_bytes())
        except (OSError, ValueError) as exc:
            log_event(log, "alert_throttle_load_error", level=logging.WARNING, path=str(self.path), err=str(exc))
            return
        raw = data.get("last_sent_at_by_key", data.get("lastSentAtByKey")) if isinstance(data, dict) else None
        if isinstance(raw, dict):
            self._last_sent = {str(k): int(v) for k, v in raw.items() if isinstance(v, (int, float))}

    def flush(self) -> bool:
        """Write state if it changed since the last flush. Returns True if written."""
        if self.path is None or not self._dirty:
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(dumps_bytes({"last_sent_at_by_key": self._last_sent}, pretty=True))
        os.replace(tmp, self.path)
        self._dirty = False
        return True

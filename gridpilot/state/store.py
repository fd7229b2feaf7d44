"""
File-backed store shared with the dashboard.

- bots.json: bot records with their config, running flag and last runtime snapshot
- equity-history.json: append-only equity samples per execution mode

Writes go to a temp file and are swapped in with os.replace. File IO runs in
an executor under an asyncio.Lock so the loop never blocks on disk and two
writers never interleave read-modify-write cycles.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Union

from gridpilot.config.per_bot_config import apply_overrides
from gridpilot.core.json_utils import dumps_bytes, loads
from gridpilot.core.models import BotRecord, RuntimeSnapshot
from gridpilot.core.utils import now_ms
from gridpilot.infra.logging_cfg import log_event

log = logging.getLogger("gridpilot")

BOTS_FILE = "bots.json"
EQUITY_FILE = "equity-history.json"
EQUITY_VERSION = 2
EQUITY_MODES = ("live", "paper")


class StorePort(Protocol):
    async def load_running_bots(self) -> List[BotRecord]: ...

    async def save_runtime_snapshot(self, bot_id: str, snapshot: RuntimeSnapshot) -> None: ...

    async def mark_stopped(self, bot_id: str, reason: str, ts: int) -> None: ...

    async def append_equity_sample(self, mode: str, label: str, value: float, ts: Optional[int] = None) -> None: ...


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    raw = path.read_bytes()
    if not raw.strip():
        return default
    return loads(raw)


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(dumps_bytes(data, pretty=True))
    os.replace(tmp, path)


class FileBotStore:
    """
    StorePort over JSON files in `data_dir`.

    Read errors (unreadable or corrupt bots.json) propagate: the control loop
    treats them as "unknown state" and refuses to trade that tick.
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        owner: Optional[str] = None,
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
        equity_max_points: int = 20000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.bots_path = self.data_dir / BOTS_FILE
        self.equity_path = self.data_dir / EQUITY_FILE
        self.owner = owner
        self.overrides = dict(overrides or {})
        self.equity_max_points = equity_max_points
        self._clock = clock
        self._lock = asyncio.Lock()

    async def _run(self, fn: Callable[[], Any]) -> Any:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, fn)

    # ------------------------------------------------------------------
    # bots.json
    # ------------------------------------------------------------------

    def _load_bots_sync(self) -> List[Dict[str, Any]]:
        data = _read_json(self.bots_path, {"bots": []})
        bots = data.get("bots") if isinstance(data, dict) else data
        if not isinstance(bots, list):
            raise ValueError(f"{self.bots_path}: expected a list of bots")
        return [b for b in bots if isinstance(b, dict) and b.get("id") is not None]

    def _owned(self, raw: Mapping[str, Any]) -> bool:
        if not self.owner:
            return True
        owner = raw.get("owner", raw.get("ownerEmail"))
        return owner is None or str(owner).lower() == self.owner.lower()

    async def load_bots(self) -> List[BotRecord]:
        rows = await self._run(self._load_bots_sync)
        out: List[BotRecord] = []
        for raw in rows:
            if not self._owned(raw):
                continue
            rec = BotRecord.from_dict(raw)
            rec.config = apply_overrides(rec.id, rec.config, self.overrides)
            out.append(rec)
        return out

    async def load_running_bots(self) -> List[BotRecord]:
        return [b for b in await self.load_bots() if b.is_live_running]

    def _patch_bot_sync(self, bot_id: str, patch: Callable[[Dict[str, Any]], None]) -> bool:
        data = _read_json(self.bots_path, {"bots": []})
        if isinstance(data, list):
            data = {"bots": data}
        bots = data.get("bots") or []
        for raw in bots:
            if isinstance(raw, dict) and str(raw.get("id")) == bot_id:
                patch(raw)
                raw["updated_at"] = self._clock()
                _write_json(self.bots_path, data)
                return True
        return False

    async def save_runtime_snapshot(self, bot_id: str, snapshot: RuntimeSnapshot) -> None:
        payload = snapshot.to_dict()

        def patch(raw: Dict[str, Any]) -> None:
            runtime = dict(raw.get("runtime") or {})
            runtime.update(payload)
            raw["runtime"] = runtime

        found = await self._run(lambda: self._patch_bot_sync(bot_id, patch))
        if not found:
            log_event(log, "snapshot_bot_missing", level=logging.WARNING, bot=bot_id)

    async def mark_stopped(self, bot_id: str, reason: str, ts: int) -> None:
        def patch(raw: Dict[str, Any]) -> None:
            raw["is_running"] = False
            raw.pop("isRunning", None)
            runtime = dict(raw.get("runtime") or {})
            runtime["stop_reason"] = reason
            runtime["stopped_at"] = ts
            raw["runtime"] = runtime

        found = await self._run(lambda: self._patch_bot_sync(bot_id, patch))
        log_event(log, "bot_marked_stopped", bot=bot_id, reason=reason, found=found)

    async def upsert_bot(self, record: Mapping[str, Any]) -> None:
        """Insert or replace a bot record by id. Used by tooling and tests."""
        def write() -> None:
            data = _read_json(self.bots_path, {"bots": []})
            if isinstance(data, list):
                data = {"bots": data}
            bots = [b for b in data.get("bots") or [] if str(b.get("id")) != str(record["id"])]
            bots.append(dict(record))
            data["bots"] = bots
            _write_json(self.bots_path, data)

        await self._run(write)

    # ------------------------------------------------------------------
    # equity-history.json
    # ------------------------------------------------------------------

    def _append_equity_sync(self, mode: str, label: str, value: float, ts: int) -> None:
        data = _read_json(self.equity_path, {})
        if not isinstance(data, dict) or data.get("version") != EQUITY_VERSION:
            data = {"version": EQUITY_VERSION, "live": [], "paper": []}
        series = data.setdefault(mode, [])
        series.append({"ts": ts, "value": value, "label": label})
        if len(series) > self.equity_max_points:
            del series[: len(series) - self.equity_max_points]
        _write_json(self.equity_path, data)

    async def append_equity_sample(self, mode: str, label: str, value: float, ts: Optional[int] = None) -> None:
        if mode not in EQUITY_MODES:
            raise ValueError(f"unknown equity mode: {mode}")
        when = ts if ts is not None else self._clock()
        await self._run(lambda: self._append_equity_sync(mode, label, float(value), when))

    async def load_equity(self, mode: str) -> List[Dict[str, Any]]:
        data = await self._run(lambda: _read_json(self.equity_path, {}))
        if not isinstance(data, dict):
            return []
        return list(data.get(mode) or [])

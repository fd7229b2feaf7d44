"""
Logging for the grid worker.

Console output goes through rich for operators. The file log is one JSON
object per line, written by a background thread so a slow disk never
stalls a tick. Events logged with `log_event` have their fields lifted to
the top level of the file record, so `jq 'select(.bot == "7")'` works.
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from rich.logging import RichHandler

from gridpilot.core.json_utils import dumps, loads

LOGGER_NAME = "gridpilot"

# per-tick warnings that would otherwise repeat every 1.2s per bot
NOISY_EVENTS = frozenset({
    "price_fetch_error",
    "ghost_trade_refused",
    "snapshot_persist_error",
    "store_load_error",
})


def _event_payload(record: logging.LogRecord) -> Optional[Dict[str, Any]]:
    """Decoded `log_event` payload, or None for plain messages."""
    cached = getattr(record, "_gp_event", None)
    if cached is not None:
        return cached or None
    msg = record.getMessage()
    data: Dict[str, Any] = {}
    if msg.startswith("{"):
        try:
            decoded = loads(msg)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict) and "event" in decoded:
            data = decoded
    record._gp_event = data
    return data or None


class JsonFormatter(logging.Formatter):
    """One JSON object per record; event fields are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        out: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        event = _event_payload(record)
        if event is not None:
            for key, value in event.items():
                out.setdefault(key, value)
        else:
            out["msg"] = record.getMessage()
        if record.exc_info:
            out["exc_info"] = self.formatException(record.exc_info)
        return dumps(out)


class BackgroundFileHandler(logging.Handler):
    """
    JSON-lines file handler whose writes happen on a daemon thread.

    `emit` only enqueues. When the queue is full the record is dropped and
    counted; the count is reported on close.
    """

    def __init__(self, path: str, max_queue_size: int = 10000) -> None:
        super().__init__()
        self._file = logging.FileHandler(path, encoding="utf-8")
        self._file.setFormatter(JsonFormatter())
        self._records: "queue.Queue[Optional[logging.LogRecord]]" = queue.Queue(maxsize=max_queue_size)
        self.dropped = 0
        self._writer = threading.Thread(target=self._drain, daemon=True, name="gridpilot-log-writer")
        self._writer.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._records.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def _drain(self) -> None:
        while True:
            record = self._records.get()
            if record is None:
                return
            try:
                self._file.emit(record)
            except Exception:
                self._file.handleError(record)

    def close(self) -> None:
        if self._writer.is_alive():
            try:
                self._records.put(None, timeout=1.0)
            except queue.Full:
                pass
            self._writer.join(timeout=2.0)
        if self.dropped:
            sys.stderr.write(f"[gridpilot] log queue overflow, {self.dropped} records dropped\n")
            self.dropped = 0
        self._file.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """Let one noisy event per (event, bot) through every `cooldown_sec`."""

    def __init__(self, cooldown_sec: float = 30.0, events: Optional[Iterable[str]] = None) -> None:
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = frozenset(events) if events is not None else NOISY_EVENTS
        self._seen: Dict[str, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        event = _event_payload(record)
        if event is None or event["event"] not in self.events:
            return True
        key = f"{event['event']}:{event.get('bot', '')}"
        now = time.monotonic()
        last = self._seen.get(key)
        if last is not None and now - last < self.cooldown_sec:
            return False
        self._seen[key] = now
        return True


def build_logger(
    level: int = logging.INFO,
    file_path: Optional[str] = "gridpilot.log",
    throttle_console: bool = True,
    name: str = LOGGER_NAME,
) -> logging.Logger:
    """
    Attach console and file handlers to the worker logger.

    Calling it again only changes the level, so tests and tools can call
    it freely.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    console.setFormatter(logging.Formatter("%(message)s"))
    console.setLevel(level)
    if throttle_console:
        console.addFilter(ThrottledFilter())
    logger.addHandler(console)

    if file_path:
        file_handler = BackgroundFileHandler(file_path)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data: Any) -> None:
    """
    Log `event` with keyword fields as a compact JSON message.

        log_event(log, "order_placed", bot="7", side="buy", size=3)
    """
    if logger.isEnabledFor(level):
        logger.log(level, dumps({"event": event, **data}))

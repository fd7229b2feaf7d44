"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from gridpilot.core.errors import ConfigError
from gridpilot.core.json_utils import dumps

load_dotenv()

DELTA_INDIA_BASE_URL = "https://api.india.delta.exchange"
DELTA_GLOBAL_BASE_URL = "https://api.delta.exchange"


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    data_dir: str
    owner: str | None
    tick_interval_sec: float
    persist_interval_ms: int
    stale_after_ms: int
    feed_stale_alert_sec: float
    equity_interval_sec: float
    equity_max_points: int
    order_history_limit: int
    alert_cooldown_sec: float
    persist_alert_throttle: bool
    resolve_product_meta: bool
    http_timeout: float
    sink_queue_size: int
    log_level: str
    log_file: str | None
    metrics_port: int
    per_bot_config: str
    # Delta Exchange, one credential pair per venue
    delta_india_base_url: str
    delta_india_api_key: str | None
    delta_india_api_secret: str | None
    delta_global_base_url: str
    delta_global_api_key: str | None
    delta_global_api_secret: str | None
    # Alerting
    telegram_bot_token: str | None
    telegram_chat_id: str | None
    alert_webhook_url: str | None
    alert_webhook_type: str  # generic, slack, discord

    def dump(self) -> dict:
        """Return a dict of settings for logging, secrets masked."""
        out = self.__dict__.copy()
        for key in ("delta_india_api_secret", "delta_global_api_secret", "telegram_bot_token"):
            if out.get(key):
                out[key] = "****"
        for key in ("delta_india_api_key", "delta_global_api_key"):
            val = out.get(key)
            if val:
                out[key] = f"{val[:4]}****{val[-4:]}" if len(val) > 8 else "****"
        return out

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        # DELTA_API_KEY / DELTA_API_SECRET are the single-venue fallbacks
        shared_key = os.getenv("DELTA_API_KEY")
        shared_secret = os.getenv("DELTA_API_SECRET")

        cfg = cls(
            data_dir=os.getenv("GP_DATA_DIR", "data"),
            owner=os.getenv("GP_OWNER") or None,
            tick_interval_sec=_float_env("GP_TICK_INTERVAL_SEC", 1.2),
            persist_interval_ms=_int_env("GP_PERSIST_INTERVAL_MS", 900),
            stale_after_ms=_int_env("GP_STALE_AFTER_MS", 5000),
            feed_stale_alert_sec=_float_env("GP_FEED_STALE_ALERT_SEC", 15.0),
            equity_interval_sec=_float_env("GP_EQUITY_INTERVAL_SEC", 60.0),
            equity_max_points=_int_env("GP_EQUITY_MAX_POINTS", 20000),
            order_history_limit=_int_env("GP_ORDER_HISTORY_LIMIT", 120),
            alert_cooldown_sec=_float_env("GP_ALERT_COOLDOWN_SEC", 300.0),
            persist_alert_throttle=env_bool("GP_PERSIST_ALERT_THROTTLE", True),
            resolve_product_meta=env_bool("GP_RESOLVE_PRODUCT_META", True),
            http_timeout=_float_env("GP_HTTP_TIMEOUT", 10.0),
            sink_queue_size=_int_env("GP_SINK_QUEUE_SIZE", 256),
            log_level=os.getenv("GP_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("GP_LOG_FILE", "gridpilot.log") or None,
            metrics_port=_int_env("GP_METRICS_PORT", 0),
            per_bot_config=os.getenv("GP_PER_BOT_CONFIG", "configs/per_bot.yaml"),
            delta_india_base_url=os.getenv("DELTA_INDIA_BASE_URL", DELTA_INDIA_BASE_URL),
            delta_india_api_key=os.getenv("DELTA_INDIA_API_KEY") or shared_key,
            delta_india_api_secret=os.getenv("DELTA_INDIA_API_SECRET") or shared_secret,
            delta_global_base_url=os.getenv("DELTA_GLOBAL_BASE_URL", DELTA_GLOBAL_BASE_URL),
            delta_global_api_key=os.getenv("DELTA_GLOBAL_API_KEY") or shared_key,
            delta_global_api_secret=os.getenv("DELTA_GLOBAL_API_SECRET") or shared_secret,
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID") or None,
            alert_webhook_url=os.getenv("GP_ALERT_WEBHOOK_URL") or None,
            alert_webhook_type=os.getenv("GP_ALERT_WEBHOOK_TYPE", "generic"),
        )
        cfg._validate()
        _log_loaded(cfg)
        return cfg

    def _validate(self) -> None:
        if self.tick_interval_sec <= 0:
            raise ConfigError("GP_TICK_INTERVAL_SEC must be > 0")
        if self.persist_interval_ms < 0:
            raise ConfigError("GP_PERSIST_INTERVAL_MS must be >= 0")
        if self.stale_after_ms <= 0:
            raise ConfigError("GP_STALE_AFTER_MS must be > 0")
        if self.feed_stale_alert_sec <= 0:
            raise ConfigError("GP_FEED_STALE_ALERT_SEC must be > 0")
        if self.order_history_limit <= 0:
            raise ConfigError("GP_ORDER_HISTORY_LIMIT must be > 0")
        if self.equity_max_points <= 0:
            raise ConfigError("GP_EQUITY_MAX_POINTS must be > 0")
        if self.sink_queue_size <= 0:
            raise ConfigError("GP_SINK_QUEUE_SIZE must be > 0")
        if self.http_timeout <= 0:
            raise ConfigError("GP_HTTP_TIMEOUT must be > 0")
        if self.alert_webhook_type not in {"generic", "slack", "discord"}:
            raise ConfigError("GP_ALERT_WEBHOOK_TYPE must be generic, slack or discord")


def _log_loaded(cfg: Settings) -> None:
    """Log the effective settings once at startup so overrides are obvious."""
    logger = logging.getLogger("gridpilot")
    payload = {
        "event": "config_loaded",
        "data_dir": cfg.data_dir,
        "owner": cfg.owner,
        "tick_interval_sec": cfg.tick_interval_sec,
        "stale_after_ms": cfg.stale_after_ms,
        "metrics_port": cfg.metrics_port,
    }
    logger.info(dumps(payload))

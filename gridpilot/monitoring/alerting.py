"""
Outbound alert delivery.

- Alert types and severities used by the control loop
- Telegram (HTML text) and generic/Slack/Discord webhook notifiers over aiohttp
- Fan-out to several notifiers; a failing notifier never blocks the others

Senders raise on delivery failure. The orchestrator runs them through the
best-effort sink, which logs and swallows the error.
"""

from __future__ import annotations

import asyncio
import html
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from gridpilot.core.utils import now_ms
from gridpilot.infra.logging_cfg import log_event

log = logging.getLogger("gridpilot")

TELEGRAM_API = "https://api.telegram.org"


class AlertType(str, Enum):
    ORDER_PLACED = "order_placed"
    ORDER_REJECTED = "order_rejected"
    RISK_STOP = "risk_stop"
    MANUAL_STOP = "manual_stop"
    CIRCUIT_BREAKER_WARNING = "circuit_breaker_warning"
    STALE_FEED = "stale_feed"
    FLATTEN_FAILED = "flatten_failed"
    INVALID_CONFIG = "invalid_config"
    STARTUP = "startup"
    SHUTDOWN = "shutdown"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


_SEVERITY_ICON = {
    AlertSeverity.CRITICAL: "🚨",
    AlertSeverity.WARNING: "⚠️",
    AlertSeverity.INFO: "ℹ️",
}


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str = ""
    bot_id: Optional[str] = None
    symbol: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp_ms: int = field(default_factory=now_ms)

    def render(self) -> str:
        """Telegram-style HTML text."""
        lines = [f"{_SEVERITY_ICON.get(self.severity, '')} <b>{html.escape(self.title)}</b>".strip()]
        if self.bot_id:
            lines.append(f"<b>Bot:</b> {html.escape(self.bot_id)}")
        if self.symbol:
            lines.append(f"<b>Symbol:</b> {html.escape(self.symbol)}")
        if self.message:
            lines.append(html.escape(self.message))
        for key, value in self.details.items():
            if value is None:
                continue
            lines.append(f"<b>{html.escape(str(key))}:</b> {html.escape(str(value))}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "bot": self.bot_id,
            "symbol": self.symbol,
            "details": dict(self.details),
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
        }


class Notifier(Protocol):
    async def send_alert(self, alert: Alert) -> None: ...


class LogNotifier:
    """Writes alerts to the process log. Always configured."""

    async def send_alert(self, alert: Alert) -> None:
        level = logging.WARNING if alert.severity is not AlertSeverity.INFO else logging.INFO
        log_event(log, "alert", level=level, **alert.to_dict())


class TelegramNotifier:
    def __init__(self, token: str, chat_id: str, timeout: float = 10.0, api_base: str = TELEGRAM_API) -> None:
        self.token = token
        self.chat_id = chat_id
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")

    async def send_text(self, text: str) -> None:
        url = f"{self.api_base}/bot{self.token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                body = await resp.json(content_type=None)
                if resp.status >= 300 or (isinstance(body, dict) and body.get("ok") is False):
                    desc = body.get("description") if isinstance(body, dict) else None
                    raise RuntimeError(f"telegram send failed: {desc or resp.status}")

    async def send_alert(self, alert: Alert) -> None:
        await self.send_text(alert.render())


class WebhookFormatter:
    """Payload shapes for the supported webhook types."""

    @staticmethod
    def format_generic(alert: Alert) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def format_slack(alert: Alert) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: "#FF0000",
            AlertSeverity.WARNING: "#FFA500",
            AlertSeverity.INFO: "#0000FF",
        }.get(alert.severity, "#808080")
        fields = [{"title": "Type", "value": alert.alert_type.value, "short": True}]
        if alert.bot_id:
            fields.append({"title": "Bot", "value": alert.bot_id, "short": True})
        for key, value in list(alert.details.items())[:5]:
            fields.append({"title": key, "value": str(value), "short": True})
        return {
            "username": "GridPilot",
            "attachments": [{
                "color": color,
                "title": f"{_SEVERITY_ICON.get(alert.severity, '')} {alert.title}",
                "text": alert.message,
                "fields": fields,
                "ts": alert.timestamp_ms // 1000,
            }],
        }

    @staticmethod
    def format_discord(alert: Alert) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: 0xFF0000,
            AlertSeverity.WARNING: 0xFFA500,
            AlertSeverity.INFO: 0x0000FF,
        }.get(alert.severity, 0x808080)
        fields = [{"name": "Type", "value": alert.alert_type.value, "inline": True}]
        if alert.bot_id:
            fields.append({"name": "Bot", "value": alert.bot_id, "inline": True})
        for key, value in list(alert.details.items())[:5]:
            fields.append({"name": key, "value": str(value), "inline": True})
        return {
            "username": "GridPilot",
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "fields": fields,
            }],
        }


class WebhookNotifier:
    def __init__(self, url: str, webhook_type: str = "generic", timeout: float = 10.0, retries: int = 1) -> None:
        self.url = url
        self.webhook_type = webhook_type
        self.timeout = timeout
        self.retries = retries

    def format(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        return formatters.get(self.webhook_type, WebhookFormatter.format_generic)(alert)

    async def send_alert(self, alert: Alert) -> None:
        payload = self.format(alert)
        last_err: Optional[str] = None
        async with aiohttp.ClientSession() as session:
            for attempt in range(self.retries + 1):
                try:
                    async with session.post(
                        self.url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as resp:
                        if resp.status < 300:
                            return
                        last_err = f"HTTP {resp.status}"
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    last_err = str(exc) or type(exc).__name__
                if attempt < self.retries:
                    await asyncio.sleep(1 * (attempt + 1))
        raise RuntimeError(f"webhook delivery failed: {last_err}")


class MultiNotifier:
    """Send to every notifier; raise once at the end if any failed."""

    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self.notifiers: List[Notifier] = list(notifiers)

    async def send_alert(self, alert: Alert) -> None:
        results = await asyncio.gather(
            *(n.send_alert(alert) for n in self.notifiers),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            raise RuntimeError("; ".join(str(e) for e in errors))


def build_notifier(
    telegram_token: Optional[str] = None,
    telegram_chat_id: Optional[str] = None,
    webhook_url: Optional[str] = None,
    webhook_type: str = "generic",
    timeout: float = 10.0,
) -> MultiNotifier:
    notifiers: List[Notifier] = [LogNotifier()]
    if telegram_token and telegram_chat_id:
        notifiers.append(TelegramNotifier(telegram_token, telegram_chat_id, timeout=timeout))
    if webhook_url:
        notifiers.append(WebhookNotifier(webhook_url, webhook_type=webhook_type, timeout=timeout))
    return MultiNotifier(notifiers)

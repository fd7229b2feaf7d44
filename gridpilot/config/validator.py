"""
Startup checks for worker settings and the bot configs about to trade.

Errors block startup. Warnings are logged and the worker starts anyway:
a bad bot config is handled per bot by the orchestrator (`invalid_config`),
so it never takes the whole worker down.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Tuple

from gridpilot.core.errors import ConfigError
from gridpilot.core.models import BotConfig

logger = logging.getLogger("gridpilot")


class ValidationSeverity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None

    def describe(self) -> str:
        text = f"{self.field}: {self.message}"
        return f"{text} ({self.suggestion})" if self.suggestion else text


@dataclass
class ValidationResult:
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.get_errors()

    def _of(self, severity: ValidationSeverity) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity is severity]

    def get_errors(self) -> List[ValidationIssue]:
        return self._of(ValidationSeverity.ERROR)

    def get_warnings(self) -> List[ValidationIssue]:
        return self._of(ValidationSeverity.WARNING)

    def has_errors(self) -> bool:
        return bool(self.get_errors())

    def has_warnings(self) -> bool:
        return bool(self.get_warnings())


Check = Callable[[Any], Optional[List[ValidationIssue]]]


class ConfigValidator:
    """Runs every check against a `Settings` and an optional list of bots."""

    # field -> (min, max); out of range is an error
    LIMITS = {
        "tick_interval_sec": (0.2, 60.0),
        "persist_interval_ms": (0, 60_000),
        "stale_after_ms": (1000, 120_000),
        "feed_stale_alert_sec": (1.0, 3600.0),
        "equity_interval_sec": (5.0, 86_400.0),
        "equity_max_points": (10, 1_000_000),
        "order_history_limit": (1, 10_000),
        "alert_cooldown_sec": (0.0, 86_400.0),
        "http_timeout": (1.0, 120.0),
        "sink_queue_size": (1, 100_000),
    }

    NON_EMPTY = ("data_dir", "delta_india_base_url", "delta_global_base_url")

    # setting A without setting B is an error
    PAIRED: Tuple[Tuple[str, str], ...] = (
        ("telegram_bot_token", "telegram_chat_id"),
        ("delta_india_api_key", "delta_india_api_secret"),
        ("delta_global_api_key", "delta_global_api_secret"),
    )

    MAX_SAFE_LEVERAGE = 25.0

    def __init__(self) -> None:
        self._extra: List[Check] = []

    def register_validator(self, check: Check) -> None:
        self._extra.append(check)

    def validate(self, cfg, bots: Iterable[BotConfig] = ()) -> ValidationResult:
        bots = list(bots)
        result = ValidationResult()
        result.issues += self._settings_issues(cfg)
        result.issues += self._credential_issues(cfg, bots)
        for bot in bots:
            result.issues += self._bot_issues(bot)
        for check in self._extra:
            try:
                result.issues += check(cfg) or []
            except Exception as exc:
                logger.warning(f"config check {getattr(check, '__name__', check)!r} raised: {exc}")
        return result

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def _settings_issues(self, cfg) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        err = ValidationSeverity.ERROR

        for name in self.NON_EMPTY:
            if not str(getattr(cfg, name, "") or "").strip():
                issues.append(ValidationIssue(name, "must not be empty", err))

        for name, (lo, hi) in self.LIMITS.items():
            value = getattr(cfg, name, None)
            if value is not None and not lo <= value <= hi:
                issues.append(ValidationIssue(name, f"{value} outside [{lo}, {hi}]", err, value=value))

        for have, need in self.PAIRED:
            if getattr(cfg, have, None) and not getattr(cfg, need, None):
                issues.append(ValidationIssue(need, f"required when {have} is set", err))

        tick_ms = cfg.tick_interval_sec * 1000.0
        if cfg.stale_after_ms <= tick_ms:
            issues.append(ValidationIssue(
                "stale_after_ms",
                f"{cfg.stale_after_ms} ms does not exceed one tick ({tick_ms:.0f} ms)",
                err,
                value=cfg.stale_after_ms,
                suggestion="every order would be refused as bot_stale",
            ))
        if cfg.feed_stale_alert_sec * 1000.0 < 3 * tick_ms:
            issues.append(ValidationIssue(
                "feed_stale_alert_sec",
                "shorter than three ticks, stale-feed alerts will be noisy",
                ValidationSeverity.WARNING,
                value=cfg.feed_stale_alert_sec,
            ))
        if not cfg.telegram_bot_token and not cfg.alert_webhook_url:
            issues.append(ValidationIssue(
                "telegram_bot_token",
                "no alert channel configured, alerts go to the log only",
                ValidationSeverity.INFO,
            ))
        return issues

    def _credential_issues(self, cfg, bots: List[BotConfig]) -> List[ValidationIssue]:
        issues = []
        for venue in sorted({b.exchange for b in bots if b.is_live}):
            if getattr(cfg, f"{venue}_api_key", None) and getattr(cfg, f"{venue}_api_secret", None):
                continue
            issues.append(ValidationIssue(
                f"{venue}_api_key",
                f"live bots on {venue} but no API credentials",
                ValidationSeverity.ERROR,
                suggestion=f"set {venue.upper()}_API_KEY and {venue.upper()}_API_SECRET",
            ))
        return issues

    # ------------------------------------------------------------------
    # Bots
    # ------------------------------------------------------------------

    def _bot_issues(self, bot: BotConfig) -> List[ValidationIssue]:
        label = f"bot:{bot.symbol or '?'}"
        warn = ValidationSeverity.WARNING
        try:
            bot.validate()
        except ConfigError as exc:
            return [ValidationIssue(label, f"invalid config: {exc}", warn, suggestion="bot will stop with invalid_config")]

        issues = []
        if bot.leverage > self.MAX_SAFE_LEVERAGE:
            issues.append(ValidationIssue(f"{label}.leverage", f"{bot.leverage:g}x is above {self.MAX_SAFE_LEVERAGE:g}x", warn, value=bot.leverage))
        if bot.is_live and bot.circuit_breaker_pct <= 0 and bot.max_consecutive_loss <= 0:
            issues.append(ValidationIssue(f"{label}.circuit_breaker_pct", "live bot with no breaker and no loss-streak limit", warn))
        if bot.circuit_breaker_pct > 0 and bot.investment <= 0:
            issues.append(ValidationIssue(
                f"{label}.investment",
                "circuit breaker has no investment baseline and never trips",
                warn,
                suggestion="set investment to the capital allocated to the bot",
            ))
        return issues


def validate_config(cfg, bots: Iterable[BotConfig] = ()) -> ValidationResult:
    return ConfigValidator().validate(cfg, bots)


def validate_and_log(cfg, bots: Iterable[BotConfig] = (), logger_instance: Optional[logging.Logger] = None) -> bool:
    """Log every error and warning; True when nothing blocks startup."""
    log = logger_instance or logger
    result = validate_config(cfg, bots)
    for issue in result.get_errors():
        log.error(f"CONFIG ERROR {issue.describe()}")
    for issue in result.get_warnings():
        log.warning(f"CONFIG WARNING {issue.describe()}")
    if result.valid:
        log.info(f"config ok ({len(result.get_warnings())} warning(s))")
    else:
        log.error(f"config invalid: {len(result.get_errors())} error(s)")
    return result.valid

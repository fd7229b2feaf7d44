"""Unit tests for Prometheus metrics and structured logging helpers."""

import json
import logging
from unittest.mock import MagicMock

from prometheus_client import CollectorRegistry

from gridpilot.infra.logging_cfg import JsonFormatter, ThrottledFilter, build_logger, log_event
from gridpilot.monitoring.metrics import GridMetrics


def record(msg, level=logging.WARNING):
    return logging.LogRecord("gridpilot", level, __file__, 1, msg, None, None)


def event(name, **data):
    return json.dumps({"event": name, **data})


class TestGridMetrics:

    def test_private_registries_do_not_collide(self):
        a = GridMetrics()
        b = GridMetrics()
        a.ticks.inc()
        assert a.registry.get_sample_value("orchestrator_ticks_total") == 1.0
        assert b.registry.get_sample_value("orchestrator_ticks_total") == 0.0

    def test_labelled_counters(self):
        reg = CollectorRegistry()
        metrics = GridMetrics(registry=reg)
        metrics.orders_placed.labels(bot="bot-1", side="buy", execution="paper").inc()
        metrics.orders_placed.labels(bot="bot-1", side="buy", execution="paper").inc()
        metrics.guard_refusals.labels(bot="bot-1", code="bot_stale").inc()
        assert reg.get_sample_value(
            "orders_placed_total", {"bot": "bot-1", "side": "buy", "execution": "paper"}
        ) == 2.0
        assert reg.get_sample_value("guard_refusals_total", {"bot": "bot-1", "code": "bot_stale"}) == 1.0

    def test_tick_histogram(self):
        metrics = GridMetrics()
        metrics.tick_duration_ms.observe(42.0)
        assert metrics.registry.get_sample_value("orchestrator_tick_duration_ms_count") == 1.0
        assert metrics.registry.get_sample_value("orchestrator_tick_duration_ms_sum") == 42.0

    def test_forget_bot(self):
        metrics = GridMetrics()
        metrics.realized_pnl.labels(bot="bot-1").set(12.5)
        metrics.last_price.labels(bot="bot-1").set(45000)
        metrics.forget_bot("bot-1")
        metrics.forget_bot("never-seen")
        assert metrics.registry.get_sample_value("bot_realized_pnl", {"bot": "bot-1"}) is None
        assert metrics.registry.get_sample_value("bot_last_price", {"bot": "bot-1"}) is None


class TestThrottledFilter:

    def test_repeat_suppressed_per_bot(self):
        f = ThrottledFilter(cooldown_sec=60)
        assert f.filter(record(event("price_fetch_error", bot="a")))
        assert not f.filter(record(event("price_fetch_error", bot="a")))
        assert f.filter(record(event("price_fetch_error", bot="b")))

    def test_other_events_pass(self):
        f = ThrottledFilter(cooldown_sec=60)
        for _ in range(3):
            assert f.filter(record(event("order_placed", bot="a")))

    def test_plain_and_broken_messages_pass(self):
        f = ThrottledFilter(cooldown_sec=60)
        assert f.filter(record("plain text"))
        assert f.filter(record("{not json"))
        assert f.filter(record("[1, 2]"))

    def test_zero_cooldown(self):
        f = ThrottledFilter(cooldown_sec=0)
        assert f.filter(record(event("store_load_error")))
        assert f.filter(record(event("store_load_error")))


class TestStructuredLogging:

    def test_log_event_payload(self):
        logger = MagicMock()
        logger.isEnabledFor.return_value = True
        log_event(logger, "order_placed", bot="bot-1", size=3)
        level, msg = logger.log.call_args[0]
        assert level == logging.INFO
        assert json.loads(msg) == {"event": "order_placed", "bot": "bot-1", "size": 3}

    def test_log_event_skips_disabled_level(self):
        logger = MagicMock()
        logger.isEnabledFor.return_value = False
        log_event(logger, "tick", level=logging.DEBUG)
        logger.log.assert_not_called()

    def test_json_formatter_plain_message(self):
        out = json.loads(JsonFormatter().format(record("hello", level=logging.ERROR)))
        assert out["level"] == "ERROR"
        assert out["msg"] == "hello"
        assert out["logger"] == "gridpilot"

    def test_json_formatter_lifts_event_fields(self):
        out = json.loads(JsonFormatter().format(record(event("order_placed", bot="7", size=3))))
        assert out["event"] == "order_placed"
        assert out["bot"] == "7"
        assert out["size"] == 3
        assert "msg" not in out

    def test_build_logger_is_idempotent(self):
        name = "gridpilot.test-build"
        logger = build_logger(level=logging.DEBUG, file_path=None, name=name)
        handlers = list(logger.handlers)
        again = build_logger(level=logging.WARNING, file_path=None, name=name)
        assert again is logger
        assert again.handlers == handlers
        assert all(h.level == logging.WARNING for h in again.handlers)
        assert logger.propagate is False

"""
Tests for the stateless risk checks and their precedence.
"""

from dataclasses import replace

import pytest

from gridpilot.core.models import BotConfig
from gridpilot.risk.risk_evaluator import (
    RiskAction,
    check_circuit_breaker,
    check_loss_streak,
    check_out_of_range,
    drawdown_pct,
    evaluate,
)


@pytest.fixture
def cfg():
    return BotConfig(
        symbol="BTCUSD",
        lower=40000,
        upper=50000,
        grid_count=11,
        max_consecutive_loss=3,
        circuit_breaker_pct=10,
        investment=1000,
    )


class TestChecks:

    def test_out_of_range(self):
        assert check_out_of_range(39999, 40000, 50000).reason == "out_of_range"
        assert check_out_of_range(50001, 40000, 50000).should_stop
        assert check_out_of_range(40000, 40000, 50000) is None
        assert check_out_of_range(50000, 40000, 50000) is None

    def test_loss_streak(self):
        assert check_loss_streak(2, 3) is None
        verdict = check_loss_streak(3, 3)
        assert verdict.should_stop
        assert verdict.reason == "max_consecutive_loss_3"
        assert check_loss_streak(10, 0) is None

    def test_drawdown_pct(self):
        assert drawdown_pct(-50, -50, 1000) == pytest.approx(-10.0)
        assert drawdown_pct(-50, 0, 0) is None

    def test_circuit_breaker_stop(self):
        verdict = check_circuit_breaker(-60, -40, 1000, 10)
        assert verdict.action is RiskAction.STOP
        assert verdict.reason == "circuit_breaker_10%"
        assert verdict.drawdown_pct == pytest.approx(-10.0)

    def test_circuit_breaker_reason_formats_fraction(self):
        verdict = check_circuit_breaker(-100, 0, 1000, 7.5)
        assert verdict.reason == "circuit_breaker_7.5%"

    def test_circuit_breaker_warning_band(self):
        verdict = check_circuit_breaker(-85, 0, 1000, 10)
        assert verdict.action is RiskAction.WARN
        assert not verdict.should_stop
        assert check_circuit_breaker(-79, 0, 1000, 10) is None

    def test_circuit_breaker_disabled(self):
        assert check_circuit_breaker(-900, 0, 1000, 0) is None
        assert check_circuit_breaker(-900, 0, 0, 10) is None


class TestEvaluate:

    def test_healthy(self, cfg):
        verdict = evaluate(cfg, 45000, 0, 10, -5)
        assert verdict.action is RiskAction.CONTINUE
        assert verdict.reason is None

    def test_out_of_range_wins_over_loss_streak(self, cfg):
        verdict = evaluate(cfg, 39000, 5, -500, -500)
        assert verdict.reason == "out_of_range"

    def test_loss_streak_wins_over_breaker(self, cfg):
        verdict = evaluate(cfg, 45000, 3, -500, -500)
        assert verdict.reason == "max_consecutive_loss_3"

    def test_breaker(self, cfg):
        verdict = evaluate(cfg, 45000, 0, -200, 0)
        assert verdict.reason == "circuit_breaker_10%"

    def test_warning(self, cfg):
        verdict = evaluate(replace(cfg, max_consecutive_loss=0), 45000, 9, -90, 0)
        assert verdict.action is RiskAction.WARN

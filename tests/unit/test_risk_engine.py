"""Unit tests for the portfolio risk engine.

Tests cover:
- Hard-limit admission rules and the composite score
- Fail-closed handling of bad input and evaluation errors
- Exposure reservations
- Portfolio metric updates and limit violation events
- Limit updates and reporting
"""
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from portfolio_bot.core.config import RiskLimitsConfig
from portfolio_bot.core.errors import ValidationError
from portfolio_bot.core.models import MarketData, RiskLimits, Severity
from portfolio_bot.risk.risk_engine import RiskEngine, create_risk_engine


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def open_book(make_position):
    """Factory for ``count`` open USDT/ETH positions of ``size`` each."""
    def _make(count, size="1000"):
        return [make_position(amount_in=size, entry_price="1000") for _ in range(count)]
    return _make


# =============================================================================
# Admission
# =============================================================================

class TestHardLimits:
    """Hard limits reject at the maximum score."""

    def test_small_trade_on_empty_portfolio_allowed(self, risk_engine):
        result = risk_engine.check_trade_admission("USDT", "ETH", 10, 5)

        assert result.allowed
        assert result.risk_score < 80
        assert result.position_value == Decimal("50")
        assert "Low liquidity" in result.reason

    def test_position_size_limit(self, risk_engine):
        result = risk_engine.check_trade_admission("USDT", "ETH", 50, 25)

        assert not result.allowed
        assert result.risk_score == 100.0
        assert "exceeds maximum 1000" in result.reason

    @pytest.mark.parametrize("amount,price", [(10, 5), (50, 25)])
    def test_check_leaves_portfolio_state(self, risk_engine, open_book, amount, price):
        risk_engine.update_portfolio_metrics(open_book(2, "1000"))
        metrics, limits = risk_engine.metrics, risk_engine.limits
        high_water_mark = risk_engine.high_water_mark

        risk_engine.check_trade_admission("USDT", "ETH", amount, price)

        assert risk_engine.metrics == metrics
        assert risk_engine.limits == limits
        assert risk_engine.high_water_mark == high_water_mark
        assert risk_engine.pending_exposure == Decimal("0")

    def test_total_exposure_limit(self, risk_engine, open_book):
        risk_engine.update_portfolio_metrics(open_book(9, "1000") + open_book(1, "500"))

        result = risk_engine.check_trade_admission("USDT", "ETH", 1, 1000)

        assert not result.allowed
        assert result.risk_score == 100.0
        assert "Total exposure" in result.reason

    def test_daily_loss_limit(self, risk_engine, closed_position):
        risk_engine.update_portfolio_metrics([closed_position(amount_in="1000", amount_out="400")])

        result = risk_engine.check_trade_admission("USDT", "ETH", 10, 5)

        assert not result.allowed
        assert result.risk_score == 100.0
        assert "Daily loss" in result.reason

    def test_drawdown_limit(self, risk_engine, make_position):
        position = make_position(amount_in="1000", entry_price="10")
        risk_engine.update_portfolio_metrics([position])
        position.mark(Decimal("8"))
        risk_engine.update_portfolio_metrics([position])

        result = risk_engine.check_trade_admission("USDT", "ETH", 10, 5)

        assert not result.allowed
        assert "Drawdown" in result.reason

    def test_rules_checked_in_priority_order(self, risk_engine, closed_position):
        """An oversized trade is reported as such even with daily loss breached."""
        risk_engine.update_portfolio_metrics([closed_position(amount_in="1000", amount_out="400")])

        result = risk_engine.check_trade_admission("USDT", "ETH", 50, 25)

        assert "Position size" in result.reason


class TestCompositeScore:

    def test_liquidity_observation_removes_penalty(self, risk_engine):
        risk_engine.observe_market("USDT", "ETH", MarketData(
            token_in="USDT", token_out="ETH", price=Decimal("2000"), volume=Decimal("50000"),
        ))

        result = risk_engine.check_trade_admission("USDT", "ETH", 10, 5)

        assert result.allowed
        assert result.reason == ""
        assert result.risk_score == pytest.approx(1.625)

    def test_score_above_threshold_rejected(self, risk_engine, open_book):
        """Correlation and liquidity penalties can push a trade over 80 without a hard limit."""
        risk_engine.update_portfolio_metrics(open_book(8, "1000"))

        result = risk_engine.check_trade_admission("USDT", "ETH", Decimal("0.9"), 1000)

        assert not result.allowed
        assert result.risk_score == pytest.approx(84.25)
        assert "High correlation risk" in result.reason
        assert "exceeds threshold" in result.reason

    def test_scores_stay_in_range(self, risk_engine, open_book, closed_position):
        risk_engine.update_portfolio_metrics(
            open_book(5, "900") + [closed_position(amount_in="500", amount_out="300")]
        )
        for amount in ["0.001", "1", "3", "40"]:
            for price in ["0.5", "10", "99"]:
                result = risk_engine.check_trade_admission("USDT", "ETH", amount, price)
                assert 0 <= result.risk_score <= 100


class TestFailClosed:

    @pytest.mark.parametrize("amount,price", [
        (0, 10),
        (-1, 10),
        (10, 0),
        ("abc", 10),
        (None, 10),
        (float("nan"), 10),
        (float("inf"), 10),
    ])
    def test_invalid_inputs_rejected(self, risk_engine, amount, price):
        result = risk_engine.check_trade_admission("USDT", "ETH", amount, price)

        assert not result.allowed
        assert result.risk_score == 100.0

    def test_evaluation_error_rejects(self, risk_engine, monitoring, monkeypatch):
        def boom(*args):
            raise RuntimeError("metric failure")

        monkeypatch.setattr(risk_engine, "_composite_score", boom)

        result = risk_engine.check_trade_admission("USDT", "ETH", 10, 5)

        assert not result.allowed
        assert result.risk_score == 100.0
        assert result.reason == RiskEngine.EVALUATION_ERROR
        events = monitoring.get_security_events(severity=Severity.HIGH)
        assert len(events) == 1
        assert "metric failure" in events[0].message


class TestReservations:

    @pytest.fixture
    def engine(self, monitoring):
        return RiskEngine(limits=RiskLimits(max_total_exposure=Decimal("1000")), event_sink=monitoring)

    def test_reservation_blocks_concurrent_overflow(self, engine):
        first = engine.reserve_trade("USDT", "ETH", 1, 600)
        second = engine.reserve_trade("USDT", "ETH", 1, 600)

        assert first.allowed and first.reservation_id
        assert not second.allowed
        assert second.reservation_id is None
        assert engine.pending_exposure == Decimal("600")

    def test_release_frees_exposure(self, engine):
        first = engine.reserve_trade("USDT", "ETH", 1, 600)
        engine.release_reservation(first.reservation_id)

        assert engine.pending_exposure == Decimal("0")
        assert engine.reserve_trade("USDT", "ETH", 1, 600).allowed

    def test_commit_holds_until_next_snapshot(self, engine, make_position):
        first = engine.reserve_trade("USDT", "ETH", 1, 600)
        engine.commit_reservation(first.reservation_id)

        assert engine.pending_exposure == Decimal("600")
        engine.update_portfolio_metrics([make_position(amount_in="600")])
        assert engine.pending_exposure == Decimal("0")
        assert engine.metrics.total_exposure == Decimal("600")

    def test_unknown_reservation_ids_ignored(self, engine):
        engine.commit_reservation(None)
        engine.release_reservation("missing")
        assert engine.pending_exposure == Decimal("0")

    def test_threaded_reservations_never_overflow(self, monitoring):
        engine = RiskEngine(event_sink=monitoring)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: engine.reserve_trade("USDT", "ETH", 1, 600), range(20)))

        assert sum(1 for r in results if r.allowed) == 16
        assert engine.pending_exposure <= Decimal("10000")


# =============================================================================
# Metrics
# =============================================================================

class TestPortfolioMetrics:

    def test_metrics_recomputed_from_snapshot(self, risk_engine, make_position, closed_position):
        position = make_position(amount_in="1000", entry_price="10")
        position.mark(Decimal("11"))

        event = risk_engine.update_portfolio_metrics(
            [position, closed_position(amount_in="100", amount_out="120")]
        )

        metrics = risk_engine.metrics
        assert event is None
        assert metrics.total_value == Decimal("1220")
        assert metrics.total_exposure == Decimal("1000")
        assert metrics.daily_pnl == Decimal("20")
        assert metrics.open_positions == 1
        assert metrics.realized_positions == 1
        assert metrics.win_rate == 1.0
        assert risk_engine.high_water_mark == Decimal("1220")

    def test_update_is_idempotent(self, risk_engine, make_position, closed_position):
        positions = [make_position(amount_in="500"), closed_position(amount_in="100", amount_out="80")]

        risk_engine.update_portfolio_metrics(positions)
        first = risk_engine.metrics
        risk_engine.update_portfolio_metrics(positions)

        assert risk_engine.metrics == first

    def test_archived_proceeds_count_toward_value(self, risk_engine, make_position):
        risk_engine.update_portfolio_metrics([make_position(amount_in="500")], archived_value=Decimal("300"))

        assert risk_engine.metrics.total_value == Decimal("800")
        assert risk_engine.metrics.total_exposure == Decimal("500")
        assert risk_engine.high_water_mark == Decimal("800")
        assert risk_engine.metrics.max_drawdown == 0.0

    def test_snapshot_is_copied(self, risk_engine, make_position):
        position = make_position(amount_in="500")
        risk_engine.update_portfolio_metrics([position])

        position.mark(Decimal("1"))

        assert risk_engine.positions()[0].current_price == Decimal("10")

    def test_metrics_property_returns_copy(self, risk_engine, make_position):
        risk_engine.update_portfolio_metrics([make_position(amount_in="500")])

        copy = risk_engine.metrics
        copy.correlation_matrix["X|Y"] = 1.0

        assert risk_engine.metrics.correlation_matrix == {}

    def test_exposure_violation_emits_event(self, risk_engine, monitoring, open_book):
        event = risk_engine.update_portfolio_metrics(open_book(12, "1000"))

        assert event is not None
        assert event.severity == Severity.HIGH
        assert event.type == "risk_management"
        assert "Total exposure" in event.message
        assert monitoring.get_security_events()[0].id == event.id

        result = risk_engine.check_trade_admission("USDT", "ETH", 1, 5)
        assert not result.allowed
        assert result.risk_score == 100.0


# =============================================================================
# Limits & Reporting
# =============================================================================

class TestLimits:

    def test_partial_update(self, risk_engine, monitoring):
        before = risk_engine.limits

        updated = risk_engine.update_risk_limits({"max_position_size": Decimal("2500")})

        assert updated.max_position_size == Decimal("2500")
        assert updated.max_daily_loss == before.max_daily_loss
        assert updated.max_total_exposure == before.max_total_exposure
        event = monitoring.get_security_events()[0]
        assert event.type == "configuration_change"
        assert event.severity == Severity.LOW
        assert event.metadata["changes"] == {"max_position_size": "2500"}

    @pytest.mark.parametrize("partial", [
        {"max_drawdown": 2},
        {"not_a_limit": 1},
        {"max_position_size": -5},
    ])
    def test_invalid_update_leaves_limits(self, risk_engine, partial):
        before = risk_engine.limits

        with pytest.raises(ValidationError):
            risk_engine.update_risk_limits(partial)

        assert risk_engine.limits == before

    def test_new_limits_apply_to_admission(self, risk_engine):
        risk_engine.update_risk_limits({"max_position_size": 2000})
        assert risk_engine.check_trade_admission("USDT", "ETH", 50, 25).allowed


class TestReporting:

    def test_empty_portfolio_report(self, risk_engine):
        report = risk_engine.get_risk_metrics()

        assert report.risk_score == 0.0
        assert report.recommendations == []

    def test_exposure_recommendation(self, risk_engine, open_book):
        risk_engine.update_portfolio_metrics(open_book(9, "1000"))

        report = risk_engine.get_risk_metrics()

        assert report.risk_score == pytest.approx(22.5)
        assert any("exposure limit" in r for r in report.recommendations)

    def test_status_counts_admissions(self, risk_engine):
        risk_engine.check_trade_admission("USDT", "ETH", 10, 5)
        risk_engine.check_trade_admission("USDT", "ETH", 50, 25)

        status = risk_engine.get_status()

        assert status["admissions_checked"] == 2
        assert status["admissions_rejected"] == 1
        assert len(risk_engine.rejected_trades) == 1

    def test_factory_uses_config(self):
        engine = create_risk_engine(RiskLimitsConfig(max_position_size=250.0, admission_threshold=60.0))

        assert engine.limits.max_position_size == Decimal("250")
        assert engine.admission_threshold == 60.0

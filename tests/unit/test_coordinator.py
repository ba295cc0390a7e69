"""Unit tests for the portfolio coordinator."""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from portfolio_bot.core.coordinator import PortfolioCoordinator
from portfolio_bot.core.errors import InvalidStateError, UnknownStrategyError, ValidationError
from portfolio_bot.core.models import (
    PortfolioMetrics,
    PortfolioState,
    PositionStatus,
    RiskLevel,
    RiskLimits,
    RiskReport,
    Severity,
    utc_now,
)


def _emergency_events(coordinator):
    return [e for e in coordinator.monitoring.get_security_events() if e.type == "emergency_stop"]


@pytest.fixture
def solo(coordinator, make_unit):
    """Coordinator with one unit that owns the whole allocation."""
    unit = make_unit("solo")
    coordinator.register_strategy(unit)
    coordinator.update_allocation("solo", {"allocation": 100})
    return unit


@pytest.fixture
def pair(coordinator, make_unit):
    """Coordinator with two equally weighted units, ``a`` and ``b``."""
    a, b = make_unit("a"), make_unit("b")
    coordinator.register_strategy(a)
    coordinator.register_strategy(b)
    return a, b


# =============================================================================
# Registry
# =============================================================================

class TestRegistry:

    def test_allocation_defaults_to_unit_config(self, coordinator, scripted_unit):
        allocation = coordinator.register_strategy(scripted_unit)

        assert allocation.name == "scripted"
        assert allocation.allocation == 50.0
        assert allocation.risk_level == RiskLevel.MEDIUM
        assert allocation.max_position_size == Decimal("1000")
        assert allocation.enabled

    def test_duplicate_name(self, coordinator, make_unit):
        coordinator.register_strategy(make_unit("dup"))

        with pytest.raises(ValidationError):
            coordinator.register_strategy(make_unit("dup"))

    def test_unknown_strategy(self, coordinator):
        with pytest.raises(UnknownStrategyError, match="Unknown strategy: nope"):
            coordinator.get_strategy("nope")


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, coordinator, pair):
        await coordinator.start()

        assert coordinator.state == PortfolioState.RUNNING
        assert all(unit.is_running for unit in pair)
        assert coordinator.get_status()["tasks"] == 4

        await coordinator.stop()

        assert coordinator.state == PortfolioState.STOPPED
        assert not any(unit.is_running for unit in pair)
        assert coordinator.get_status()["tasks"] == 0

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, coordinator, solo):
        await coordinator.start()
        await coordinator.start()

        assert coordinator.get_status()["tasks"] == 3
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, coordinator, solo):
        await coordinator.stop()
        assert coordinator.state == PortfolioState.STOPPED

    @pytest.mark.asyncio
    async def test_emergency_stop_closes_everything(self, coordinator, pair):
        a, b = pair
        await coordinator.start()
        await a.open_position(Decimal("100"), Decimal("2000"))
        await b.open_position(Decimal("200"), Decimal("2000"))

        assert await coordinator.emergency_stop("operator")

        assert coordinator.state == PortfolioState.EMERGENCY_STOPPED
        assert coordinator.emergency_reason == "operator"
        assert all(p.status == PositionStatus.STOPPED for p in coordinator.collect_positions())
        assert not any(unit.is_running for unit in pair)

        events = _emergency_events(coordinator)
        assert len(events) == 1
        assert events[0].severity == Severity.CRITICAL
        assert events[0].metadata["positions_closed"] == 2
        assert events[0].metadata["previous_state"] == "running"
        assert coordinator.risk_engine.metrics.open_positions == 0

    @pytest.mark.asyncio
    async def test_emergency_stop_is_idempotent(self, coordinator, solo):
        await coordinator.start()

        assert await coordinator.emergency_stop("first")
        assert not await coordinator.emergency_stop("second")

        assert coordinator.emergency_reason == "first"
        assert len(_emergency_events(coordinator)) == 1

    @pytest.mark.asyncio
    async def test_emergency_stop_while_stopped(self, coordinator, solo):
        await solo.initialize()
        position = await solo.open_position(Decimal("100"), Decimal("2000"))

        assert await coordinator.emergency_stop("manual")

        assert solo.positions[position.id].status == PositionStatus.STOPPED

    @pytest.mark.asyncio
    async def test_start_after_emergency_requires_restart(self, coordinator, solo):
        await coordinator.start()
        await coordinator.emergency_stop("test")

        with pytest.raises(InvalidStateError):
            await coordinator.start()

        await coordinator.restart()

        assert coordinator.state == PortfolioState.RUNNING
        assert coordinator.emergency_reason is None
        assert solo.is_running
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_in_flight_fill_is_closed(self, coordinator, make_unit, mock_gateway):
        release = asyncio.Event()
        entered = asyncio.Event()
        fill = mock_gateway.execute_trade.side_effect

        async def slow_fill(*args):
            entered.set()
            await release.wait()
            return fill(*args)

        mock_gateway.execute_trade.side_effect = slow_fill
        unit = make_unit("slow", on_evaluate=lambda u: u.open_position(Decimal("100"), Decimal("2000")))
        coordinator.register_strategy(unit)

        await coordinator.start()
        await asyncio.wait_for(entered.wait(), timeout=1)
        assert unit.in_tick

        asyncio.get_running_loop().call_later(0.05, release.set)
        assert await coordinator.emergency_stop("test")

        positions = unit.get_positions()
        assert len(positions) == 1
        assert positions[0].status == PositionStatus.STOPPED
        assert _emergency_events(coordinator)[0].metadata["positions_closed"] == 1

    @pytest.mark.asyncio
    async def test_start_waits_for_draining_stop(self, coordinator, make_unit):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def blocking_tick(unit):
            entered.set()
            await release.wait()

        unit = make_unit("slow", on_evaluate=blocking_tick)
        coordinator.register_strategy(unit)
        await coordinator.start()
        await asyncio.wait_for(entered.wait(), timeout=1)

        stopping = asyncio.create_task(coordinator.stop())
        await asyncio.sleep(0.01)
        starting = asyncio.create_task(coordinator.start())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        release.set()
        await stopping
        await starting

        assert coordinator.state == PortfolioState.RUNNING
        assert unit.is_running
        assert coordinator.get_status()["tasks"] == 3
        await coordinator.stop()
        assert not unit.is_running

    @pytest.mark.asyncio
    async def test_restart_during_emergency_drain_keeps_new_run(self, coordinator, make_unit):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def blocking_tick(unit):
            entered.set()
            await release.wait()

        unit = make_unit("slow", on_evaluate=blocking_tick)
        coordinator.register_strategy(unit)
        await coordinator.start()
        await asyncio.wait_for(entered.wait(), timeout=1)

        stopping = asyncio.create_task(coordinator.emergency_stop("drill"))
        await asyncio.sleep(0.01)
        await coordinator.restart()
        release.set()
        assert await stopping

        assert coordinator.state == PortfolioState.RUNNING
        assert unit.is_running
        assert coordinator.get_status()["tasks"] == 3
        assert len(_emergency_events(coordinator)) == 1
        await coordinator.stop()


# =============================================================================
# Monitoring Cycle
# =============================================================================

class TestMonitoringCycle:

    @pytest.mark.asyncio
    async def test_cycle_updates_metrics(self, coordinator, solo):
        await solo.initialize()
        await solo.open_position(Decimal("100"), Decimal("2000"))

        report = await coordinator.run_monitoring_cycle()

        assert coordinator.cycles_run == 1
        assert coordinator.last_cycle_at is not None
        assert report.metrics.total_exposure == Decimal("100")
        assert coordinator.risk_engine.pending_exposure == Decimal("0")

    @pytest.mark.asyncio
    async def test_no_emergency_action_unless_running(self, coordinator, solo, market):
        await solo.initialize()
        await solo.open_position(Decimal("500"), Decimal("2000"))
        await coordinator.run_monitoring_cycle()

        market["prices"]["ETH"] = Decimal("1000")
        await solo.refresh_positions()
        await coordinator.run_monitoring_cycle()

        assert coordinator.state == PortfolioState.STOPPED
        assert coordinator.risk_engine.metrics.max_drawdown == 0.5

    @pytest.mark.asyncio
    async def test_drawdown_triggers_emergency_stop(self, coordinator, solo, market):
        await coordinator.start()
        await solo.open_position(Decimal("500"), Decimal("2000"))
        await coordinator.run_monitoring_cycle()

        market["prices"]["ETH"] = Decimal("1000")
        await solo.refresh_positions()
        await coordinator.run_monitoring_cycle()

        assert coordinator.state == PortfolioState.EMERGENCY_STOPPED
        assert coordinator.emergency_reason.startswith("Drawdown 0.5000")
        assert solo.open_positions() == []

    @pytest.mark.asyncio
    async def test_daily_loss_triggers_emergency_stop(self, coordinator, solo, market):
        await coordinator.start()
        loser = await solo.open_position(Decimal("500"), Decimal("2000"))
        await solo.open_position(Decimal("500"), Decimal("2000"))
        await coordinator.run_monitoring_cycle()

        # 1000 -> 800: drawdown exactly at the 20% threshold, daily loss 200 > 15% of 800
        market["prices"]["ETH"] = Decimal("1200")
        await solo.exit_position(loser.id)
        await coordinator.run_monitoring_cycle()

        assert coordinator.state == PortfolioState.EMERGENCY_STOPPED
        assert coordinator.emergency_reason.startswith("Daily loss 200")

    @pytest.mark.asyncio
    async def test_high_risk_units_disabled(self, coordinator, pair, monkeypatch):
        a, b = pair
        coordinator.update_allocation("a", {"risk_level": "high"})
        report = RiskReport(metrics=PortfolioMetrics(), limits=RiskLimits(), risk_score=85.0)
        monkeypatch.setattr(coordinator.risk_engine, "get_risk_metrics", lambda: report)
        await coordinator.start()

        await coordinator.run_monitoring_cycle()

        assert not coordinator.allocations["a"].enabled
        assert not a.enabled
        assert b.enabled
        disabled = [
            e for e in coordinator.monitoring.get_security_events(severity=Severity.MEDIUM)
            if "disabled" in e.message
        ]
        assert len(disabled) == 1
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_moderate_risk_keeps_units(self, coordinator, pair, monkeypatch):
        coordinator.update_allocation("a", {"risk_level": "high"})
        report = RiskReport(metrics=PortfolioMetrics(), limits=RiskLimits(), risk_score=70.0)
        monkeypatch.setattr(coordinator.risk_engine, "get_risk_metrics", lambda: report)
        await coordinator.start()

        await coordinator.run_monitoring_cycle()

        assert coordinator.allocations["a"].enabled
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_cycle_prunes_expired_history(self, coordinator, solo):
        expired = utc_now() - timedelta(hours=30)
        await solo.initialize()
        coordinator.monitoring.record_trade("solo", at=expired)
        old = await solo.open_position(Decimal("100"), Decimal("2000"))
        solo.close_position(old.id, price=Decimal("2200"))
        solo.positions[old.id].closed_at = expired
        kept = await solo.open_position(Decimal("100"), Decimal("2000"))
        assert coordinator.monitoring.get_metrics()["trade_history_size"] == 3

        first = await coordinator.run_monitoring_cycle()

        assert coordinator.monitoring.get_metrics()["trade_history_size"] == 2
        assert list(solo.positions) == [kept.id]
        assert solo.archived_value == Decimal("110")
        assert solo.get_performance_metrics().realized_pnl == Decimal("10")

        second = await coordinator.run_monitoring_cycle()

        assert first.metrics.total_value == second.metrics.total_value == Decimal("210")
        assert second.metrics.max_drawdown == 0.0


class TestRebalance:

    def test_needs_rebalance(self, coordinator, pair):
        assert not coordinator.needs_rebalance()

        coordinator.disable_strategy("b")

        assert coordinator.needs_rebalance()

    @pytest.mark.asyncio
    async def test_trims_oldest_position_of_over_allocated_unit(self, coordinator, pair):
        a, b = pair
        await a.initialize()
        await b.initialize()
        oldest = await a.open_position(Decimal("100"), Decimal("2000"))
        await a.open_position(Decimal("100"), Decimal("2000"))
        await a.open_position(Decimal("100"), Decimal("2000"))
        await b.open_position(Decimal("100"), Decimal("2000"))
        coordinator.risk_engine.update_portfolio_metrics(coordinator.collect_positions())

        closed = coordinator.rebalance()

        assert closed == 1
        assert not a.positions[oldest.id].is_open
        assert len(a.open_positions()) == 2
        assert len(b.open_positions()) == 1
        assert coordinator.rebalances == 1

    def test_nothing_to_trim(self, coordinator, pair):
        assert coordinator.rebalance() == 0


# =============================================================================
# Allocation & Reporting
# =============================================================================

class TestAllocation:

    def test_update_propagates_to_unit(self, coordinator, solo):
        allocation = coordinator.update_allocation("solo", {"max_position_size": 200, "risk_level": "low"})

        assert allocation.max_position_size == Decimal("200")
        assert solo.max_position_size == Decimal("200")
        assert solo.risk_level == RiskLevel.LOW

    def test_invalid_update_leaves_allocation(self, coordinator, solo):
        with pytest.raises(ValidationError):
            coordinator.update_allocation("solo", {"allocation": 150})

        assert coordinator.allocations["solo"].allocation == 100

    def test_unknown_strategy(self, coordinator):
        with pytest.raises(UnknownStrategyError):
            coordinator.update_allocation("nope", {"allocation": 10})

    def test_enable_disable(self, coordinator, solo):
        coordinator.disable_strategy("solo")
        assert not solo.enabled

        coordinator.enable_strategy("solo")
        assert solo.enabled


class TestReporting:

    @pytest.mark.asyncio
    async def test_portfolio_status(self, coordinator, pair):
        a, _ = pair
        await a.initialize()
        await a.open_position(Decimal("100"), Decimal("2000"))
        await coordinator.run_monitoring_cycle()

        status = coordinator.get_portfolio_status()

        assert status.state == PortfolioState.STOPPED
        assert not status.is_running
        assert status.total_value == Decimal("100")
        assert [s.name for s in status.strategies] == ["a", "b"]
        assert status.strategies[0].open_positions == 1

    @pytest.mark.asyncio
    async def test_diversification_violations(self, coordinator, pair):
        a, b = pair
        await a.initialize()
        await b.initialize()
        for _ in range(3):
            await a.open_position(Decimal("100"), Decimal("2000"))
        await b.open_position(Decimal("100"), Decimal("2000"))

        report = coordinator.get_diversification()

        assert report["total_exposure"] == "400"
        assert report["strategies"]["a"]["share"] == 0.75
        assert not report["strategies"]["a"]["within_limit"]
        assert report["strategies"]["b"]["within_limit"]
        assert report["tokens"]["ETH"]["share"] == 1.0
        assert "Strategy a holds 75% of exposure" in report["violations"]
        assert "Token ETH holds 100% of exposure" in report["violations"]


class TestPersistence:

    @pytest.mark.asyncio
    async def test_emergency_stop_is_persisted(self, risk_engine, monitoring, coordinator_config, make_unit, test_database):
        coordinator = PortfolioCoordinator(risk_engine, monitoring, config=coordinator_config, database=test_database)
        unit = make_unit()
        coordinator.register_strategy(unit)
        await unit.initialize()
        await unit.open_position(Decimal("100"), Decimal("2000"))

        await coordinator.emergency_stop("persist")

        events = await test_database.get_security_events(event_type="emergency_stop")
        positions = await test_database.get_positions()
        assert len(events) == 1
        assert [p.status for p in positions] == [PositionStatus.STOPPED]

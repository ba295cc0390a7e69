"""Portfolio coordinator - orchestrates strategy units under the risk engine."""
import asyncio
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

import pydantic
import structlog
from pydantic import BaseModel

from portfolio_bot.core.config import CoordinatorConfig
from portfolio_bot.core.errors import InvalidStateError, UnknownStrategyError, ValidationError
from portfolio_bot.core.models import (
    PortfolioState,
    PortfolioStatus,
    Position,
    PositionStatus,
    RiskLevel,
    RiskReport,
    SecurityEvent,
    Severity,
    StrategyAllocation,
    StrategyStatus,
    utc_now,
)
from portfolio_bot.risk.risk_engine import RiskEngine
from portfolio_bot.strategies.base import BaseStrategy
from portfolio_bot.utils.monitoring import MonitoringSystem

logger = structlog.get_logger(__name__)


class PortfolioCoordinator:
    """
    Portfolio-level state machine over a registry of strategy units.

    Responsibilities:
    - Drives STOPPED -> RUNNING -> (EMERGENCY_STOPPED | STOPPED)
    - Runs one tick task per unit plus a monitoring and an emergency task
    - Feeds position snapshots to the risk engine every monitoring cycle
    - Disables high-risk units under risk pressure and rebalances drift
    - Emergency-stops the whole portfolio on drawdown or daily loss

    Units never hold a reference back to the coordinator; they report to the
    monitoring sink and the coordinator reads copies of their positions.
    """

    def __init__(
        self,
        risk_engine: RiskEngine,
        monitoring: Optional[MonitoringSystem] = None,
        config: Optional[CoordinatorConfig] = None,
        database=None,
        disable_threshold: float = 70.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.risk_engine = risk_engine
        self.monitoring = monitoring or MonitoringSystem()
        self.config = config or CoordinatorConfig()
        self.database = database
        self.disable_threshold = disable_threshold
        self._clock = clock

        # Registry
        self.strategies: Dict[str, BaseStrategy] = {}
        self.allocations: Dict[str, StrategyAllocation] = {}

        # State
        self.state = PortfolioState.STOPPED
        self.emergency_reason: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.last_cycle_at: Optional[datetime] = None
        self.cycles_run = 0
        self.rebalances = 0

        # Control
        self._unit_tasks: Dict[str, asyncio.Task] = {}
        self._loop_tasks: List[asyncio.Task] = []
        self._draining: Set[asyncio.Task] = set()
        self._cycle_lock = asyncio.Lock()
        # Serializes start/stop/restart; bumped generation retires old loops
        self._lifecycle_lock = asyncio.Lock()
        self._generation = 0

    # === Registry ===

    def register_strategy(
        self, unit: BaseStrategy, allocation: Optional[StrategyAllocation] = None
    ) -> StrategyAllocation:
        """Add a unit; the allocation defaults to the unit's own config."""
        if unit.name in self.strategies:
            raise ValidationError(f"Strategy already registered: {unit.name}")

        if allocation is None:
            allocation = StrategyAllocation(
                name=unit.name,
                allocation=unit.config.allocation,
                risk_level=unit.risk_level,
                max_position_size=unit.max_position_size,
                enabled=unit.enabled,
            )
        self.strategies[unit.name] = unit
        self.allocations[unit.name] = allocation
        self._apply_allocation(unit, allocation)

        logger.info(
            "coordinator.strategy_registered",
            strategy=unit.name,
            allocation=allocation.allocation,
            risk_level=allocation.risk_level.value,
            enabled=allocation.enabled,
        )
        return allocation

    def get_strategy(self, name: str) -> BaseStrategy:
        try:
            return self.strategies[name]
        except KeyError:
            raise UnknownStrategyError(name) from None

    def collect_positions(self) -> List[Position]:
        """Snapshot copies of every unit's positions."""
        positions: List[Position] = []
        for unit in self.strategies.values():
            positions.extend(unit.get_positions())
        return positions

    @property
    def is_running(self) -> bool:
        return self.state == PortfolioState.RUNNING

    @property
    def total_value(self) -> Decimal:
        return self.risk_engine.metrics.total_value

    # === Lifecycle ===

    async def start(self):
        """Start every unit's tick loop plus the monitoring and emergency loops.

        Waits for a stop that is still draining in-flight ticks.
        """
        async with self._lifecycle_lock:
            await self._start()

    async def _start(self):
        if self.state == PortfolioState.EMERGENCY_STOPPED:
            raise InvalidStateError(
                f"Portfolio is emergency stopped ({self.emergency_reason}); restart required"
            )
        if self.state == PortfolioState.RUNNING:
            logger.info("coordinator.already_running")
            return

        logger.info("coordinator.starting", strategies=list(self.strategies))
        self.state = PortfolioState.RUNNING
        self.started_at = self._clock()
        self._generation += 1
        generation = self._generation

        for unit in self.strategies.values():
            await unit.initialize()

        self._unit_tasks = {
            name: asyncio.create_task(self._unit_loop(unit, generation), name=f"unit:{name}")
            for name, unit in self.strategies.items()
        }
        self._loop_tasks = [
            asyncio.create_task(self._monitoring_loop(generation), name="monitoring"),
            asyncio.create_task(self._emergency_loop(generation), name="emergency"),
        ]

        logger.info(
            "coordinator.started",
            generation=generation,
            enabled=[n for n, a in self.allocations.items() if a.enabled],
        )

    async def stop(self):
        """Stop all loops gracefully; in-flight gateway calls are left to finish."""
        async with self._lifecycle_lock:
            await self._stop()

    async def _stop(self):
        if self.state != PortfolioState.RUNNING:
            return

        logger.info("coordinator.stopping")
        self.state = PortfolioState.STOPPED
        await self._shutdown_units()
        await self._persist()
        logger.info("coordinator.stopped")

    async def emergency_stop(self, reason: str = "manual") -> bool:
        """
        Halt the whole portfolio and force-close every open position.

        The state flips before any await so concurrent ticks, cycles and an
        in-progress ordinary stop all observe it immediately.

        Returns:
            False if the portfolio was already emergency stopped
        """
        if self.state == PortfolioState.EMERGENCY_STOPPED:
            return False

        previous = self.state
        self.state = PortfolioState.EMERGENCY_STOPPED
        self.emergency_reason = reason
        for unit in self.strategies.values():
            unit.is_running = False

        closed, realized = self._force_close_all()
        if await self._shutdown_units():
            # Fills that were in flight when the stop began
            late_closed, late_realized = self._force_close_all()
            closed += late_closed
            realized += late_realized

        self.monitoring.record_security_event(SecurityEvent(
            type="emergency_stop",
            severity=Severity.CRITICAL,
            message=f"Emergency stop activated: {reason}",
            metadata={
                "reason": reason,
                "previous_state": previous.value,
                "positions_closed": closed,
                "realized_pnl": str(realized),
            },
        ))
        logger.critical(
            "coordinator.emergency_stop",
            reason=reason,
            positions_closed=closed,
            realized_pnl=str(realized),
        )

        # Metrics reflect the force-closed book
        self.risk_engine.update_portfolio_metrics(
            self.collect_positions(), archived_value=self.archived_value()
        )
        await self._persist()
        return True

    async def restart(self):
        """Clear an emergency stop and start again. Operator action only."""
        async with self._lifecycle_lock:
            if self.state == PortfolioState.RUNNING:
                await self._stop()
            if self.state == PortfolioState.EMERGENCY_STOPPED:
                logger.warning("coordinator.emergency_cleared", reason=self.emergency_reason)
            self.state = PortfolioState.STOPPED
            self.emergency_reason = None
            await self._start()

    def _force_close_all(self):
        closed = 0
        realized = Decimal("0")
        for unit in self.strategies.values():
            for position in unit.open_positions():
                pnl = unit.close_position(position.id, PositionStatus.STOPPED)
                if pnl is not None:
                    closed += 1
                    realized += pnl
        return closed, realized

    async def _shutdown_units(self) -> bool:
        """
        Cancel idle loops; ticks with a gateway call in flight get a grace period.

        Only the tasks present when the shutdown began are touched. Ticks
        another shutdown is already draining are waited for as well.

        Returns:
            False if a start happened while draining; the new run is left alone
        """
        generation = self._generation
        current = asyncio.current_task()
        unit_tasks, self._unit_tasks = self._unit_tasks, {}
        loop_tasks, self._loop_tasks = self._loop_tasks, []

        to_cancel = [t for t in loop_tasks if t is not current and not t.done()]
        draining = []
        for name, task in unit_tasks.items():
            if task is current or task.done():
                continue
            if self.strategies[name].in_tick:
                draining.append(task)
            else:
                to_cancel.append(task)

        for task in to_cancel:
            task.cancel()
        others = [t for t in self._draining if t is not current and not t.done()]
        if draining or others:
            self._draining.update(draining)
            try:
                _, pending = await asyncio.wait(
                    [*draining, *others], timeout=self.config.stop_grace_seconds
                )
            finally:
                self._draining.difference_update(draining)
            for task in pending:
                if task in draining:
                    logger.warning("coordinator.unit_stop_timeout", task=task.get_name())
                    task.cancel()
        if to_cancel or draining:
            await asyncio.gather(*to_cancel, *draining, return_exceptions=True)

        if self._generation != generation:
            logger.info("coordinator.shutdown_superseded", generation=self._generation)
            return False

        for unit in self.strategies.values():
            try:
                await unit.stop()
            except Exception as e:
                logger.error("coordinator.unit_stop_error", strategy=unit.name, error=str(e))
        return True

    # === Loops ===

    def _active(self, generation: int) -> bool:
        return self.state == PortfolioState.RUNNING and self._generation == generation

    async def _unit_loop(self, unit: BaseStrategy, generation: int):
        while self._active(generation):
            try:
                await unit.execute()
            except Exception as e:
                logger.error("coordinator.unit_error", strategy=unit.name, error=str(e))
            if not self._active(generation):
                break
            await asyncio.sleep(unit.config.tick_interval_seconds)

    async def _monitoring_loop(self, generation: int):
        while self._active(generation):
            try:
                await self.run_monitoring_cycle()
            except Exception as e:
                logger.error("coordinator.monitoring_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.config.monitoring_interval_seconds)

    async def _emergency_loop(self, generation: int):
        while self._active(generation):
            await asyncio.sleep(self.config.emergency_interval_seconds)
            try:
                await self.check_emergency_conditions()
            except Exception as e:
                logger.error("coordinator.emergency_check_error", error=str(e), exc_info=True)

    # === Monitoring cycle ===

    async def run_monitoring_cycle(self) -> RiskReport:
        """
        Recompute metrics, then react: emergency check, high-risk disable, rebalance.

        Metric update and the decisions taken on it never interleave with
        another cycle.
        """
        async with self._cycle_lock:
            violation = self.risk_engine.update_portfolio_metrics(
                self.collect_positions(), archived_value=self.archived_value()
            )
            if violation is not None:
                logger.warning("coordinator.risk_violation", message=violation.message)

            if self.state == PortfolioState.RUNNING:
                await self.check_emergency_conditions()

            report = self.risk_engine.get_risk_metrics()
            if self.state == PortfolioState.RUNNING:
                if report.risk_score > self.disable_threshold:
                    self._disable_high_risk(report)
                if self.needs_rebalance():
                    self.rebalance()

            self.cycles_run += 1
            self.last_cycle_at = self._clock()
            if await self._persist():
                self._prune_history()

        logger.debug(
            "coordinator.cycle_completed",
            state=self.state.value,
            risk_score=round(report.risk_score, 2),
            total_value=str(report.metrics.total_value),
        )
        return report

    async def check_emergency_conditions(self) -> Optional[str]:
        """Emergency-stop on drawdown or daily loss; returns the trigger reason if any."""
        if self.state != PortfolioState.RUNNING:
            return None

        metrics = self.risk_engine.metrics
        reason = None
        if metrics.max_drawdown > self.config.emergency_stop_loss:
            reason = (
                f"Drawdown {metrics.max_drawdown:.4f} exceeds emergency threshold "
                f"{self.config.emergency_stop_loss}"
            )
        else:
            loss_limit = Decimal(str(self.config.max_drawdown)) * metrics.total_value
            if metrics.daily_pnl < -loss_limit:
                reason = f"Daily loss {abs(metrics.daily_pnl)} exceeds {loss_limit}"

        if reason is not None:
            await self.emergency_stop(reason)
        return reason

    def _disable_high_risk(self, report: RiskReport):
        for name, allocation in self.allocations.items():
            if allocation.risk_level != RiskLevel.HIGH or not allocation.enabled:
                continue
            allocation.enabled = False
            self.strategies[name].set_enabled(False)
            self.monitoring.record_security_event(SecurityEvent(
                type="risk_management",
                severity=Severity.MEDIUM,
                message=f"High-risk strategy {name} disabled: risk score {report.risk_score:.1f}",
                metadata={"strategy": name, "recommendations": report.recommendations},
            ))
            logger.warning(
                "coordinator.strategy_disabled",
                strategy=name,
                reason="risk_reduction",
                risk_score=round(report.risk_score, 2),
            )

    def needs_rebalance(self) -> bool:
        """True when enabled allocations drift from 100% by more than the threshold."""
        total = sum(a.allocation for a in self.allocations.values() if a.enabled)
        return abs(total - 100) > self.config.rebalance_threshold * 100

    def rebalance(self) -> int:
        """
        Trim over-allocated units.

        A unit is over-allocated when its open exposure exceeds
        ``over_allocation_factor`` times its share of total exposure. Its
        oldest open positions are closed, at least one per unit.

        Returns:
            Number of positions closed
        """
        total_exposure = self.risk_engine.metrics.total_exposure
        closed = 0
        self.rebalances += 1
        logger.info("coordinator.rebalance_started", total_exposure=str(total_exposure))

        for name, allocation in self.allocations.items():
            if not allocation.enabled:
                continue
            unit = self.strategies[name]
            open_ = sorted(unit.open_positions(), key=lambda p: p.created_at)
            if not open_:
                continue

            exposure = sum((p.amount_in for p in open_), Decimal("0"))
            target = total_exposure * Decimal(str(allocation.allocation)) / 100
            if exposure <= target * Decimal(str(self.config.over_allocation_factor)):
                continue

            count = max(1, math.floor(len(open_) * self.config.rebalance_close_fraction))
            for position in open_[:count]:
                if unit.close_position(position.id, PositionStatus.CLOSED) is not None:
                    closed += 1
            logger.info(
                "coordinator.strategy_trimmed",
                strategy=name,
                exposure=str(exposure),
                target=str(target),
                closed=count,
            )

        return closed

    # === Allocation ===

    def enable_strategy(self, name: str) -> StrategyAllocation:
        return self.update_allocation(name, {"enabled": True})

    def disable_strategy(self, name: str) -> StrategyAllocation:
        return self.update_allocation(name, {"enabled": False})

    def update_allocation(
        self, name: str, partial: Union[Mapping[str, Any], BaseModel]
    ) -> StrategyAllocation:
        """
        Merge fields into a unit's allocation.

        Only the unit's enabled flag and sizing change; its loop keeps running.

        Raises:
            UnknownStrategyError: no unit with that name
            ValidationError: out-of-range value; allocation unchanged
        """
        unit = self.get_strategy(name)
        if isinstance(partial, BaseModel):
            partial = partial.model_dump(exclude_unset=True)

        try:
            allocation = self.allocations[name].merged(dict(partial))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid allocation for {name}: {e.errors()[0]['msg']}") from e

        self.allocations[name] = allocation
        self._apply_allocation(unit, allocation)
        logger.info(
            "coordinator.allocation_updated",
            strategy=name,
            allocation=allocation.allocation,
            enabled=allocation.enabled,
            risk_level=allocation.risk_level.value,
            max_position_size=str(allocation.max_position_size),
        )
        return allocation

    def _apply_allocation(self, unit: BaseStrategy, allocation: StrategyAllocation):
        unit.risk_level = allocation.risk_level
        unit.max_position_size = allocation.max_position_size
        if unit.enabled != allocation.enabled:
            unit.set_enabled(allocation.enabled)

    # === Reporting ===

    def get_strategy_status(self, name: str) -> StrategyStatus:
        unit = self.get_strategy(name)
        allocation = self.allocations[name]
        performance = unit.get_performance_metrics()
        return StrategyStatus(
            name=name,
            allocation=allocation.allocation,
            risk_level=allocation.risk_level,
            max_position_size=allocation.max_position_size,
            enabled=allocation.enabled,
            running=unit.is_running,
            positions=performance.total_positions,
            open_positions=performance.open_positions,
            performance=performance,
        )

    def get_portfolio_status(self) -> PortfolioStatus:
        report = self.risk_engine.get_risk_metrics()
        return PortfolioStatus(
            state=self.state,
            is_running=self.is_running,
            total_value=report.metrics.total_value,
            strategies=[self.get_strategy_status(name) for name in self.strategies],
            risk_metrics=report,
            emergency_reason=self.emergency_reason,
            last_cycle_at=self.last_cycle_at,
        )

    def get_diversification(self) -> Dict[str, Any]:
        """Exposure shares per strategy and per token against the configured caps."""
        open_ = [p for p in self.collect_positions() if p.is_open]
        total = sum((p.amount_in for p in open_), Decimal("0"))

        by_strategy: Dict[str, Decimal] = {name: Decimal("0") for name in self.strategies}
        by_token: Dict[str, Decimal] = {}
        for position in open_:
            by_strategy[position.strategy] = by_strategy.get(position.strategy, Decimal("0")) + position.amount_in
            by_token[position.token_out] = by_token.get(position.token_out, Decimal("0")) + position.amount_in

        def share(amount: Decimal) -> float:
            return float(amount / total) if total > 0 else 0.0

        violations = []
        strategies = {}
        for name, amount in by_strategy.items():
            s = share(amount)
            within = s <= self.config.max_exposure_per_strategy
            if not within:
                violations.append(f"Strategy {name} holds {s:.0%} of exposure")
            strategies[name] = {
                "exposure": str(amount),
                "share": s,
                "target_allocation": self.allocations[name].allocation if name in self.allocations else 0.0,
                "within_limit": within,
            }

        tokens = {}
        for token, amount in sorted(by_token.items()):
            s = share(amount)
            within = s <= self.config.max_exposure_per_token
            if not within:
                violations.append(f"Token {token} holds {s:.0%} of exposure")
            tokens[token] = {"exposure": str(amount), "share": s, "within_limit": within}

        correlated = {
            pair: value
            for pair, value in self.risk_engine.metrics.correlation_matrix.items()
            if value > self.config.max_correlation
        }
        for pair, value in sorted(correlated.items()):
            violations.append(f"Instruments {pair} correlated at {value:.2f}")

        return {
            "total_exposure": str(total),
            "strategies": strategies,
            "tokens": tokens,
            "correlated_pairs": correlated,
            "limits": {
                "max_exposure_per_strategy": self.config.max_exposure_per_strategy,
                "max_exposure_per_token": self.config.max_exposure_per_token,
                "max_correlation": self.config.max_correlation,
            },
            "violations": violations,
        }

    def get_status(self) -> Dict[str, Any]:
        """Get current coordinator status."""
        return {
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "cycles_run": self.cycles_run,
            "rebalances": self.rebalances,
            "tasks": len([
                t for t in [*self._unit_tasks.values(), *self._loop_tasks] if not t.done()
            ]),
            "strategies": {name: unit.get_stats() for name, unit in self.strategies.items()},
        }

    # === Persistence ===

    async def _persist(self) -> bool:
        """Save new events and the position book; False if storage failed."""
        events = self.monitoring.drain_unpersisted()
        if self.database is None:
            return True
        try:
            saved = await self.database.save_security_events(events)
            written = await self.database.save_positions(self.collect_positions())
            logger.debug("coordinator.state_saved", events=saved, positions=written)
        except Exception as e:
            logger.error("coordinator.persist_error", error=str(e))
            return False
        return True

    def _prune_history(self) -> int:
        """Drop expired trade history and closed positions past retention."""
        self.monitoring.cleanup()
        cutoff = self._clock() - timedelta(hours=self.config.closed_position_retention_hours)
        return sum(unit.prune_closed(cutoff) for unit in self.strategies.values())

    def archived_value(self) -> Decimal:
        return sum((unit.archived_value for unit in self.strategies.values()), Decimal("0"))

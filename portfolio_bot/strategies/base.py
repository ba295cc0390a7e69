"""Base class for all strategy units."""
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from portfolio_bot.core.config import StrategyUnitConfig
from portfolio_bot.core.errors import GatewayError
from portfolio_bot.core.models import (
    MarketData,
    PerformanceMetrics,
    Position,
    PositionStatus,
    RiskLevel,
    TradeResult,
    is_valid_token_id,
    utc_now,
)
from portfolio_bot.exchange.gateway import MarketGateway
from portfolio_bot.risk import metrics as risk_metrics
from portfolio_bot.risk.risk_engine import RiskEngine
from portfolio_bot.utils.fees import FeeCalculator

logger = structlog.get_logger(__name__)


def _dec(value: Any) -> Decimal:
    return Decimal(str(value))


class BaseStrategy(ABC):
    """
    Abstract strategy unit.

    A unit owns its positions and decides when to trade. Every trade that
    commits capital goes through the risk engine first; exits that reduce
    risk do not. A unit never stops its own tick because of a gateway
    failure: failures are logged, counted and the tick ends.

    Subclasses implement ``evaluate`` with their signal logic and call
    ``open_position`` / ``exit_position`` to act on it.
    """

    def __init__(
        self,
        name: str,
        config: StrategyUnitConfig,
        gateway: MarketGateway,
        risk_engine: RiskEngine,
        monitoring=None,
        fee_calculator: Optional[FeeCalculator] = None,
        quote_token: str = "USDT",
        slippage_pct: float = 1.0,
        deadline_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.name = name
        self.config = config
        self.gateway = gateway
        self.risk_engine = risk_engine
        self.monitoring = monitoring
        self.fee_calculator = fee_calculator
        self.quote_token = quote_token
        self.symbol = config.symbol
        self.slippage_pct = slippage_pct
        self.deadline_seconds = deadline_seconds
        self._clock = clock

        self.risk_level = RiskLevel(config.risk_level)
        self.max_position_size = _dec(config.max_position_size)
        self.stop_loss_pct = None if config.stop_loss_pct is None else _dec(config.stop_loss_pct)
        self.take_profit_pct = None if config.take_profit_pct is None else _dec(config.take_profit_pct)

        self.enabled = config.enabled
        self.is_running = False
        self.logger = logger.bind(strategy=name)

        self.positions: Dict[str, Position] = {}
        self._in_tick = False

        # Totals of closed positions pruned from memory
        self.archived_count = 0
        self.archived_value = Decimal("0")
        self.archived_pnl = Decimal("0")

        # Rate limiting; subclasses set the caps they use
        self.cooldown_seconds: float = 0.0
        self.max_trades_per_hour: Optional[int] = None
        self._trade_times: Deque[datetime] = deque()
        self.last_trade_at: Optional[datetime] = None

        # Track unit performance
        self.ticks = 0
        self.tick_errors = 0
        self.trades_executed = 0
        self.trades_rejected = 0
        self.trades_failed = 0

    # === Lifecycle ===

    async def initialize(self):
        """Start accepting ticks."""
        self.is_running = True
        await self.on_initialize()
        self.logger.info(
            "strategy.initialized",
            enabled=self.enabled,
            symbol=self.symbol,
            max_position_size=str(self.max_position_size),
        )

    async def stop(self):
        """Stop accepting ticks; an in-flight gateway call is left to finish."""
        self.is_running = False
        await self.on_stop()
        self.logger.info("strategy.stopped", open_positions=len(self.open_positions()))

    async def on_initialize(self):
        """Hook for subclass setup."""

    async def on_stop(self):
        """Hook for subclass teardown."""

    def should_run(self) -> bool:
        return self.enabled and self.is_running

    @property
    def in_tick(self) -> bool:
        """True while a tick (and any gateway call in it) is in flight."""
        return self._in_tick

    def set_enabled(self, enabled: bool):
        self.enabled = enabled
        self.logger.info("strategy.enabled" if enabled else "strategy.disabled")

    async def execute(self):
        """
        Run one tick: mark positions, handle exits, then evaluate signals.

        Safe to call on a timer; overlapping ticks are skipped and nothing
        happens while the unit is disabled or stopped.
        """
        if not self.should_run() or self._in_tick:
            return

        self._in_tick = True
        self.ticks += 1
        try:
            await self.refresh_positions()
            if self.should_run():
                await self.evaluate()
        except Exception as e:
            self.tick_errors += 1
            self.logger.error("strategy.tick_error", error=str(e), exc_info=True)
        finally:
            self._in_tick = False

    @abstractmethod
    async def evaluate(self):
        """Strategy-specific signal logic for one tick."""

    # === Positions ===

    def get_positions(self) -> List[Position]:
        """Deep copies of every position this unit has held."""
        return [p.model_copy(deep=True) for p in self.positions.values()]

    def open_positions(self) -> List[Position]:
        return [p for p in self.positions.values() if p.is_open]

    def prune_closed(self, before: datetime) -> int:
        """
        Drop closed and stopped positions that closed before ``before``.

        Their proceeds and P&L are folded into the archived totals so that
        portfolio value and realized P&L stay continuous.
        """
        expired = [
            p for p in self.positions.values()
            if not p.is_open and p.closed_at is not None and p.closed_at < before
        ]
        for position in expired:
            del self.positions[position.id]
            self.archived_count += 1
            self.archived_value += position.amount_out
            self.archived_pnl += position.realized_pnl
        if expired:
            self.logger.debug("strategy.positions_pruned", count=len(expired))
        return len(expired)

    def get_performance_metrics(self) -> PerformanceMetrics:
        positions = list(self.positions.values())
        open_ = risk_metrics.open_positions(positions)
        stats = risk_metrics.realized_stats(positions)
        return PerformanceMetrics(
            total_positions=len(positions) + self.archived_count,
            open_positions=len(open_),
            total_exposure=risk_metrics.total_exposure(positions),
            realized_pnl=sum((p.realized_pnl for p in positions), self.archived_pnl),
            unrealized_pnl=sum((p.unrealized_pnl for p in open_), Decimal("0")),
            win_rate=stats.win_rate,
            average_win=stats.average_win,
            average_loss=stats.average_loss,
            sharpe_ratio=stats.sharpe_ratio,
            trades_executed=self.trades_executed,
            trades_rejected=self.trades_rejected,
            trades_failed=self.trades_failed,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get unit statistics."""
        return {
            "name": self.name,
            "enabled": self.enabled,
            "running": self.is_running,
            "symbol": self.symbol,
            "ticks": self.ticks,
            "tick_errors": self.tick_errors,
            "trades_executed": self.trades_executed,
            "trades_rejected": self.trades_rejected,
            "trades_failed": self.trades_failed,
        }

    def close_position(
        self,
        position_id: str,
        status: PositionStatus = PositionStatus.CLOSED,
        price: Optional[Decimal] = None,
    ) -> Optional[Decimal]:
        """
        Close a position locally at its mark (or ``price``) without trading.

        Returns:
            Realized PnL, or None if the position was already closed
        """
        position = self.positions.get(position_id)
        if position is None:
            raise KeyError(position_id)
        if not position.is_open:
            return None

        now = self._clock()
        if price is not None:
            position.mark(_dec(price), at=now)
        pnl = position.close(status=status, at=now)
        self.logger.info(
            "strategy.position_closed",
            position_id=position_id,
            status=status.value,
            amount_in=str(position.amount_in),
            amount_out=str(position.amount_out),
            pnl=str(pnl),
        )
        return pnl

    async def refresh_positions(self):
        """Mark open positions and exit those that hit stop-loss or take-profit."""
        pairs: Dict[tuple, List[Position]] = {}
        for position in self.open_positions():
            pairs.setdefault((position.token_in, position.token_out), []).append(position)

        for (token_in, token_out), positions in pairs.items():
            try:
                data = await self.get_market_data(token_out, token_in)
            except GatewayError as e:
                self.logger.warning(
                    "strategy.mark_failed",
                    pair=f"{token_out}/{token_in}",
                    error=str(e),
                )
                continue

            now = self._clock()
            for position in positions:
                position.mark(data.price, at=now)
                if position.should_stop_loss():
                    await self.exit_position(position.id, PositionStatus.STOPPED, reason="stop_loss")
                elif position.should_take_profit():
                    await self.exit_position(position.id, PositionStatus.CLOSED, reason="take_profit")

    # === Market access ===

    async def get_market_data(self, token: Optional[str] = None, quote: Optional[str] = None) -> MarketData:
        """Market data for ``token`` priced in ``quote``; feeds liquidity to the risk engine."""
        token = token or self.symbol
        quote = quote or self.quote_token
        data = await self.gateway.get_market_data(quote, token)
        self.risk_engine.observe_market(quote, token, data)
        return data

    def can_trade(self) -> bool:
        """Apply the unit's cooldown and trades-per-hour cap."""
        now = self._clock()
        if self.cooldown_seconds and self.last_trade_at is not None:
            if (now - self.last_trade_at).total_seconds() < self.cooldown_seconds:
                return False

        if self.max_trades_per_hour is not None:
            cutoff = now - timedelta(hours=1)
            while self._trade_times and self._trade_times[0] <= cutoff:
                self._trade_times.popleft()
            if len(self._trade_times) >= self.max_trades_per_hour:
                return False
        return True

    def _record_trade(self, success: bool):
        if success:
            now = self._clock()
            self.last_trade_at = now
            self._trade_times.append(now)
        if self.monitoring is not None:
            self.monitoring.record_trade(self.name, success=success)

    def _deadline(self) -> datetime:
        return utc_now() + timedelta(seconds=self.deadline_seconds)

    # === Trading ===

    async def open_position(
        self,
        amount_in: Decimal,
        price: Decimal,
        token: Optional[str] = None,
        expected_profit_pct: Optional[Decimal] = None,
        stop_loss_pct: Optional[Decimal] = None,
        take_profit_pct: Optional[Decimal] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Position]:
        """
        Spend ``amount_in`` of the quote token on ``token``.

        Args:
            amount_in: Quote amount to commit
            price: Current quote price of one unit of ``token``
            token: Asset to buy, defaults to the unit's symbol
            expected_profit_pct: Expected move used by the fee pre-filter
            stop_loss_pct: Overrides the unit's stop-loss
            take_profit_pct: Overrides the unit's take-profit
            metadata: Stored on the position

        Returns:
            The new position, or None if the trade was filtered, rejected or failed
        """
        token = token or self.symbol
        token_in = self.quote_token

        if not (is_valid_token_id(token_in) and is_valid_token_id(token)) or token_in == token:
            self.logger.warning("strategy.invalid_tokens", token_in=token_in, token_out=token)
            return None
        try:
            amount_in, price = _dec(amount_in), _dec(price)
        except ArithmeticError:
            self.logger.warning("strategy.invalid_amount", amount_in=str(amount_in))
            return None
        if not (amount_in.is_finite() and price.is_finite()) or amount_in <= 0 or price <= 0:
            self.logger.warning("strategy.invalid_amount", amount_in=str(amount_in), price=str(price))
            return None
        if amount_in > self.max_position_size:
            self.logger.info(
                "strategy.trade_too_large",
                amount_in=str(amount_in),
                max_position_size=str(self.max_position_size),
            )
            return None
        if not self.should_run() or not self.can_trade():
            return None

        if self.fee_calculator is not None and expected_profit_pct is not None:
            expected_out = amount_in * (1 + _dec(expected_profit_pct) / 100)
            if not self.fee_calculator.is_profitable(amount_in, expected_out, transactions=2):
                self.logger.debug("strategy.trade_unprofitable", amount_in=str(amount_in))
                return None

        admission = self.risk_engine.reserve_trade(token_in, token, amount_in / price, price)
        if not admission.allowed:
            self.trades_rejected += 1
            self.logger.warning(
                "strategy.trade_rejected",
                token=token,
                amount_in=str(amount_in),
                reason=admission.reason,
                risk_score=round(admission.risk_score, 2),
            )
            return None

        result: Optional[TradeResult] = None
        try:
            quote = await self.gateway.get_quote(token_in, token, amount_in)
            result = await self.gateway.execute_trade(
                token_in,
                token,
                amount_in,
                quote.amount_out * _dec(1 - self.slippage_pct / 100),
                self._deadline(),
            )
        except Exception as e:
            result = TradeResult.failed(str(e), amount_in)
        finally:
            if result is not None and result.success and result.amount_out > 0:
                self.risk_engine.commit_reservation(admission.reservation_id)
            else:
                self.risk_engine.release_reservation(admission.reservation_id)

        success = result.success and result.amount_out > 0
        self._record_trade(success)
        if not success:
            self.trades_failed += 1
            self.logger.error(
                "strategy.trade_failed",
                token=token,
                amount_in=str(amount_in),
                error=result.error or "empty fill",
            )
            return None

        position = Position(
            token_in=token_in,
            token_out=token,
            amount_in=result.amount_in,
            entry_price=result.amount_in / result.amount_out,
            strategy=self.name,
            stop_loss_pct=self.stop_loss_pct if stop_loss_pct is None else _dec(stop_loss_pct),
            take_profit_pct=self.take_profit_pct if take_profit_pct is None else _dec(take_profit_pct),
            metadata={"transaction_hash": result.transaction_hash, **(metadata or {})},
        )
        self.positions[position.id] = position
        self.trades_executed += 1
        self.logger.info(
            "strategy.position_opened",
            position_id=position.id,
            token=token,
            amount_in=str(position.amount_in),
            entry_price=str(position.entry_price),
            risk_score=round(admission.risk_score, 2),
        )
        return position

    async def exit_position(
        self,
        position_id: str,
        status: PositionStatus = PositionStatus.CLOSED,
        reason: str = "signal",
    ) -> bool:
        """Sell a position's holdings back to the quote token through the gateway."""
        position = self.positions.get(position_id)
        if position is None or not position.is_open:
            return False

        quantity = position.quantity
        try:
            # Never sell more than is held; entry price rounding can overshoot the fill
            held = await self.gateway.get_balance(position.token_out)
            if 0 < held < quantity:
                quantity = held
            quote = await self.gateway.get_quote(position.token_out, position.token_in, quantity)
            result = await self.gateway.execute_trade(
                position.token_out,
                position.token_in,
                quantity,
                quote.amount_out * _dec(1 - self.slippage_pct / 100),
                self._deadline(),
            )
        except Exception as e:
            result = TradeResult.failed(str(e), quantity)

        self._record_trade(result.success)
        if not result.success:
            self.trades_failed += 1
            self.logger.error(
                "strategy.exit_failed",
                position_id=position_id,
                reason=reason,
                error=result.error,
            )
            return False

        self.trades_executed += 1
        if not position.is_open:
            # Force-closed locally while the sale was in flight; book the real proceeds
            marked = position.amount_out
            position.amount_out = result.amount_out
            position.updated_at = self._clock()
            self.logger.warning(
                "strategy.late_exit_reconciled",
                position_id=position_id,
                reason=reason,
                status=position.status.value,
                marked_amount_out=str(marked),
                amount_out=str(result.amount_out),
                pnl=str(position.realized_pnl),
            )
            return True

        pnl = position.close(status=status, amount_out=result.amount_out, at=self._clock())
        self.logger.info(
            "strategy.position_exited",
            position_id=position_id,
            reason=reason,
            status=status.value,
            amount_out=str(result.amount_out),
            pnl=str(pnl),
        )
        return True

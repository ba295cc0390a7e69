"""
Triangular Arbitrage Strategy

Quotes the round trip ``quote -> symbol -> bridge -> quote`` for a fixed
amount and trades it only when the quoted proceeds beat the input by at
least ``min_profit_pct`` after the flat fee on all three legs.

The first leg commits capital and goes through admission like any other
entry. The remaining legs unwind that same capital, so they bypass it. A
leg that fails leaves the lot open holding the intermediate token; the
next tick retries the remaining legs before looking for new routes.

Risk Level: MEDIUM
"""
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from portfolio_bot.core.config import ArbitrageConfig
from portfolio_bot.core.errors import GatewayError
from portfolio_bot.core.models import PositionStatus, TradeResult
from portfolio_bot.strategies.base import BaseStrategy


class ArbitrageStrategy(BaseStrategy):
    """Round-trip quote comparison through a bridge token."""

    LEGS = 3

    def __init__(self, gateway, risk_engine, config: Optional[ArbitrageConfig] = None, name: str = "arbitrage", **kwargs):
        config = config or ArbitrageConfig()
        super().__init__(name, config, gateway, risk_engine, **kwargs)

        self.bridge_token = config.bridge_token
        self.min_profit_pct = Decimal(str(config.min_profit_pct))
        self.trade_amount = Decimal(str(config.trade_amount))
        self.cooldown_seconds = config.cooldown_seconds

        # position id -> (token held, amount held) for unfinished round trips
        self.pending: Dict[str, Tuple[str, Decimal]] = {}
        self.opportunities_found = 0
        self.round_trips_completed = 0
        self.last_profit_pct: Optional[Decimal] = None

    async def quote_round_trip(self, amount: Decimal) -> Decimal:
        """Quoted profit percentage of the full round trip for ``amount``."""
        leg1 = await self.gateway.get_quote(self.quote_token, self.symbol, amount)
        leg2 = await self.gateway.get_quote(self.symbol, self.bridge_token, leg1.amount_out)
        leg3 = await self.gateway.get_quote(self.bridge_token, self.quote_token, leg2.amount_out)
        return (leg3.amount_out - amount) / amount * 100

    async def evaluate(self):
        await self._resume_pending()
        if self.pending or not self.can_trade():
            return

        data = await self.get_market_data()
        try:
            profit_pct = await self.quote_round_trip(self.trade_amount)
        except GatewayError as e:
            self.logger.warning("arbitrage_strategy.quote_failed", error=str(e))
            return
        self.last_profit_pct = profit_pct

        if profit_pct < self.min_profit_pct:
            return
        if self.fee_calculator is not None:
            expected_out = self.trade_amount * (1 + profit_pct / 100)
            if not self.fee_calculator.is_profitable(self.trade_amount, expected_out, transactions=self.LEGS):
                return

        self.opportunities_found += 1
        self.logger.info(
            "arbitrage_strategy.opportunity",
            route=f"{self.quote_token}>{self.symbol}>{self.bridge_token}>{self.quote_token}",
            profit_pct=str(round(profit_pct, 4)),
        )
        position = await self.open_position(
            self.trade_amount,
            data.price,
            metadata={"bridge_token": self.bridge_token, "quoted_profit_pct": str(round(profit_pct, 4))},
        )
        if position is None:
            return

        self.pending[position.id] = (self.symbol, position.quantity)
        await self._resume_pending()

    async def _resume_pending(self):
        for position_id in list(self.pending):
            token, amount = self.pending[position_id]
            if token == self.symbol:
                result = await self._swap(token, self.bridge_token, amount)
                if not result.success:
                    continue
                token, amount = self.bridge_token, result.amount_out
                self.pending[position_id] = (token, amount)

            result = await self._swap(token, self.quote_token, amount)
            if not result.success:
                continue

            del self.pending[position_id]
            position = self.positions[position_id]
            if position.is_open:
                pnl = position.close(PositionStatus.CLOSED, amount_out=result.amount_out, at=self._clock())
                self.round_trips_completed += 1
                self.logger.info(
                    "arbitrage_strategy.round_trip_completed",
                    position_id=position_id,
                    amount_out=str(result.amount_out),
                    pnl=str(pnl),
                )

    async def _swap(self, token_in: str, token_out: str, amount: Decimal) -> TradeResult:
        try:
            held = await self.gateway.get_balance(token_in)
            if 0 < held < amount:
                amount = held
            quote = await self.gateway.get_quote(token_in, token_out, amount)
            result = await self.gateway.execute_trade(
                token_in,
                token_out,
                amount,
                quote.amount_out * Decimal(str(1 - self.slippage_pct / 100)),
                self._deadline(),
            )
        except Exception as e:
            result = TradeResult.failed(str(e), amount)

        self._record_trade(result.success)
        if not result.success:
            self.trades_failed += 1
            self.logger.error(
                "arbitrage_strategy.leg_failed",
                token_in=token_in,
                token_out=token_out,
                error=result.error,
            )
        return result

    def close_position(self, position_id, status=PositionStatus.CLOSED, price=None):
        self.pending.pop(position_id, None)
        return super().close_position(position_id, status, price)

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "opportunities_found": self.opportunities_found,
            "round_trips_completed": self.round_trips_completed,
            "pending_round_trips": len(self.pending),
            "last_profit_pct": str(self.last_profit_pct) if self.last_profit_pct is not None else None,
        })
        return stats

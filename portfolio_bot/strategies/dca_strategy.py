"""
Dollar-Cost Averaging Strategy

Buys a fixed quote amount of one asset on a fixed schedule, with an extra
(larger) buy when the price falls far enough below the average entry.

Rules:
- Regular buy every ``interval_hours`` until ``max_investments`` is reached
- Buy size is the smaller of ``investment_amount`` and the remaining
  position budget spread over the remaining investments
- Dip buy of 1.5x the investment amount when price is at least
  ``price_drop_threshold_pct`` below the average entry, at most once per
  quarter interval
- No buying while the 24h move exceeds ``volatility_threshold_pct``

Risk Level: LOW
Exits: stop-loss / take-profit on each lot
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from portfolio_bot.core.config import DCAConfig
from portfolio_bot.strategies.base import BaseStrategy


class DCAStrategy(BaseStrategy):
    """Scheduled accumulation with dip buying."""

    DIP_MULTIPLIER = Decimal("1.5")
    DIP_THROTTLE_FRACTION = 4

    def __init__(self, gateway, risk_engine, config: Optional[DCAConfig] = None, name: str = "dca", **kwargs):
        config = config or DCAConfig()
        super().__init__(name, config, gateway, risk_engine, **kwargs)

        self.investment_amount = Decimal(str(config.investment_amount))
        self.interval = timedelta(hours=config.interval_hours)
        self.max_investments = config.max_investments
        self.price_drop_threshold_pct = Decimal(str(config.price_drop_threshold_pct))
        self.volatility_threshold_pct = config.volatility_threshold_pct

        # Accumulation state
        self.purchase_count = 0
        self.total_invested = Decimal("0")
        self.total_tokens = Decimal("0")
        self.last_purchase_at: Optional[datetime] = None
        self.last_dip_buy_at: Optional[datetime] = None

        self.logger.info(
            "dca_strategy.initialized",
            investment_amount=str(self.investment_amount),
            interval_hours=config.interval_hours,
            max_investments=self.max_investments,
        )

    @property
    def average_price(self) -> Decimal:
        if self.total_tokens == 0:
            return Decimal("0")
        return self.total_invested / self.total_tokens

    def _purchase_due(self, now: datetime) -> bool:
        return self.last_purchase_at is None or now - self.last_purchase_at >= self.interval

    def _buy_size(self) -> Decimal:
        remaining = max(self.max_investments - self.purchase_count, 1)
        return min(self.investment_amount, self.max_position_size / remaining)

    async def evaluate(self):
        if self.purchase_count >= self.max_investments:
            return

        data = await self.get_market_data()
        if abs(data.change_24h) > self.volatility_threshold_pct:
            self.logger.info("dca_strategy.high_volatility_skip", change_24h=round(data.change_24h, 2))
            return

        now = self._clock()
        if self._purchase_due(now):
            await self._buy(self._buy_size(), data.price, {"kind": "scheduled"})
            return

        average = self.average_price
        if average <= 0:
            return
        drop_pct = (average - data.price) / average * 100
        throttle = self.interval / self.DIP_THROTTLE_FRACTION
        if drop_pct >= self.price_drop_threshold_pct and (
            self.last_dip_buy_at is None or now - self.last_dip_buy_at >= throttle
        ):
            self.logger.info("dca_strategy.price_drop", drop_pct=str(round(drop_pct, 2)))
            amount = min(self.investment_amount * self.DIP_MULTIPLIER, self.max_position_size)
            if await self._buy(amount, data.price, {"kind": "dip"}):
                self.last_dip_buy_at = now

    async def _buy(self, amount: Decimal, price: Decimal, metadata: Dict[str, Any]) -> bool:
        position = await self.open_position(
            amount,
            price,
            expected_profit_pct=self.take_profit_pct,
            metadata=metadata,
        )
        if position is None:
            return False

        self.purchase_count += 1
        self.total_invested += position.amount_in
        self.total_tokens += position.quantity
        self.last_purchase_at = self._clock()
        self.logger.info(
            "dca_strategy.purchase",
            purchase=self.purchase_count,
            amount=str(position.amount_in),
            average_price=str(self.average_price),
        )
        return True

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "purchase_count": self.purchase_count,
            "total_invested": str(self.total_invested),
            "average_price": str(self.average_price),
        })
        return stats

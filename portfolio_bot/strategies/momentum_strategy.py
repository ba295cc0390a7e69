"""
Momentum Strategy

Tracks a rolling window of prices and volumes for one asset. When the
price change over ``lookback_period`` ticks exceeds the threshold and the
average recent volume clears ``volume_threshold``, it opens a single lot.
A reversal of the same magnitude exits the lot early. Spot only: negative
momentum never opens a short.

Risk Level: HIGH
"""
from collections import deque
from decimal import Decimal
from typing import Any, Deque, Dict, Optional

from portfolio_bot.core.config import MomentumConfig
from portfolio_bot.core.models import PositionStatus
from portfolio_bot.strategies.base import BaseStrategy


class MomentumStrategy(BaseStrategy):
    """Trend following on a rolling price change."""

    MIN_VOLUME_SAMPLES = 5

    def __init__(self, gateway, risk_engine, config: Optional[MomentumConfig] = None, name: str = "momentum", **kwargs):
        config = config or MomentumConfig()
        super().__init__(name, config, gateway, risk_engine, **kwargs)

        self.lookback_period = config.lookback_period
        self.momentum_threshold_pct = Decimal(str(config.momentum_threshold_pct))
        self.volume_threshold = Decimal(str(config.volume_threshold))
        self.trade_amount = Decimal(str(config.trade_amount))
        self.max_price_impact_pct = config.max_price_impact_pct
        self.cooldown_seconds = config.cooldown_seconds

        self.prices: Deque[Decimal] = deque(maxlen=self.lookback_period)
        self.volumes: Deque[Decimal] = deque(maxlen=self.lookback_period)
        self.last_momentum: Optional[Decimal] = None

    def momentum(self) -> Optional[Decimal]:
        """Percentage change across the full window, None until it fills."""
        if len(self.prices) < self.lookback_period:
            return None
        oldest, newest = self.prices[0], self.prices[-1]
        return (newest - oldest) / oldest * 100

    def average_volume(self) -> Decimal:
        recent = list(self.volumes)[-self.MIN_VOLUME_SAMPLES:]
        if len(recent) < self.MIN_VOLUME_SAMPLES:
            return Decimal("0")
        return sum(recent, Decimal("0")) / len(recent)

    async def evaluate(self):
        data = await self.get_market_data()
        self.prices.append(data.price)
        self.volumes.append(data.volume)

        momentum = self.momentum()
        self.last_momentum = momentum
        if momentum is None:
            return

        open_lots = self.open_positions()
        if momentum < -self.momentum_threshold_pct:
            for position in open_lots:
                await self.exit_position(position.id, PositionStatus.CLOSED, reason="momentum_reversal")
            return

        if momentum <= self.momentum_threshold_pct or open_lots:
            return
        if self.average_volume() < self.volume_threshold:
            self.logger.debug("momentum_strategy.low_volume", volume=str(self.average_volume()))
            return
        if not self.can_trade():
            return

        quote = await self.gateway.get_quote(self.quote_token, self.symbol, self.trade_amount)
        if quote.price_impact > self.max_price_impact_pct:
            self.logger.info(
                "momentum_strategy.price_impact_too_high",
                price_impact=round(quote.price_impact, 3),
                max_price_impact_pct=self.max_price_impact_pct,
            )
            return

        self.logger.info("momentum_strategy.signal", momentum_pct=str(round(momentum, 3)))
        await self.open_position(
            self.trade_amount,
            data.price,
            expected_profit_pct=self.take_profit_pct,
            metadata={"momentum_pct": str(round(momentum, 4))},
        )

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "window": len(self.prices),
            "momentum_pct": str(self.last_momentum) if self.last_momentum is not None else None,
        })
        return stats

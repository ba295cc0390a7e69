"""
Scalping Strategy

Small, frequent trades on short-term moves. Compares the mean of the last
five prices with the five before; an upward move above ``MIN_MOVE_PCT``
on sufficient volume opens a small lot with tight stop-loss and
take-profit. Capped by ``max_trades_per_hour`` and a short cooldown.

Risk Level: HIGH
"""
from collections import deque
from decimal import Decimal
from typing import Any, Deque, Dict, Optional

from portfolio_bot.core.config import ScalpingConfig
from portfolio_bot.strategies.base import BaseStrategy


class ScalpingStrategy(BaseStrategy):
    """Short-term momentum scalping."""

    WINDOW = 5
    MIN_MOVE_PCT = Decimal("0.1")
    MAX_OPEN_LOTS = 3

    def __init__(self, gateway, risk_engine, config: Optional[ScalpingConfig] = None, name: str = "scalping", **kwargs):
        config = config or ScalpingConfig()
        super().__init__(name, config, gateway, risk_engine, **kwargs)

        self.trade_amount = Decimal(str(config.trade_amount))
        self.min_volume = Decimal(str(config.min_volume))
        self.max_trades_per_hour = config.max_trades_per_hour
        self.cooldown_seconds = config.cooldown_seconds

        self.prices: Deque[Decimal] = deque(maxlen=self.WINDOW * 2)

    def short_term_move(self) -> Optional[Decimal]:
        """Percentage change of the recent mean against the older mean."""
        if len(self.prices) < self.WINDOW * 2:
            return None
        history = list(self.prices)
        older = sum(history[:self.WINDOW], Decimal("0")) / self.WINDOW
        recent = sum(history[self.WINDOW:], Decimal("0")) / self.WINDOW
        return (recent - older) / older * 100

    async def evaluate(self):
        data = await self.get_market_data()
        self.prices.append(data.price)

        move = self.short_term_move()
        if move is None or move <= self.MIN_MOVE_PCT:
            return
        if data.volume < self.min_volume:
            return
        if len(self.open_positions()) >= self.MAX_OPEN_LOTS or not self.can_trade():
            return

        await self.open_position(
            self.trade_amount,
            data.price,
            expected_profit_pct=self.take_profit_pct,
            metadata={"move_pct": str(round(move, 4))},
        )

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats["trades_last_hour"] = len(self._trade_times)
        return stats

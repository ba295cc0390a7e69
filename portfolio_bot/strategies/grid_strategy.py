"""
Grid Trading Strategy

Places buy levels below a centre price at fixed percentage spacing. Each
filled buy level becomes a lot whose take-profit is the next level up, so
the matching sell level sits one spacing above the fill. A level is free
again once its lot is closed.

The grid recentres on the current price when it drifts more than
``rebalance_threshold_pct`` from the centre with no lots open, or when
the price leaves the grid range entirely.

Risk Level: MEDIUM
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from portfolio_bot.core.config import GridConfig
from portfolio_bot.strategies.base import BaseStrategy


@dataclass
class GridLevel:
    """One buy level of the grid."""
    index: int
    price: Decimal
    sell_price: Decimal


class GridStrategy(BaseStrategy):
    """Range trading between fixed percentage levels."""

    def __init__(self, gateway, risk_engine, config: Optional[GridConfig] = None, name: str = "grid", **kwargs):
        config = config or GridConfig()
        super().__init__(name, config, gateway, risk_engine, **kwargs)

        self.grid_spacing_pct = Decimal(str(config.grid_spacing_pct))
        self.grid_levels = config.grid_levels
        self.base_amount = Decimal(str(config.base_amount))
        self.price_tolerance_pct = Decimal(str(config.price_tolerance_pct))
        self.rebalance_threshold_pct = Decimal(str(config.rebalance_threshold_pct))
        # Each lot sells one level above its fill
        self.take_profit_pct = self.grid_spacing_pct

        self.center_price: Optional[Decimal] = None
        self.levels: List[GridLevel] = []
        self.rebuilds = 0

    def setup_grid(self, center: Decimal):
        """Lay out buy levels below ``center``."""
        self.center_price = center
        step = self.grid_spacing_pct / 100
        self.levels = [
            GridLevel(
                index=i,
                price=center * (1 - step * i),
                sell_price=center * (1 - step * (i - 1)),
            )
            for i in range(1, self.grid_levels // 2 + 1)
        ]
        self.rebuilds += 1
        self.logger.info(
            "grid_strategy.grid_setup",
            center_price=str(center),
            levels=len(self.levels),
            lowest=str(self.levels[-1].price) if self.levels else None,
        )

    def _filled_levels(self) -> set:
        return {p.metadata.get("grid_level") for p in self.open_positions()}

    def _out_of_range(self, price: Decimal) -> bool:
        if not self.levels:
            return True
        upper = self.center_price * (1 + self.grid_spacing_pct * (len(self.levels)) / 100)
        lower = self.levels[-1].price * (1 - self.grid_spacing_pct / 100)
        return price > upper or price < lower

    def _needs_recentre(self, price: Decimal) -> bool:
        if self.center_price is None or self._out_of_range(price):
            return True
        drift = abs(price - self.center_price) / self.center_price * 100
        return drift > self.rebalance_threshold_pct and not self.open_positions()

    async def evaluate(self):
        data = await self.get_market_data()
        price = data.price

        if self._needs_recentre(price):
            if self.center_price is not None:
                self.logger.info(
                    "grid_strategy.price_outside_range",
                    price=str(price),
                    center_price=str(self.center_price),
                )
            self.setup_grid(price)
            return

        filled = self._filled_levels()
        for level in self.levels:
            if level.index in filled:
                continue
            distance = abs(price - level.price) / level.price * 100
            if price <= level.price or distance <= self.price_tolerance_pct:
                await self.open_position(
                    self.base_amount,
                    price,
                    expected_profit_pct=self.grid_spacing_pct,
                    metadata={"grid_level": level.index, "level_price": str(level.price)},
                )
                # One fill per tick
                return

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "center_price": str(self.center_price) if self.center_price is not None else None,
            "levels": len(self.levels),
            "filled_levels": len(self._filled_levels()),
            "rebuilds": self.rebuilds,
        })
        return stats

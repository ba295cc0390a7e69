"""
Strategy units for the portfolio bot.

Each unit is a thin signal generator over the shared BaseStrategy trade
path (admission, gateway call, position bookkeeping):
- DCAStrategy: scheduled accumulation with dip buys
- GridStrategy: buy levels below a centre price, sells one level up
- ArbitrageStrategy: triangular round trip through a bridge token
- MomentumStrategy: rolling-window trend following
- ScalpingStrategy: small trades with tight exits
"""

from portfolio_bot.strategies.arbitrage_strategy import ArbitrageStrategy
from portfolio_bot.strategies.base import BaseStrategy
from portfolio_bot.strategies.dca_strategy import DCAStrategy
from portfolio_bot.strategies.grid_strategy import GridStrategy
from portfolio_bot.strategies.momentum_strategy import MomentumStrategy
from portfolio_bot.strategies.scalping_strategy import ScalpingStrategy

# Unit name -> class, in registration order
STRATEGY_TYPES = {
    "dca": DCAStrategy,
    "grid": GridStrategy,
    "arbitrage": ArbitrageStrategy,
    "momentum": MomentumStrategy,
    "scalping": ScalpingStrategy,
}

__all__ = [
    "ArbitrageStrategy",
    "BaseStrategy",
    "DCAStrategy",
    "GridStrategy",
    "MomentumStrategy",
    "STRATEGY_TYPES",
    "ScalpingStrategy",
]

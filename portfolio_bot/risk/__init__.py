"""Risk management module for the portfolio trading bot.

This module provides:
- Trade admission checks with hard limits and a composite risk score
- Exposure reservations that close the check-then-execute race
- Portfolio metrics (drawdown, win rate, Sharpe, rolling correlation, volatility)
- Limit violation reporting as security events
"""

from portfolio_bot.risk.metrics import PriceHistory, RealizedStats
from portfolio_bot.risk.risk_engine import (
    EventSink,
    HardLimitRule,
    RiskEngine,
    TradeProposal,
    create_risk_engine,
)

__all__ = [
    "EventSink",
    "HardLimitRule",
    "PriceHistory",
    "RealizedStats",
    "RiskEngine",
    "TradeProposal",
    "create_risk_engine",
]

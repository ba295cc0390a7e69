"""Portfolio metric math.

Pure functions over Position snapshots plus a bounded rolling price history
used for the correlation matrix and volatility. Nothing here mutates a
position.
"""
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from portfolio_bot.core.models import Position, PositionStatus


@dataclass
class RealizedStats:
    """Win/loss statistics over closed and stopped positions."""
    count: int = 0
    win_rate: float = 0.0
    average_win: Decimal = Decimal("0")
    average_loss: Decimal = Decimal("0")
    sharpe_ratio: float = 0.0


def open_positions(positions: Iterable[Position]) -> List[Position]:
    return [p for p in positions if p.status == PositionStatus.OPEN]


def realized_positions(positions: Iterable[Position]) -> List[Position]:
    return [p for p in positions if p.status != PositionStatus.OPEN]


def total_exposure(positions: Iterable[Position]) -> Decimal:
    """Sum of open positions' input amount."""
    return sum((p.amount_in for p in open_positions(positions)), Decimal("0"))


def total_value(positions: Iterable[Position]) -> Decimal:
    """Marked value of open positions plus fixed proceeds of closed ones."""
    return sum((p.market_value for p in positions), Decimal("0"))


def daily_pnl(positions: Iterable[Position], today: date) -> Decimal:
    """Realized amount_out - amount_in over positions created on ``today`` (UTC).

    Open positions have no proceeds yet and are left out.
    """
    return sum(
        (p.realized_pnl for p in realized_positions(positions) if p.created_at.date() == today),
        Decimal("0"),
    )


def drawdown(high_water_mark: Decimal, current_value: Decimal) -> float:
    """Peak-to-current fraction; 0 without a positive peak."""
    if high_water_mark <= 0 or current_value >= high_water_mark:
        return 0.0
    return float((high_water_mark - current_value) / high_water_mark)


def sharpe_ratio(returns: Sequence[float]) -> float:
    """Mean over sample standard deviation of per-position returns."""
    if len(returns) < 2:
        return 0.0
    values = np.asarray(returns, dtype=float)
    std = values.std(ddof=1)
    if not np.isfinite(std) or std < 1e-12:
        return 0.0
    return float(values.mean() / std)


def realized_stats(positions: Iterable[Position]) -> RealizedStats:
    closed = [p for p in realized_positions(positions) if p.amount_in > 0]
    if not closed:
        return RealizedStats()

    pnls = [p.realized_pnl for p in closed]
    wins = [pnl for pnl in pnls if pnl > 0]
    losses = [pnl for pnl in pnls if pnl < 0]

    return RealizedStats(
        count=len(closed),
        win_rate=len(wins) / len(closed),
        average_win=sum(wins, Decimal("0")) / len(wins) if wins else Decimal("0"),
        average_loss=abs(sum(losses, Decimal("0")) / len(losses)) if losses else Decimal("0"),
        sharpe_ratio=sharpe_ratio([float(p.realized_pnl / p.amount_in) for p in closed]),
    )


def token_overlap(positions: Iterable[Position], token_in: str, token_out: str) -> float:
    """Fraction of open positions sharing either token with a proposed trade."""
    current = open_positions(positions)
    if not current:
        return 0.0
    tokens = {token_in, token_out}
    matching = sum(1 for p in current if p.token_in in tokens or p.token_out in tokens)
    return matching / len(current)


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    if not np.isfinite(value):
        return high
    return max(low, min(high, value))


class PriceHistory:
    """Rolling per-instrument price observations keyed by mark timestamp.

    Observations come from position marks, so replaying an identical
    snapshot records nothing new.
    """

    def __init__(self, window: int = 50):
        if window < 3:
            raise ValueError("Correlation window needs at least 3 observations")
        self.window = window
        self._series: Dict[str, "OrderedDict[datetime, float]"] = {}

    def record(self, positions: Iterable[Position]) -> None:
        for position in open_positions(positions):
            series = self._series.setdefault(position.pair, OrderedDict())
            series[position.updated_at] = float(position.current_price)
            if len(series) > self.window:
                # Oldest by timestamp, not by insertion
                for ts in sorted(series)[: len(series) - self.window]:
                    del series[ts]

    def retain(self, instruments: Iterable[str]) -> None:
        """Drop instruments that no longer have open positions."""
        keep = set(instruments)
        for name in list(self._series):
            if name not in keep:
                del self._series[name]

    def instruments(self) -> List[str]:
        return sorted(self._series)

    def returns(self, instruments: Optional[Iterable[str]] = None) -> pd.DataFrame:
        """Aligned per-instrument returns over the rolling window."""
        names = sorted(instruments) if instruments is not None else self.instruments()
        columns = {
            name: pd.Series(dict(self._series[name]), dtype=float)
            for name in names
            if name in self._series and len(self._series[name]) > 1
        }
        if not columns:
            return pd.DataFrame()
        prices = pd.DataFrame(columns).sort_index().ffill().tail(self.window)
        return prices.pct_change(fill_method=None).iloc[1:]

    def correlation_matrix(self, instruments: Optional[Iterable[str]] = None) -> Dict[str, float]:
        """Pairwise Pearson correlation of returns, keyed ``"A|B"`` with A < B."""
        frame = self.returns(instruments)
        if frame.shape[1] < 2:
            return {}
        corr = frame.corr(min_periods=3)
        matrix = {}
        names = list(corr.columns)
        for i, a in enumerate(names):
            for b in names[i + 1:]:
                value = corr.loc[a, b]
                if pd.notna(value):
                    matrix[f"{a}|{b}"] = round(float(value), 6)
        return matrix

    def volatility(self, instruments: Optional[Iterable[str]] = None) -> float:
        """Mean per-instrument standard deviation of returns."""
        frame = self.returns(instruments)
        if frame.empty:
            return 0.0
        stds = frame.std(ddof=1).dropna()
        if stds.empty:
            return 0.0
        return round(float(stds.mean()), 10)

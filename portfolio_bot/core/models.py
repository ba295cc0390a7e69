"""Data models for the portfolio trading bot.

Defines the records shared by the risk engine, the portfolio coordinator,
the strategy units and the control surface:
- Position: a single strategy's open/closed exposure
- RiskLimits / PortfolioMetrics: risk engine configuration and derived state
- StrategyAllocation: per-strategy allocation owned by the coordinator
- SecurityEvent: immutable violation/anomaly record
- Gateway records: Quote, TradeResult, MarketData

All monetary values use Decimal for precision; ratios are floats.
All timestamps are timezone-aware UTC datetime objects.
Field names are snake_case in Python and camelCase on the wire.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


TOKEN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:|$-]{0,63}$")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def is_valid_token_id(token: Any) -> bool:
    """Token identifiers are short symbols like ``ETH`` or ``GALA|Unit|none|none``."""
    return isinstance(token, str) and bool(TOKEN_ID_PATTERN.match(token))


class WireModel(BaseModel):
    """Base model serialised with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Enums
# =============================================================================

class PositionStatus(str, Enum):
    """Position lifecycle state."""
    OPEN = "open"
    CLOSED = "closed"
    STOPPED = "stopped"


class RiskLevel(str, Enum):
    """Strategy risk classification."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Severity(str, Enum):
    """Security event severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PortfolioState(str, Enum):
    """Coordinator state machine: STOPPED -> RUNNING -> (EMERGENCY_STOPPED | STOPPED)."""
    STOPPED = "stopped"
    RUNNING = "running"
    EMERGENCY_STOPPED = "emergency_stopped"


# =============================================================================
# Position Model
# =============================================================================

class Position(WireModel):
    """A single strategy's exposure in one token pair.

    ``amount_in`` is committed in ``token_in`` (the quote currency) and
    ``amount_out`` is what came back when the position was closed. While
    open, ``amount_out`` is zero; once closed or stopped it is fixed.

    Attributes:
        token_in: Asset given up when opening
        token_out: Asset received when opening
        amount_in: Committed input amount
        amount_out: Proceeds at close, 0 while open
        entry_price: Price of token_out in token_in at entry
        current_price: Latest mark, updated by the owning strategy
        stop_loss_pct: Optional stop-loss percentage (e.g. 5 for 5%)
        take_profit_pct: Optional take-profit percentage
        strategy: Name of the owning strategy unit
    """

    token_in: str = Field(..., min_length=1, description="Input token")
    token_out: str = Field(..., min_length=1, description="Output token")
    amount_in: Decimal = Field(..., ge=0, description="Input amount")
    entry_price: Decimal = Field(..., gt=0, description="Entry price")

    id: str = Field(default_factory=lambda: str(uuid4()), description="Position ID")
    strategy: str = Field(default="", description="Owning strategy unit")
    amount_out: Decimal = Field(default=Decimal("0"), ge=0, description="Output amount")
    current_price: Optional[Decimal] = Field(default=None, gt=0, description="Mark price")
    stop_loss_pct: Optional[Decimal] = Field(default=None, ge=0, description="Stop loss %")
    take_profit_pct: Optional[Decimal] = Field(default=None, ge=0, description="Take profit %")
    status: PositionStatus = Field(default=PositionStatus.OPEN, description="Lifecycle state")

    created_at: datetime = Field(default_factory=utc_now, description="Open time")
    updated_at: datetime = Field(default_factory=utc_now, description="Last mark time")
    closed_at: Optional[datetime] = Field(default=None, description="Close time")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional data")

    @model_validator(mode="after")
    def check_lifecycle(self) -> "Position":
        """Default the mark to the entry price and keep amount_out at 0 while open."""
        if self.current_price is None:
            self.current_price = self.entry_price
        if self.status == PositionStatus.OPEN and self.amount_out != 0:
            raise ValueError("amount_out must be 0 while the position is open")
        return self

    @property
    def is_open(self) -> bool:
        """True if position is currently open."""
        return self.status == PositionStatus.OPEN

    @property
    def quantity(self) -> Decimal:
        """Units of token_out held at entry."""
        return self.amount_in / self.entry_price

    @property
    def market_value(self) -> Decimal:
        """Marked value in token_in units; fixed proceeds once closed."""
        if not self.is_open:
            return self.amount_out
        return self.quantity * self.current_price

    @property
    def unrealized_pnl(self) -> Decimal:
        if not self.is_open:
            return Decimal("0")
        return self.market_value - self.amount_in

    @property
    def realized_pnl(self) -> Decimal:
        if self.is_open:
            return Decimal("0")
        return self.amount_out - self.amount_in

    @property
    def pnl_pct(self) -> Decimal:
        """Price change since entry as a percentage (e.g. 5.0 for +5%)."""
        return (self.current_price - self.entry_price) / self.entry_price * 100

    @property
    def pair(self) -> str:
        return f"{self.token_out}/{self.token_in}"

    def mark(self, price: Decimal, at: Optional[datetime] = None) -> None:
        """Update the mark price of an open position."""
        if not self.is_open:
            return
        self.current_price = price
        self.updated_at = at or utc_now()

    def close(
        self,
        status: PositionStatus = PositionStatus.CLOSED,
        amount_out: Optional[Decimal] = None,
        at: Optional[datetime] = None,
    ) -> Decimal:
        """Close the position and fix its proceeds.

        Args:
            status: CLOSED or STOPPED
            amount_out: Proceeds; defaults to the marked value

        Returns:
            Realized PnL
        """
        if status == PositionStatus.OPEN:
            raise ValueError("Cannot close a position into the open state")
        if not self.is_open:
            raise ValueError(f"Position {self.id} is already {self.status.value}")

        proceeds = self.market_value if amount_out is None else amount_out
        if proceeds < 0:
            raise ValueError("amount_out cannot be negative")

        now = at or utc_now()
        self.amount_out = proceeds
        self.status = status
        self.closed_at = now
        self.updated_at = now
        return self.realized_pnl

    def should_stop_loss(self) -> bool:
        return self.is_open and self.stop_loss_pct is not None and self.pnl_pct <= -self.stop_loss_pct

    def should_take_profit(self) -> bool:
        return self.is_open and self.take_profit_pct is not None and self.pnl_pct >= self.take_profit_pct


# =============================================================================
# Risk Models
# =============================================================================

class RiskLimits(WireModel):
    """Process-wide risk limits, replaced only through ``merged``."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True
    )

    max_total_exposure: Decimal = Field(default=Decimal("10000"), gt=0)
    max_position_size: Decimal = Field(default=Decimal("1000"), gt=0)
    max_daily_loss: Decimal = Field(default=Decimal("500"), gt=0)
    max_drawdown: Decimal = Field(default=Decimal("0.15"), gt=0, le=1)
    max_correlation: Decimal = Field(default=Decimal("0.7"), gt=0, le=1)
    max_leverage: Decimal = Field(default=Decimal("1.0"), gt=0)
    min_liquidity: Decimal = Field(default=Decimal("10000"), gt=0)
    max_volatility: Decimal = Field(default=Decimal("0.5"), gt=0, le=1)

    def merged(self, partial: Dict[str, Any]) -> "RiskLimits":
        """Return a validated copy with ``partial`` applied.

        Raises:
            pydantic.ValidationError: unknown field or out-of-range value
        """
        values = self.model_dump()
        values.update({k: v for k, v in partial.items() if v is not None})
        return RiskLimits.model_validate(values)


class PortfolioMetrics(WireModel):
    """Derived portfolio metrics, recomputed from scratch on every snapshot."""

    total_value: Decimal = Decimal("0")
    total_exposure: Decimal = Decimal("0")
    daily_pnl: Decimal = Decimal("0")
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    win_rate: float = 0.0
    average_win: Decimal = Decimal("0")
    average_loss: Decimal = Decimal("0")
    correlation_matrix: Dict[str, float] = Field(default_factory=dict)
    volatility: float = 0.0
    liquidity: Decimal = Decimal("0")
    open_positions: int = 0
    realized_positions: int = 0


class AdmissionResult(WireModel):
    """Outcome of a trade admission check. A rejection is a value, not an error."""

    allowed: bool
    reason: str = ""
    risk_score: float = Field(..., ge=0, le=100)
    position_value: Decimal = Decimal("0")
    reservation_id: Optional[str] = None

    @classmethod
    def rejected(cls, reason: str, **kwargs) -> "AdmissionResult":
        """Hard rejection at the maximum score."""
        return cls(allowed=False, reason=reason, risk_score=100.0, **kwargs)


class RiskReport(WireModel):
    """Portfolio-wide risk report returned by ``RiskEngine.get_risk_metrics``."""

    metrics: PortfolioMetrics
    limits: RiskLimits
    risk_score: float = Field(..., ge=0, le=100)
    recommendations: List[str] = Field(default_factory=list)
    high_water_mark: Decimal = Decimal("0")


class SecurityEvent(WireModel):
    """Write-once record of a risk violation, trade burst or anomaly."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: str
    severity: Severity
    message: str
    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Strategy Models
# =============================================================================

class StrategyAllocation(WireModel):
    """Per-strategy allocation owned by the portfolio coordinator."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, validate_assignment=True
    )

    name: str = Field(..., min_length=1)
    allocation: float = Field(..., ge=0, le=100, description="Target allocation %")
    risk_level: RiskLevel = RiskLevel.MEDIUM
    max_position_size: Decimal = Field(default=Decimal("500"), gt=0)
    enabled: bool = True

    def merged(self, partial: Dict[str, Any]) -> "StrategyAllocation":
        """Return a validated copy with ``partial`` applied; the name never changes."""
        values = self.model_dump()
        values.update({k: v for k, v in partial.items() if v is not None and k != "name"})
        return StrategyAllocation.model_validate(values)


class PerformanceMetrics(WireModel):
    """Per-strategy performance summary."""

    total_positions: int = 0
    open_positions: int = 0
    total_exposure: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    win_rate: float = 0.0
    average_win: Decimal = Decimal("0")
    average_loss: Decimal = Decimal("0")
    sharpe_ratio: float = 0.0
    trades_executed: int = 0
    trades_rejected: int = 0
    trades_failed: int = 0


class StrategyStatus(WireModel):
    """Allocation and live state of one registered strategy unit."""

    name: str
    allocation: float
    risk_level: RiskLevel
    max_position_size: Decimal
    enabled: bool
    running: bool
    positions: int
    open_positions: int
    performance: PerformanceMetrics


class PortfolioStatus(WireModel):
    """Coordinator state as exposed by ``GET /portfolio``."""

    state: PortfolioState
    is_running: bool
    total_value: Decimal
    strategies: List[StrategyStatus]
    risk_metrics: RiskReport
    emergency_reason: Optional[str] = None
    last_cycle_at: Optional[datetime] = None


# =============================================================================
# Market Gateway Models
# =============================================================================

class Quote(WireModel):
    """Quote for swapping ``amount_in`` of token_in into token_out."""

    token_in: str
    token_out: str
    amount_in: Decimal
    amount_out: Decimal
    price_impact: float = Field(default=0.0, description="Price impact %")
    minimum_received: Decimal
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def price(self) -> Decimal:
        """Effective token_in paid per unit of token_out."""
        if self.amount_out == 0:
            return Decimal("0")
        return self.amount_in / self.amount_out


class TradeResult(WireModel):
    """Result of a trade submission. Failures are values, never raised."""

    success: bool
    transaction_hash: Optional[str] = None
    amount_in: Decimal = Decimal("0")
    amount_out: Decimal = Decimal("0")
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def failed(cls, error: str, amount_in: Decimal = Decimal("0")) -> "TradeResult":
        return cls(success=False, error=error, amount_in=amount_in)


class MarketData(WireModel):
    """Market snapshot for a token pair; price is token_in per unit of token_out."""

    token_in: str
    token_out: str
    price: Decimal = Field(..., gt=0)
    volume: Decimal = Field(default=Decimal("0"), ge=0, description="24h volume")
    high_24h: Decimal = Decimal("0")
    low_24h: Decimal = Decimal("0")
    change_24h: float = Field(default=0.0, description="24h change %")
    timestamp: datetime = Field(default_factory=utc_now)

"""Portfolio risk engine - gates every capital-committing trade.

Aggregates position snapshots from all strategy units into portfolio
metrics, evaluates proposed trades against the configured limits, and
reports violations as security events.

CRITICAL: every path out of an admission check that is not a clean
evaluation must return allowed=False. Never relax the fail-closed handling.
"""
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Union
from uuid import uuid4

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from portfolio_bot.core.errors import ValidationError
from portfolio_bot.core.models import (
    AdmissionResult,
    MarketData,
    PortfolioMetrics,
    Position,
    RiskLimits,
    RiskReport,
    SecurityEvent,
    Severity,
    utc_now,
)
from portfolio_bot.risk import metrics as risk_metrics

logger = structlog.get_logger(__name__)


class EventSink(Protocol):
    """Receiver of security events (the coordinator-owned monitoring system)."""

    def record_security_event(self, event: SecurityEvent) -> None:
        ...


@dataclass
class TradeProposal:
    """A trade being evaluated, in the units the composite score works with."""
    token_in: str
    token_out: str
    amount: Decimal
    price: Decimal

    @property
    def position_value(self) -> Decimal:
        return self.amount * self.price

    @property
    def pair(self) -> str:
        return f"{self.token_out}/{self.token_in}"


@dataclass
class HardLimitRule:
    """Hard rejection rule; returns a reason when the trade must be refused.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Returns the rejection reason, or None when the trade passes
        priority: Lower numbers are checked first
    """
    name: str
    check_fn: Callable[[TradeProposal, Decimal], Optional[str]]
    priority: int = 100


def _ratio(value: Decimal, limit: Decimal) -> float:
    return float(value / limit) if limit > 0 else 0.0


class RiskEngine:
    """
    Portfolio-wide risk engine.

    Admission checks:
    - Hard limits in priority order: position size, total exposure,
      daily loss, drawdown. Any hit rejects with score 100.
    - Otherwise a weighted composite score (30/25/20/15/10) plus
      correlation (+20) and liquidity (+15) penalties, clamped to [0, 100].
    - allowed = score < admission threshold (80 by default).

    All mutable state (limits, metrics, reservations) is guarded by a single
    re-entrant lock; admission checks and metric updates never interleave.
    Admitted-but-unfilled trades are tracked as reservations so concurrent
    proposals cannot jointly breach max_total_exposure.
    """

    # Composite score weights
    WEIGHT_POSITION_SIZE = 30
    WEIGHT_EXPOSURE = 25
    WEIGHT_DAILY_PNL = 20
    WEIGHT_DRAWDOWN = 15
    WEIGHT_VOLATILITY = 10
    CORRELATION_PENALTY = 20
    LIQUIDITY_PENALTY = 15

    EVALUATION_ERROR = "risk evaluation error"

    def __init__(
        self,
        limits: Optional[RiskLimits] = None,
        event_sink: Optional[EventSink] = None,
        admission_threshold: float = 80.0,
        correlation_window: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._lock = threading.RLock()
        self._limits = limits or RiskLimits()
        self._metrics = PortfolioMetrics()
        self._positions: List[Position] = []
        self._high_water_mark = Decimal("0")
        self._price_history = risk_metrics.PriceHistory(correlation_window)
        self._pair_liquidity: Dict[str, Decimal] = {}

        # Admitted exposure not yet visible in a position snapshot
        self._reservations: Dict[str, Decimal] = {}
        self._committed_exposure = Decimal("0")

        self.event_sink = event_sink
        self.admission_threshold = admission_threshold
        self._clock = clock
        self.last_updated: Optional[datetime] = None

        # Tracking
        self.admissions_checked = 0
        self.admissions_rejected = 0
        self.rejected_trades: List[Dict[str, Any]] = []

        self._rules: List[HardLimitRule] = []
        self._register_default_rules()

    def _register_default_rules(self):
        """Register hard rejection rules in priority order."""
        self._rules = [
            HardLimitRule("max_position_size", self._check_position_size, priority=1),
            HardLimitRule("max_total_exposure", self._check_total_exposure, priority=2),
            HardLimitRule("max_daily_loss", self._check_daily_loss, priority=3),
            HardLimitRule("max_drawdown", self._check_drawdown, priority=4),
        ]
        self._rules.sort(key=lambda r: r.priority)

    # === Read-only views ===

    @property
    def limits(self) -> RiskLimits:
        with self._lock:
            return self._limits

    @property
    def metrics(self) -> PortfolioMetrics:
        with self._lock:
            return self._metrics.model_copy(deep=True)

    @property
    def high_water_mark(self) -> Decimal:
        with self._lock:
            return self._high_water_mark

    @property
    def pending_exposure(self) -> Decimal:
        """Admitted exposure that is not yet part of the position snapshot."""
        with self._lock:
            return sum(self._reservations.values(), Decimal("0")) + self._committed_exposure

    def positions(self) -> List[Position]:
        """Copy of the last supplied position snapshot."""
        with self._lock:
            return [p.model_copy(deep=True) for p in self._positions]

    # === Admission ===

    def check_trade_admission(
        self,
        token_in: str,
        token_out: str,
        amount: Union[Decimal, float, str],
        price: Union[Decimal, float, str],
    ) -> AdmissionResult:
        """
        Evaluate a proposed trade against current limits and metrics.

        Limits, metrics and reservations are left untouched; nothing is
        reserved. Only the admission counters and the bounded rejection log
        (telemetry for ``get_status``) are updated.

        Args:
            token_in: Token given up
            token_out: Token received
            amount: Trade amount, > 0
            price: Price per unit of amount, > 0

        Returns:
            AdmissionResult with allowed flag, reason and risk score
        """
        with self._lock:
            return self._evaluate(token_in, token_out, amount, price)

    def reserve_trade(
        self,
        token_in: str,
        token_out: str,
        amount: Union[Decimal, float, str],
        price: Union[Decimal, float, str],
    ) -> AdmissionResult:
        """Check admission and, if allowed, reserve the exposure atomically.

        The caller must pass the reservation id to ``commit_reservation``
        after a successful execution or ``release_reservation`` otherwise.
        """
        with self._lock:
            result = self._evaluate(token_in, token_out, amount, price)
            if not result.allowed:
                return result
            reservation_id = str(uuid4())
            self._reservations[reservation_id] = result.position_value
            return result.model_copy(update={"reservation_id": reservation_id})

    def commit_reservation(self, reservation_id: Optional[str]) -> None:
        """Keep reserved exposure until the next snapshot includes the new position."""
        if reservation_id is None:
            return
        with self._lock:
            amount = self._reservations.pop(reservation_id, None)
            if amount is not None:
                self._committed_exposure += amount

    def release_reservation(self, reservation_id: Optional[str]) -> None:
        """Drop reserved exposure for a trade that was not executed."""
        if reservation_id is None:
            return
        with self._lock:
            self._reservations.pop(reservation_id, None)

    def _evaluate(self, token_in, token_out, amount, price) -> AdmissionResult:
        self.admissions_checked += 1
        try:
            proposal = TradeProposal(
                token_in=token_in,
                token_out=token_out,
                amount=Decimal(str(amount)),
                price=Decimal(str(price)),
            )
        except (InvalidOperation, ValueError, TypeError):
            return self._reject(None, "invalid trade parameters", rule="preconditions")

        if not (proposal.amount.is_finite() and proposal.price.is_finite()) \
                or proposal.amount <= 0 or proposal.price <= 0:
            return self._reject(proposal, "amount and price must be positive", rule="preconditions")

        try:
            exposure = self._metrics.total_exposure + self._pending_exposure_locked()

            for rule in self._rules:
                reason = rule.check_fn(proposal, exposure)
                if reason:
                    return self._reject(proposal, reason, rule=rule.name)

            score, reasons = self._composite_score(proposal, exposure)
            allowed = score < self.admission_threshold
            if not allowed:
                reasons.append(
                    f"Risk score {score:.1f} exceeds threshold {self.admission_threshold:g}"
                )

            result = AdmissionResult(
                allowed=allowed,
                reason=", ".join(reasons),
                risk_score=score,
                position_value=proposal.position_value,
            )
        except Exception as e:
            logger.error(
                "risk_engine.evaluation_error",
                token_in=token_in,
                token_out=token_out,
                error=str(e),
                exc_info=True,
            )
            self._emit(SecurityEvent(
                type="risk_management",
                severity=Severity.HIGH,
                message=f"Risk evaluation failed: {e}",
                metadata={"token_in": str(token_in), "token_out": str(token_out)},
            ))
            return self._reject(None, self.EVALUATION_ERROR, rule="evaluation_error")

        if not result.allowed:
            self._log_rejection(proposal, "risk_score", result.reason, result.risk_score)
        else:
            logger.debug(
                "risk_engine.trade_admitted",
                pair=proposal.pair,
                position_value=str(proposal.position_value),
                risk_score=round(result.risk_score, 2),
                reason=result.reason or None,
            )
        return result

    def _composite_score(self, proposal: TradeProposal, exposure: Decimal):
        limits = self._limits
        metrics = self._metrics
        value = proposal.position_value

        score = (
            self.WEIGHT_POSITION_SIZE * _ratio(value, limits.max_position_size)
            + self.WEIGHT_EXPOSURE * _ratio(exposure + value, limits.max_total_exposure)
            + self.WEIGHT_DAILY_PNL * abs(_ratio(metrics.daily_pnl, limits.max_daily_loss))
            + self.WEIGHT_DRAWDOWN * (metrics.max_drawdown / float(limits.max_drawdown))
            + self.WEIGHT_VOLATILITY * (metrics.volatility / float(limits.max_volatility))
        )
        reasons = []

        correlation = risk_metrics.token_overlap(self._positions, proposal.token_in, proposal.token_out)
        if correlation > float(limits.max_correlation):
            score += self.CORRELATION_PENALTY
            reasons.append(f"High correlation risk: {correlation:.2f}")

        liquidity = self._pair_liquidity.get(proposal.pair, metrics.liquidity)
        if liquidity < limits.min_liquidity:
            score += self.LIQUIDITY_PENALTY
            reasons.append(f"Low liquidity: {liquidity}")

        return risk_metrics.clamp(score), reasons

    # === Hard limit rules ===

    def _check_position_size(self, proposal: TradeProposal, exposure: Decimal) -> Optional[str]:
        if proposal.position_value > self._limits.max_position_size:
            return (
                f"Position size {proposal.position_value} exceeds maximum "
                f"{self._limits.max_position_size}"
            )
        return None

    def _check_total_exposure(self, proposal: TradeProposal, exposure: Decimal) -> Optional[str]:
        new_exposure = exposure + proposal.position_value
        if new_exposure > self._limits.max_total_exposure:
            return (
                f"Total exposure {new_exposure} would exceed maximum "
                f"{self._limits.max_total_exposure}"
            )
        return None

    def _check_daily_loss(self, proposal: TradeProposal, exposure: Decimal) -> Optional[str]:
        if self._metrics.daily_pnl < -self._limits.max_daily_loss:
            return (
                f"Daily loss {abs(self._metrics.daily_pnl)} exceeds limit "
                f"{self._limits.max_daily_loss}"
            )
        return None

    def _check_drawdown(self, proposal: TradeProposal, exposure: Decimal) -> Optional[str]:
        if self._metrics.max_drawdown > float(self._limits.max_drawdown):
            return (
                f"Drawdown {self._metrics.max_drawdown:.4f} exceeds limit "
                f"{self._limits.max_drawdown}"
            )
        return None

    # === Portfolio metrics ===

    def update_portfolio_metrics(
        self, positions: Iterable[Position], archived_value: Decimal = Decimal("0")
    ) -> Optional[SecurityEvent]:
        """
        Replace the working snapshot and recompute every metric from scratch.

        Args:
            positions: Snapshot of every strategy unit's positions
            archived_value: Proceeds of closed positions no longer in the snapshot

        Returns:
            The aggregated violation event when any limit is breached, else None
        """
        snapshot = [p.model_copy(deep=True) for p in positions]
        today = self._clock().date()

        with self._lock:
            self._positions = snapshot

            current = risk_metrics.open_positions(snapshot)
            open_pairs = sorted({p.pair for p in current})
            self._price_history.record(current)
            self._price_history.retain(open_pairs)

            value = risk_metrics.total_value(snapshot) + archived_value
            if value > self._high_water_mark:
                self._high_water_mark = value

            stats = risk_metrics.realized_stats(snapshot)
            observed = [self._pair_liquidity[p] for p in open_pairs if p in self._pair_liquidity]

            self._metrics = PortfolioMetrics(
                total_value=value,
                total_exposure=risk_metrics.total_exposure(snapshot),
                daily_pnl=risk_metrics.daily_pnl(snapshot, today),
                max_drawdown=risk_metrics.drawdown(self._high_water_mark, value),
                sharpe_ratio=stats.sharpe_ratio,
                win_rate=stats.win_rate,
                average_win=stats.average_win,
                average_loss=stats.average_loss,
                correlation_matrix=self._price_history.correlation_matrix(open_pairs),
                volatility=self._price_history.volatility(open_pairs),
                liquidity=min(observed) if observed else Decimal("0"),
                open_positions=len(current),
                realized_positions=stats.count,
            )
            # New positions are now part of the snapshot
            self._committed_exposure = Decimal("0")
            self.last_updated = self._clock()

            violations = self._limit_violations()
            metrics = self._metrics

        logger.debug(
            "risk_engine.metrics_updated",
            total_value=str(metrics.total_value),
            total_exposure=str(metrics.total_exposure),
            daily_pnl=str(metrics.daily_pnl),
            drawdown=metrics.max_drawdown,
            open_positions=metrics.open_positions,
        )

        if not violations:
            return None

        event = SecurityEvent(
            type="risk_management",
            severity=Severity.HIGH,
            message=f"Risk limits violated: {', '.join(violations)}",
            metadata={"violations": violations, "total_exposure": str(metrics.total_exposure)},
        )
        self._emit(event)
        return event

    def _limit_violations(self) -> List[str]:
        limits = self._limits
        metrics = self._metrics
        violations = []

        if metrics.total_exposure > limits.max_total_exposure:
            violations.append(
                f"Total exposure {metrics.total_exposure} exceeds limit {limits.max_total_exposure}"
            )
        if metrics.daily_pnl < -limits.max_daily_loss:
            violations.append(
                f"Daily loss {abs(metrics.daily_pnl)} exceeds limit {limits.max_daily_loss}"
            )
        if metrics.max_drawdown > float(limits.max_drawdown):
            violations.append(
                f"Drawdown {metrics.max_drawdown:.4f} exceeds limit {limits.max_drawdown}"
            )
        return violations

    def observe_market(self, token_in: str, token_out: str, market_data: MarketData) -> None:
        """Record the latest 24h volume for a pair (liquidity input)."""
        with self._lock:
            self._pair_liquidity[f"{token_out}/{token_in}"] = market_data.volume

    # === Reporting ===

    def get_risk_metrics(self) -> RiskReport:
        """Overall risk score, metrics, limits and recommendations. Pure read."""
        with self._lock:
            limits = self._limits
            metrics = self._metrics.model_copy(deep=True)
            high_water_mark = self._high_water_mark

        exposure_ratio = _ratio(metrics.total_exposure, limits.max_total_exposure)
        pnl_ratio = _ratio(metrics.daily_pnl, limits.max_daily_loss)
        drawdown_ratio = metrics.max_drawdown / float(limits.max_drawdown)
        volatility_ratio = metrics.volatility / float(limits.max_volatility)

        score = risk_metrics.clamp(
            25 * exposure_ratio + 25 * abs(pnl_ratio) + 25 * drawdown_ratio + 25 * volatility_ratio
        )

        recommendations = []
        if exposure_ratio > 0.8:
            recommendations.append("Consider reducing position sizes - approaching exposure limit")
        if pnl_ratio < -0.5:
            recommendations.append("Daily losses approaching limit - consider stopping trading")
        if drawdown_ratio > 0.7:
            recommendations.append("High drawdown detected - consider risk reduction")
        if metrics.realized_positions > 0 and metrics.win_rate < 0.4:
            recommendations.append("Low win rate - review trading strategies")
        if volatility_ratio > 0.8:
            recommendations.append("High volatility detected - consider reducing position sizes")

        return RiskReport(
            metrics=metrics,
            limits=limits,
            risk_score=score,
            recommendations=recommendations,
            high_water_mark=high_water_mark,
        )

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "admissions_checked": self.admissions_checked,
                "admissions_rejected": self.admissions_rejected,
                "open_reservations": len(self._reservations),
                "pending_exposure": str(self.pending_exposure),
                "high_water_mark": str(self._high_water_mark),
                "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            }

    # === Limits ===

    def update_risk_limits(self, partial: Union[Mapping[str, Any], BaseModel]) -> RiskLimits:
        """
        Merge the provided fields into the current limits.

        Raises:
            ValidationError: unknown field or out-of-range value; limits unchanged
        """
        if isinstance(partial, BaseModel):
            partial = partial.model_dump(exclude_none=True)

        with self._lock:
            previous = self._limits
            try:
                self._limits = previous.merged(dict(partial))
            except PydanticValidationError as e:
                details = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                )
                raise ValidationError(f"Invalid risk limits: {details}") from e
            updated = self._limits

        changes = {
            name: str(getattr(updated, name))
            for name in type(updated).model_fields
            if getattr(updated, name) != getattr(previous, name)
        }
        logger.info("risk_engine.limits_updated", changes=changes)
        self._emit(SecurityEvent(
            type="configuration_change",
            severity=Severity.LOW,
            message="Risk limits updated",
            metadata={"changes": changes},
        ))
        return updated

    # === Internals ===

    def _pending_exposure_locked(self) -> Decimal:
        return sum(self._reservations.values(), Decimal("0")) + self._committed_exposure

    def _reject(
        self, proposal: Optional[TradeProposal], reason: str, rule: str
    ) -> AdmissionResult:
        self._log_rejection(proposal, rule, reason, 100.0)
        return AdmissionResult.rejected(
            reason, position_value=proposal.position_value if proposal else Decimal("0")
        )

    def _log_rejection(
        self, proposal: Optional[TradeProposal], rule: str, reason: str, score: float
    ):
        self.admissions_rejected += 1
        logger.warning(
            "risk_engine.trade_rejected",
            pair=proposal.pair if proposal else None,
            position_value=str(proposal.position_value) if proposal else None,
            rule=rule,
            reason=reason,
            risk_score=round(score, 2),
        )
        self.rejected_trades.append({
            "timestamp": self._clock().isoformat(),
            "pair": proposal.pair if proposal else None,
            "rule": rule,
            "reason": reason,
        })
        # Keep only last 1000 rejections
        if len(self.rejected_trades) > 1000:
            self.rejected_trades = self.rejected_trades[-1000:]

    def _emit(self, event: SecurityEvent):
        if self.event_sink is not None:
            self.event_sink.record_security_event(event)


# === Convenience Functions ===

def create_risk_engine(config=None, event_sink: Optional[EventSink] = None) -> RiskEngine:
    """Factory function to create a RiskEngine from ``RiskLimitsConfig``."""
    from portfolio_bot.core.config import RiskLimitsConfig

    config = config or RiskLimitsConfig()
    limits = RiskLimits(
        max_total_exposure=Decimal(str(config.max_total_exposure)),
        max_position_size=Decimal(str(config.max_position_size)),
        max_daily_loss=Decimal(str(config.max_daily_loss)),
        max_drawdown=Decimal(str(config.max_drawdown)),
        max_correlation=Decimal(str(config.max_correlation)),
        max_leverage=Decimal(str(config.max_leverage)),
        min_liquidity=Decimal(str(config.min_liquidity)),
        max_volatility=Decimal(str(config.max_volatility)),
    )
    return RiskEngine(
        limits=limits,
        event_sink=event_sink,
        admission_threshold=config.admission_threshold,
        correlation_window=config.correlation_window,
    )

"""Security event sink, trade-burst detection and health reporting."""
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import structlog

from portfolio_bot.core.config import MonitoringConfig
from portfolio_bot.core.models import SecurityEvent, Severity, utc_now

logger = structlog.get_logger(__name__)

_LOG_METHOD = {
    Severity.LOW: "info",
    Severity.MEDIUM: "warning",
    Severity.HIGH: "error",
    Severity.CRITICAL: "critical",
}


class MonitoringSystem:
    """
    Coordinator-owned event sink.

    Strategy units report trades here and the risk engine reports
    violations here; nothing holds a reference back to the coordinator.

    Trade bursts: more than ``trade_burst_threshold`` trades inside the
    rolling window raises one high-severity event. The detector re-arms
    only once the window count falls back to the threshold.
    """

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or MonitoringConfig()
        self._clock = clock
        self.started_at = clock()

        self.security_events: Deque[SecurityEvent] = deque(maxlen=self.config.max_events)
        self._unpersisted: List[SecurityEvent] = []

        self._window: Deque[datetime] = deque()
        self._burst_active = False
        self._trade_history: Deque[Tuple[datetime, str, bool]] = deque()

        self.trades_total = 0
        self.trades_failed = 0
        self.trades_by_strategy: Dict[str, int] = {}
        self.events_by_severity: Dict[str, int] = {s.value: 0 for s in Severity}

    # === Events ===

    def record_security_event(self, event: SecurityEvent) -> None:
        self.security_events.append(event)
        self._unpersisted.append(event)
        self.events_by_severity[event.severity.value] += 1

        log = getattr(logger, _LOG_METHOD[event.severity])
        log(
            "monitoring.security_event",
            event_type=event.type,
            severity=event.severity.value,
            message=event.message,
            metadata=event.metadata or None,
        )

    def drain_unpersisted(self) -> List[SecurityEvent]:
        """Hand over events recorded since the last drain."""
        events, self._unpersisted = self._unpersisted, []
        return events

    def get_security_events(
        self, limit: int = 50, severity: Optional[Severity] = None
    ) -> List[SecurityEvent]:
        """Most recent events first."""
        events = [
            e for e in reversed(self.security_events)
            if severity is None or e.severity == severity
        ]
        return events[:limit]

    # === Trades ===

    def record_trade(
        self, strategy: str, success: bool = True, at: Optional[datetime] = None
    ) -> Optional[SecurityEvent]:
        """
        Record a strategy-originated trade attempt.

        Returns:
            The burst event if this trade crossed the threshold, else None
        """
        now = at or self._clock()
        self.trades_total += 1
        if not success:
            self.trades_failed += 1
        self.trades_by_strategy[strategy] = self.trades_by_strategy.get(strategy, 0) + 1
        self._trade_history.append((now, strategy, success))

        self._window.append(now)
        cutoff = now - timedelta(seconds=self.config.trade_burst_window_seconds)
        while self._window and self._window[0] <= cutoff:
            self._window.popleft()

        count = len(self._window)
        if count <= self.config.trade_burst_threshold:
            self._burst_active = False
            return None
        if self._burst_active:
            return None

        self._burst_active = True
        event = SecurityEvent(
            type="trade_execution",
            severity=Severity.HIGH,
            message="Unusual trading frequency detected",
            timestamp=now,
            metadata={
                "trades_in_window": count,
                "window_seconds": self.config.trade_burst_window_seconds,
                "strategy": strategy,
            },
        )
        self.record_security_event(event)
        return event

    def cleanup(self) -> int:
        """Prune trade history older than the retention window."""
        cutoff = self._clock() - timedelta(hours=self.config.history_retention_hours)
        removed = 0
        while self._trade_history and self._trade_history[0][0] < cutoff:
            self._trade_history.popleft()
            removed += 1
        return removed

    # === Health ===

    def get_health_status(self) -> Dict[str, Any]:
        now = self._clock()
        recent_cutoff = now - timedelta(hours=1)
        recent = [e for e in self.security_events if e.timestamp >= recent_cutoff]
        critical = sum(1 for e in recent if e.severity == Severity.CRITICAL)
        high = sum(1 for e in recent if e.severity == Severity.HIGH)

        recent_trades = [t for t in self._trade_history if t[0] >= recent_cutoff]
        failed = sum(1 for t in recent_trades if not t[2])
        error_rate = failed / len(recent_trades) if recent_trades else 0.0

        if critical:
            status = "unhealthy"
        elif high or (len(recent_trades) >= 5 and error_rate > 0.2):
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "uptime_seconds": int((now - self.started_at).total_seconds()),
            "checks": {
                "critical_events_last_hour": critical,
                "high_events_last_hour": high,
                "trades_last_hour": len(recent_trades),
                "trade_error_rate": round(error_rate, 4),
            },
            "timestamp": now.isoformat(),
        }

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "trades_total": self.trades_total,
            "trades_failed": self.trades_failed,
            "trades_by_strategy": dict(self.trades_by_strategy),
            "trades_in_window": len(self._window),
            "trade_history_size": len(self._trade_history),
            "burst_active": self._burst_active,
            "events_by_severity": dict(self.events_by_severity),
            "events_retained": len(self.security_events),
        }

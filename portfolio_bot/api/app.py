"""HTTP control surface over the coordinator and risk engine."""
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ConfigDict
from pydantic.alias_generators import to_camel

from portfolio_bot import __version__
from portfolio_bot.core.context import BotContext
from portfolio_bot.core.errors import InvalidStateError, UnknownStrategyError, ValidationError
from portfolio_bot.core.models import RiskLevel, Severity, WireModel

logger = structlog.get_logger(__name__)


# =============================================================================
# Request bodies
# =============================================================================

class RiskLimitsUpdate(WireModel):
    """Partial risk limits; ranges are enforced by the risk engine."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    max_total_exposure: Optional[Decimal] = None
    max_position_size: Optional[Decimal] = None
    max_daily_loss: Optional[Decimal] = None
    max_drawdown: Optional[Decimal] = None
    max_correlation: Optional[Decimal] = None
    max_leverage: Optional[Decimal] = None
    min_liquidity: Optional[Decimal] = None
    max_volatility: Optional[Decimal] = None


class AllocationUpdate(WireModel):
    """Partial strategy allocation; ranges are enforced by the coordinator."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    allocation: Optional[float] = None
    enabled: Optional[bool] = None
    risk_level: Optional[RiskLevel] = None
    max_position_size: Optional[Decimal] = None


class EmergencyStopRequest(WireModel):
    reason: str = "manual emergency stop"


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


# =============================================================================
# Application
# =============================================================================

def create_app(context: BotContext) -> FastAPI:
    """Build the control surface for an already-wired bot context."""
    app = FastAPI(title="Portfolio Bot Control Surface", version=__version__)
    app.state.context = context

    coordinator = context.coordinator
    risk_engine = context.risk_engine
    monitoring = context.monitoring
    expose_errors = context.config.system.environment == "development"

    def _portfolio_state() -> Dict[str, Any]:
        return {
            "state": coordinator.state.value,
            "isRunning": coordinator.is_running,
            "emergencyReason": coordinator.emergency_reason,
        }

    # === Error mapping ===

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "details": details},
        )

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

    @app.exception_handler(UnknownStrategyError)
    async def unknown_strategy_handler(request: Request, exc: UnknownStrategyError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": str(exc)})

    @app.exception_handler(InvalidStateError)
    async def invalid_state_handler(request: Request, exc: InvalidStateError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"error": str(exc)})

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        reference = str(uuid4())
        logger.error(
            "api.internal_error",
            reference=reference,
            path=request.url.path,
            error=str(exc),
            exc_info=exc,
        )
        content = {"error": "Internal server error", "reference": reference}
        if expose_errors:
            content["message"] = str(exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)

    # === Health & metrics ===

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            **monitoring.get_health_status(),
            "portfolio": coordinator.state.value,
            "gateway": await context.gateway.get_status(),
        }

    @app.get("/metrics")
    async def metrics() -> Dict[str, Any]:
        return {
            "monitoring": monitoring.get_metrics(),
            "risk": risk_engine.get_status(),
            "coordinator": coordinator.get_status(),
        }

    @app.get("/events")
    async def events(
        limit: int = Query(default=50, ge=1, le=1000),
        severity: Optional[Severity] = None,
    ) -> Dict[str, Any]:
        items = monitoring.get_security_events(limit=limit, severity=severity)
        return {"events": [_dump(e) for e in items], "count": len(items)}

    # === Portfolio ===

    @app.get("/portfolio")
    async def portfolio() -> Dict[str, Any]:
        return _dump(coordinator.get_portfolio_status())

    @app.post("/portfolio/start")
    async def start_portfolio() -> Dict[str, Any]:
        await coordinator.start()
        return _portfolio_state()

    @app.post("/portfolio/stop")
    async def stop_portfolio() -> Dict[str, Any]:
        await coordinator.stop()
        return _portfolio_state()

    @app.post("/portfolio/emergency-stop")
    async def emergency_stop(body: Optional[EmergencyStopRequest] = None) -> Dict[str, Any]:
        reason = body.reason if body is not None else EmergencyStopRequest().reason
        triggered = await coordinator.emergency_stop(reason)
        return {**_portfolio_state(), "triggered": triggered}

    @app.post("/portfolio/restart")
    async def restart_portfolio() -> Dict[str, Any]:
        await coordinator.restart()
        return _portfolio_state()

    @app.get("/diversification")
    async def diversification() -> Dict[str, Any]:
        return coordinator.get_diversification()

    # === Risk ===

    @app.get("/risk")
    async def risk() -> Dict[str, Any]:
        return _dump(risk_engine.get_risk_metrics())

    @app.get("/risk/limits")
    async def risk_limits() -> Dict[str, Any]:
        return _dump(risk_engine.limits)

    @app.put("/risk/limits")
    async def update_risk_limits(body: RiskLimitsUpdate) -> Dict[str, Any]:
        limits = risk_engine.update_risk_limits(body.model_dump(exclude_unset=True))
        return _dump(limits)

    # === Strategies ===

    @app.get("/strategies")
    async def strategies() -> Dict[str, Any]:
        return {
            "strategies": [
                _dump(coordinator.get_strategy_status(name)) for name in coordinator.strategies
            ]
        }

    @app.get("/strategies/{name}")
    async def strategy(name: str) -> Dict[str, Any]:
        return _dump(coordinator.get_strategy_status(name))

    @app.post("/strategies/{name}/enable")
    async def enable_strategy(name: str) -> Dict[str, Any]:
        return _dump(coordinator.enable_strategy(name))

    @app.post("/strategies/{name}/disable")
    async def disable_strategy(name: str) -> Dict[str, Any]:
        return _dump(coordinator.disable_strategy(name))

    @app.put("/strategies/{name}/allocation")
    async def update_allocation(name: str, body: AllocationUpdate) -> Dict[str, Any]:
        return _dump(coordinator.update_allocation(name, body.model_dump(exclude_unset=True)))

    return app

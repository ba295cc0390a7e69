"""Pytest fixtures and utilities for the portfolio bot test suite."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from portfolio_bot.core.config import (
    BotConfig,
    CoordinatorConfig,
    DatabaseConfig,
    GatewayConfig,
    MonitoringConfig,
    StrategyUnitConfig,
    SystemConfig,
)
from portfolio_bot.core.coordinator import PortfolioCoordinator
from portfolio_bot.core.models import MarketData, Position, Quote, TradeResult
from portfolio_bot.exchange.gateway import MarketGateway, SimulatedGateway
from portfolio_bot.risk.risk_engine import RiskEngine
from portfolio_bot.storage.database import Database
from portfolio_bot.strategies.base import BaseStrategy
from portfolio_bot.utils.monitoring import MonitoringSystem


# =============================================================================
# Helpers
# =============================================================================

class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs):
        self.now += timedelta(seconds=seconds, **kwargs)


class ScriptedStrategy(BaseStrategy):
    """Strategy unit whose tick runs an optional test-supplied coroutine."""

    def __init__(self, gateway, risk_engine, name="scripted", config=None, on_evaluate=None, **kwargs):
        config = config or StrategyUnitConfig(
            allocation=50.0,
            max_position_size=1000.0,
            tick_interval_seconds=3600.0,
            stop_loss_pct=None,
            take_profit_pct=None,
        )
        super().__init__(name, config, gateway, risk_engine, **kwargs)
        self.on_evaluate = on_evaluate
        self.evaluations = 0

    async def evaluate(self):
        self.evaluations += 1
        if self.on_evaluate is not None:
            await self.on_evaluate(self)


def build_mock_gateway(market: Dict[str, Any]) -> AsyncMock:
    """
    AsyncMock gateway pricing every token in USDT from ``market["prices"]``.

    ``market["edge"]`` skews every conversion (arbitrage routes) and tokens
    listed in ``market["fail_tokens"]`` cannot be sold.
    """
    gateway = AsyncMock(spec=MarketGateway)
    gateway.market = market

    def convert(token_in, token_out, amount_in):
        prices = market["prices"]
        rate = prices[token_in] / prices[token_out]
        return Decimal(str(amount_in)) * rate * (1 + market["edge"])

    def get_market_data(token_in, token_out):
        prices = market["prices"]
        return MarketData(
            token_in=token_in,
            token_out=token_out,
            price=prices[token_out] / prices[token_in],
            volume=market["volume"],
            change_24h=market["change_24h"],
        )

    def get_quote(token_in, token_out, amount_in):
        amount_out = convert(token_in, token_out, amount_in)
        return Quote(
            token_in=token_in,
            token_out=token_out,
            amount_in=Decimal(str(amount_in)),
            amount_out=amount_out,
            price_impact=market["price_impact"],
            minimum_received=amount_out,
        )

    def execute_trade(token_in, token_out, amount_in, amount_out_min, deadline):
        if token_in in market["fail_tokens"]:
            return TradeResult.failed("Execution rejected", Decimal(str(amount_in)))
        market["trades"].append((token_in, token_out, Decimal(str(amount_in))))
        return TradeResult(
            success=True,
            transaction_hash=f"tx-{len(market['trades'])}",
            amount_in=Decimal(str(amount_in)),
            amount_out=convert(token_in, token_out, amount_in),
        )

    gateway.get_market_data.side_effect = get_market_data
    gateway.get_quote.side_effect = get_quote
    gateway.execute_trade.side_effect = execute_trade
    gateway.get_balance.return_value = Decimal("0")
    gateway.get_status.return_value = {"gateway": "mock"}
    return gateway


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def make_position():
    """Factory for positions priced in USDT."""
    def _make(amount_in="100", entry_price="10", token_out="ETH", strategy="test", **kwargs):
        kwargs.setdefault("token_in", "USDT")
        return Position(
            token_out=token_out,
            amount_in=Decimal(str(amount_in)),
            entry_price=Decimal(str(entry_price)),
            strategy=strategy,
            **kwargs,
        )
    return _make


@pytest.fixture
def closed_position(make_position):
    """Factory for a position already closed with the given proceeds."""
    def _make(amount_in="100", amount_out="100", **kwargs):
        position = make_position(amount_in=amount_in, **kwargs)
        position.close(amount_out=Decimal(str(amount_out)))
        return position
    return _make


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def monitoring():
    return MonitoringSystem(MonitoringConfig())


@pytest.fixture
def risk_engine(monitoring):
    return RiskEngine(event_sink=monitoring)


@pytest.fixture
def market():
    """Mutable market state behind ``mock_gateway``."""
    return {
        "prices": {"USDT": Decimal("1"), "ETH": Decimal("2000"), "BTC": Decimal("40000")},
        "volume": Decimal("1000000"),
        "change_24h": 0.0,
        "price_impact": 0.1,
        "edge": Decimal("0"),
        "fail_tokens": set(),
        "trades": [],
    }


@pytest.fixture
def mock_gateway(market):
    return build_mock_gateway(market)


@pytest.fixture
def simulated_gateway():
    return SimulatedGateway(volatility=0.0, balances={"USDT": Decimal("100000")}, seed=7)


@pytest.fixture
def coordinator_config():
    return CoordinatorConfig(
        monitoring_interval_seconds=3600.0,
        emergency_interval_seconds=3600.0,
        stop_grace_seconds=0.5,
    )


@pytest.fixture
def coordinator(risk_engine, monitoring, coordinator_config):
    return PortfolioCoordinator(risk_engine, monitoring, config=coordinator_config)


@pytest.fixture
def make_unit(mock_gateway, risk_engine, monitoring):
    """Factory for scripted units sharing the mock gateway and risk engine."""
    def _make(name="scripted", **kwargs):
        kwargs.setdefault("monitoring", monitoring)
        return ScriptedStrategy(mock_gateway, risk_engine, name=name, **kwargs)
    return _make


@pytest.fixture
def scripted_unit(make_unit):
    return make_unit()


@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory database for testing."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def bot_config(coordinator_config):
    """Complete configuration with storage disabled and an offline market."""
    return BotConfig(
        system=SystemConfig(environment="development"),
        gateway=GatewayConfig(gateway_mode="simulated"),
        coordinator=coordinator_config,
        database=DatabaseConfig(enabled=False),
    )

"""Application context: explicitly constructed components, no globals."""
from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog

from portfolio_bot.core.config import BotConfig
from portfolio_bot.core.coordinator import PortfolioCoordinator
from portfolio_bot.exchange import MarketGateway, create_gateway
from portfolio_bot.risk.risk_engine import RiskEngine, create_risk_engine
from portfolio_bot.storage.database import Database
from portfolio_bot.strategies import STRATEGY_TYPES, BaseStrategy
from portfolio_bot.utils.fees import FeeCalculator
from portfolio_bot.utils.monitoring import MonitoringSystem

logger = structlog.get_logger(__name__)


@dataclass
class BotContext:
    """Every long-lived component of a running bot."""
    config: BotConfig
    gateway: MarketGateway
    risk_engine: RiskEngine
    monitoring: MonitoringSystem
    coordinator: PortfolioCoordinator
    database: Optional[Database] = None
    strategies: Dict[str, BaseStrategy] = field(default_factory=dict)

    async def initialize(self):
        """Open storage before the coordinator first persists."""
        if self.database is not None:
            await self.database.initialize()

    async def close(self):
        """Stop trading and release gateway and storage connections."""
        await self.coordinator.stop()
        await self.gateway.close()
        if self.database is not None:
            await self.database.close()
        logger.info("context.closed")


def build_context(
    config: Optional[BotConfig] = None,
    gateway: Optional[MarketGateway] = None,
    database: Optional[Database] = None,
) -> BotContext:
    """
    Wire the bot's components together.

    Args:
        config: Complete configuration; defaults are read from the environment
        gateway: Gateway to trade through; built from ``config.gateway`` if omitted
        database: Storage; built from ``config.database`` when enabled if omitted
    """
    config = config or BotConfig()
    gateway = gateway or create_gateway(config.gateway)

    monitoring = MonitoringSystem(config.monitoring)
    risk_engine = create_risk_engine(config.risk, event_sink=monitoring)

    if database is None and config.database.enabled:
        database = Database(config.database.database_url)

    coordinator = PortfolioCoordinator(
        risk_engine,
        monitoring,
        config=config.coordinator,
        database=database,
        disable_threshold=config.risk.disable_threshold,
    )

    fee_calculator = FeeCalculator.from_config(config.fees) if config.fees.enabled else None
    strategies: Dict[str, BaseStrategy] = {}
    for name, unit_config in config.strategies.items():
        unit = STRATEGY_TYPES[name](
            gateway,
            risk_engine,
            config=unit_config,
            name=name,
            monitoring=monitoring,
            fee_calculator=fee_calculator,
            quote_token=config.gateway.quote_token,
            slippage_pct=config.gateway.default_slippage_pct,
            deadline_seconds=config.gateway.deadline_seconds,
        )
        coordinator.register_strategy(unit)
        strategies[name] = unit

    logger.info(
        "context.built",
        gateway=type(gateway).__name__,
        strategies=list(strategies),
        database=database is not None,
    )
    return BotContext(
        config=config,
        gateway=gateway,
        risk_engine=risk_engine,
        monitoring=monitoring,
        coordinator=coordinator,
        database=database,
        strategies=strategies,
    )

"""Market gateway implementations."""
from typing import Optional

from portfolio_bot.core.config import GatewayConfig
from portfolio_bot.exchange.ccxt_gateway import CcxtGateway, RetryConfig, with_retry
from portfolio_bot.exchange.gateway import MarketGateway, SimulatedGateway


def create_gateway(config: Optional[GatewayConfig] = None) -> MarketGateway:
    """Build the gateway selected by ``gateway_mode``."""
    config = config or GatewayConfig()
    if config.gateway_mode == "simulated":
        return SimulatedGateway(
            quote_token=config.quote_token,
            volatility=config.simulation_volatility,
            seed=config.simulation_seed,
        )
    return CcxtGateway(config)


__all__ = [
    "CcxtGateway",
    "MarketGateway",
    "RetryConfig",
    "SimulatedGateway",
    "create_gateway",
    "with_retry",
]

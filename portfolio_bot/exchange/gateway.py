"""Market gateway contract and an offline simulated market.

Every gateway call may fail. Implementations raise ``GatewayError`` for
quote/market-data failures and return ``TradeResult(success=False)`` for
trades that were not executed.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4

import numpy as np
import structlog

from portfolio_bot.core.errors import GatewayError
from portfolio_bot.core.models import MarketData, Quote, TradeResult, utc_now

logger = structlog.get_logger(__name__)


class MarketGateway(ABC):
    """Quotes, market data, balances and trade submission."""

    @abstractmethod
    async def get_quote(self, token_in: str, token_out: str, amount_in: Decimal) -> Quote:
        """Quote swapping ``amount_in`` of token_in into token_out."""

    @abstractmethod
    async def execute_trade(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        amount_out_min: Decimal,
        deadline: datetime,
    ) -> TradeResult:
        """Submit a swap; never assume success."""

    @abstractmethod
    async def get_market_data(self, token_in: str, token_out: str) -> MarketData:
        """Price of token_out in token_in plus 24h statistics."""

    @abstractmethod
    async def get_balance(self, token: str) -> Decimal:
        """Free balance of ``token``."""

    async def get_status(self) -> Dict[str, Any]:
        return {"gateway": type(self).__name__}

    async def initialize(self):
        """Connect and load market metadata."""

    async def close(self):
        """Release network resources."""


class SimulatedGateway(MarketGateway):
    """
    Offline random-walk market for development and tests.

    Each token has a price in the quote token; every market-data read
    advances that token's price by a log-normal step. Fills apply a fixed
    fee spread plus a size-dependent price impact and move balances.
    """

    DEFAULT_PRICES = {
        "USDT": Decimal("1"),
        "ETH": Decimal("2000"),
        "BTC": Decimal("40000"),
        "GALA": Decimal("0.02"),
    }
    FEE_SPREAD_PCT = 0.3
    DEPTH = Decimal("250000")

    def __init__(
        self,
        prices: Optional[Dict[str, Decimal]] = None,
        balances: Optional[Dict[str, Decimal]] = None,
        quote_token: str = "USDT",
        volatility: float = 0.01,
        seed: Optional[int] = 42,
        failure_rate: float = 0.0,
    ):
        self.quote_token = quote_token
        self.prices: Dict[str, Decimal] = {
            k: Decimal(str(v)) for k, v in (prices or self.DEFAULT_PRICES).items()
        }
        self.prices.setdefault(quote_token, Decimal("1"))
        self.balances: Dict[str, Decimal] = {
            k: Decimal(str(v)) for k, v in (balances or {quote_token: Decimal("10000")}).items()
        }
        self.volatility = volatility
        self.failure_rate = failure_rate
        self._rng = np.random.default_rng(seed)
        self._high = dict(self.prices)
        self._low = dict(self.prices)
        self._open = dict(self.prices)
        self.trades_executed = 0

    def set_price(self, token: str, price: Decimal):
        """Pin a token's quote price (scenario driving)."""
        price = Decimal(str(price))
        if price <= 0:
            raise ValueError("Price must be positive")
        self.prices[token] = price
        self._high[token] = max(self._high.get(token, price), price)
        self._low[token] = min(self._low.get(token, price), price)
        self._open.setdefault(token, price)

    def _price(self, token: str) -> Decimal:
        try:
            return self.prices[token]
        except KeyError:
            raise GatewayError(f"Unknown token: {token}") from None

    def _rate(self, token_in: str, token_out: str) -> Decimal:
        """token_in paid per unit of token_out."""
        return self._price(token_out) / self._price(token_in)

    def _step(self, token: str):
        if token == self.quote_token or self.volatility <= 0:
            return
        shock = Decimal(str(float(np.exp(self._rng.normal(0.0, self.volatility)))))
        self.set_price(token, (self._price(token) * shock).quantize(Decimal("1e-12")))

    async def get_market_data(self, token_in: str, token_out: str) -> MarketData:
        self._step(token_out)
        self._step(token_in)
        price = self._rate(token_in, token_out)
        opened = self._open[token_out] / self._open[token_in]
        volume = Decimal(str(round(float(self._rng.uniform(50_000, 500_000)), 2)))
        return MarketData(
            token_in=token_in,
            token_out=token_out,
            price=price,
            volume=volume,
            high_24h=self._high[token_out] / self._price(token_in),
            low_24h=self._low[token_out] / self._price(token_in),
            change_24h=float((price - opened) / opened * 100),
        )

    async def get_quote(self, token_in: str, token_out: str, amount_in: Decimal) -> Quote:
        amount_in = Decimal(str(amount_in))
        if amount_in <= 0:
            raise GatewayError("amount_in must be positive")
        value = amount_in * self._price(token_in)
        impact = self.FEE_SPREAD_PCT + float(value / self.DEPTH * 100)
        amount_out = amount_in / self._rate(token_in, token_out) * Decimal(str(1 - impact / 100))
        return Quote(
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=amount_out,
            price_impact=impact,
            minimum_received=amount_out * Decimal("0.99"),
        )

    async def execute_trade(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        amount_out_min: Decimal,
        deadline: datetime,
    ) -> TradeResult:
        amount_in = Decimal(str(amount_in))
        if utc_now() > deadline:
            return TradeResult.failed("Trade deadline exceeded", amount_in)
        if self.failure_rate and self._rng.random() < self.failure_rate:
            return TradeResult.failed("Simulated execution failure", amount_in)
        if self.balances.get(token_in, Decimal("0")) < amount_in:
            return TradeResult.failed(f"Insufficient {token_in} balance", amount_in)

        quote = await self.get_quote(token_in, token_out, amount_in)
        if quote.amount_out < Decimal(str(amount_out_min)):
            return TradeResult.failed("Slippage tolerance exceeded", amount_in)

        self.balances[token_in] -= amount_in
        self.balances[token_out] = self.balances.get(token_out, Decimal("0")) + quote.amount_out
        self.trades_executed += 1

        logger.debug(
            "simulated_gateway.trade_executed",
            token_in=token_in,
            token_out=token_out,
            amount_in=str(amount_in),
            amount_out=str(quote.amount_out),
        )
        return TradeResult(
            success=True,
            transaction_hash=f"sim-{uuid4().hex}",
            amount_in=amount_in,
            amount_out=quote.amount_out,
        )

    async def get_balance(self, token: str) -> Decimal:
        return self.balances.get(token, Decimal("0"))

    async def get_status(self) -> Dict[str, Any]:
        return {
            "gateway": "simulated",
            "quote_token": self.quote_token,
            "tokens": sorted(self.prices),
            "trades_executed": self.trades_executed,
        }

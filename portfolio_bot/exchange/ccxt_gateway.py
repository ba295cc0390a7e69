"""ccxt-backed market gateway.

Reads live market data from any ccxt exchange. In ``paper`` mode fills are
simulated at the quoted order-book price; in ``live`` mode market orders
are submitted. Every ccxt failure surfaces as ``GatewayError``.
"""
import asyncio
import functools
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

import ccxt.async_support as ccxt
import structlog

from portfolio_bot.core.config import GatewayConfig
from portfolio_bot.core.errors import GatewayError
from portfolio_bot.core.models import MarketData, Quote, TradeResult, utc_now
from portfolio_bot.exchange.gateway import MarketGateway

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0
    RATE_LIMIT_BASE_DELAY = 60.0
    RATE_LIMIT_MAX_DELAY = 300.0


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = (ccxt.NetworkError, ccxt.ExchangeNotAvailable, ccxt.RequestTimeout),
):
    """Decorator for adding retry logic with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except ccxt.RateLimitExceeded as e:
                    # RateLimitExceeded is a NetworkError subclass; back off harder
                    last_exception = e
                    if attempt >= max_retries:
                        break
                    delay = min(
                        RetryConfig.RATE_LIMIT_BASE_DELAY * (2 ** attempt),
                        RetryConfig.RATE_LIMIT_MAX_DELAY,
                    )
                    logger.warning(
                        f"{func.__name__}.rate_limit_hit",
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    await asyncio.sleep(delay)
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt >= max_retries:
                        break
                    delay = min(base_delay * (exponential_base ** attempt), max_delay)
                    logger.warning(
                        f"{func.__name__}.retry_attempt",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            logger.error(
                f"{func.__name__}.max_retries_exceeded",
                max_retries=max_retries,
                last_error=str(last_exception),
            )
            raise last_exception

        return wrapper
    return decorator


def _dec(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class CcxtGateway(MarketGateway):
    """Market gateway over a ccxt exchange.

    Token pairs resolve to a market symbol: buying ``token_out`` with
    ``token_in`` uses ``TOKEN_OUT/TOKEN_IN``; if only the inverse market
    exists the swap is a sell on ``TOKEN_IN/TOKEN_OUT``.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        exchange: Optional[Any] = None,
        paper_balances: Optional[Dict[str, Decimal]] = None,
    ):
        self.config = config or GatewayConfig()
        self.paper = self.config.gateway_mode != "live"

        if exchange is None:
            exchange_class = getattr(ccxt, self.config.exchange_id, None)
            if exchange_class is None:
                raise GatewayError(f"Unsupported exchange: {self.config.exchange_id}")
            exchange = exchange_class({
                "apiKey": self.config.api_key,
                "secret": self.config.api_secret,
                "enableRateLimit": True,
                "timeout": self.config.timeout * 1000,
            })
        self.exchange = exchange
        self.paper_balances: Dict[str, Decimal] = dict(
            paper_balances or {self.config.quote_token: Decimal("10000")}
        )
        self._markets_loaded = False

    async def initialize(self):
        """Load exchange markets."""
        await self._call(self._load_markets)
        self._markets_loaded = True
        logger.info(
            "ccxt_gateway.initialized",
            exchange=self.config.exchange_id,
            mode=self.config.gateway_mode,
            markets=len(self.exchange.markets or {}),
        )

    async def close(self):
        await self.exchange.close()

    # === Raw exchange calls ===

    @with_retry()
    async def _load_markets(self):
        return await self.exchange.load_markets()

    @with_retry()
    async def _fetch_ticker(self, symbol: str) -> Dict[str, Any]:
        return await self.exchange.fetch_ticker(symbol)

    @with_retry()
    async def _fetch_order_book(self, symbol: str, limit: int = 50) -> Dict[str, Any]:
        return await self.exchange.fetch_order_book(symbol, limit)

    @with_retry()
    async def _fetch_balance(self) -> Dict[str, Any]:
        return await self.exchange.fetch_balance()

    async def _call(self, fn, *args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except ccxt.BaseError as e:
            logger.error(
                "ccxt_gateway.exchange_error",
                call=fn.__name__,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise GatewayError(f"{type(e).__name__}: {e}") from e

    async def _resolve(self, token_in: str, token_out: str) -> Tuple[str, str]:
        if not self._markets_loaded:
            await self.initialize()
        markets = self.exchange.markets or {}
        direct = f"{token_out}/{token_in}"
        inverse = f"{token_in}/{token_out}"
        if direct in markets:
            return direct, "buy"
        if inverse in markets:
            return inverse, "sell"
        raise GatewayError(f"No market for {token_in} -> {token_out}")

    # === Gateway contract ===

    async def get_market_data(self, token_in: str, token_out: str) -> MarketData:
        symbol, side = await self._resolve(token_in, token_out)
        ticker = await self._call(self._fetch_ticker, symbol)

        last = _dec(ticker.get("last") or ticker.get("close"))
        if last <= 0:
            raise GatewayError(f"No price for {symbol}")
        high = _dec(ticker.get("high"))
        low = _dec(ticker.get("low"))

        if side == "sell":
            # Inverse market: express everything as token_in per token_out
            price = 1 / last
            high, low = (1 / low if low > 0 else Decimal("0")), (1 / high if high > 0 else Decimal("0"))
            change = -float(ticker.get("percentage") or 0)
        else:
            price = last
            change = float(ticker.get("percentage") or 0)

        return MarketData(
            token_in=token_in,
            token_out=token_out,
            price=price,
            volume=_dec(ticker.get("quoteVolume") or ticker.get("baseVolume")),
            high_24h=high,
            low_24h=low,
            change_24h=change,
        )

    async def get_quote(self, token_in: str, token_out: str, amount_in: Decimal) -> Quote:
        amount_in = Decimal(str(amount_in))
        if amount_in <= 0:
            raise GatewayError("amount_in must be positive")

        symbol, side = await self._resolve(token_in, token_out)
        book = await self._call(self._fetch_order_book, symbol)
        levels = book.get("asks" if side == "buy" else "bids") or []
        if not levels:
            raise GatewayError(f"Empty order book for {symbol}")

        remaining = amount_in
        amount_out = Decimal("0")
        for level in levels:
            price, size = _dec(level[0]), _dec(level[1])
            if side == "buy":
                # Spend quote currency on asks
                cost = price * size
                take = min(cost, remaining)
                amount_out += take / price
            else:
                # Sell base currency into bids
                take = min(size, remaining)
                amount_out += take * price
            remaining -= take
            if remaining <= 0:
                break

        if remaining > 0:
            raise GatewayError(f"Insufficient order book depth for {amount_in} on {symbol}")

        best = _dec(levels[0][0])
        filled_in = amount_in
        if side == "buy":
            avg_price = filled_in / amount_out
            impact = float((avg_price - best) / best * 100)
        else:
            avg_price = amount_out / filled_in
            impact = float((best - avg_price) / best * 100)

        slippage = Decimal(str(1 - self.config.default_slippage_pct / 100))
        return Quote(
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=amount_out,
            price_impact=impact,
            minimum_received=amount_out * slippage,
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

        try:
            quote = await self.get_quote(token_in, token_out, amount_in)
        except GatewayError as e:
            return TradeResult.failed(str(e), amount_in)

        if quote.amount_out < Decimal(str(amount_out_min)):
            return TradeResult.failed("Slippage tolerance exceeded", amount_in)

        if self.paper:
            return self._simulate_trade(token_in, token_out, amount_in, quote)

        symbol, side = await self._resolve(token_in, token_out)
        # Market orders are sized in the base currency
        amount = quote.amount_out if side == "buy" else amount_in
        try:
            order = await self.exchange.create_order(symbol, "market", side, float(amount))
        except ccxt.BaseError as e:
            logger.error(
                "ccxt_gateway.order_error",
                symbol=symbol,
                side=side,
                amount=str(amount),
                error=str(e),
            )
            return TradeResult.failed(f"{type(e).__name__}: {e}", amount_in)

        filled = _dec(order.get("filled"))
        cost = _dec(order.get("cost"))
        amount_out = filled if side == "buy" else cost
        logger.info(
            "ccxt_gateway.order_filled",
            symbol=symbol,
            side=side,
            order_id=order.get("id"),
            filled=str(filled),
            cost=str(cost),
        )
        return TradeResult(
            success=True,
            transaction_hash=str(order.get("id")),
            amount_in=amount_in,
            amount_out=amount_out or quote.amount_out,
        )

    def _simulate_trade(
        self, token_in: str, token_out: str, amount_in: Decimal, quote: Quote
    ) -> TradeResult:
        """Simulate a fill for paper trading."""
        if self.paper_balances.get(token_in, Decimal("0")) < amount_in:
            return TradeResult.failed(f"Insufficient {token_in} balance", amount_in)

        self.paper_balances[token_in] -= amount_in
        self.paper_balances[token_out] = (
            self.paper_balances.get(token_out, Decimal("0")) + quote.amount_out
        )
        logger.warning(
            "ccxt_gateway.paper_trade",
            token_in=token_in,
            token_out=token_out,
            amount_in=str(amount_in),
            amount_out=str(quote.amount_out),
        )
        return TradeResult(
            success=True,
            transaction_hash=f"paper-{uuid4().hex}",
            amount_in=amount_in,
            amount_out=quote.amount_out,
        )

    async def get_balance(self, token: str) -> Decimal:
        if self.paper:
            return self.paper_balances.get(token, Decimal("0"))
        balance = await self._call(self._fetch_balance)
        return _dec((balance.get("free") or {}).get(token))

    async def get_status(self) -> Dict[str, Any]:
        return {
            "gateway": "ccxt",
            "exchange": self.config.exchange_id,
            "mode": self.config.gateway_mode,
            "markets_loaded": self._markets_loaded,
        }

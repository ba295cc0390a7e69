"""Flat-fee profitability pre-filter.

Strategy units may use this to skip trades that cannot cover the
per-transaction fee before ever proposing them. It is independent of, and
never overrides, the risk engine's admission check.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Union

import structlog

from portfolio_bot.core.config import FeeConfig

logger = structlog.get_logger(__name__)

Number = Union[Decimal, float, int, str]


@dataclass
class FeeCalculation:
    """Profitability of a trade after the flat fee, all in quote units."""
    fee: Decimal
    gross_profit: Decimal
    net_profit: Decimal
    net_profit_pct: Decimal
    minimum_profit_required: Decimal
    is_profitable: bool


class FeeCalculator:
    """Compares expected profit against a flat per-transaction fee."""

    def __init__(self, flat_fee: Number = 1, fee_token_value: Number = Decimal("0.02")):
        self.flat_fee = Decimal(str(flat_fee))
        self.fee_token_value = Decimal(str(fee_token_value))

    @classmethod
    def from_config(cls, config: FeeConfig) -> "FeeCalculator":
        return cls(flat_fee=config.flat_fee, fee_token_value=config.fee_token_value)

    @property
    def fee_in_quote(self) -> Decimal:
        return self.flat_fee * self.fee_token_value

    def calculate(
        self, amount_in: Number, expected_amount_out: Number, transactions: int = 1
    ) -> FeeCalculation:
        """
        Net profit of swapping ``amount_in`` for ``expected_amount_out``.

        Args:
            amount_in: Quote amount committed
            expected_amount_out: Quote value expected back
            transactions: Number of fee-bearing transactions in the trade
        """
        amount_in = Decimal(str(amount_in))
        fee = self.fee_in_quote * transactions
        gross = Decimal(str(expected_amount_out)) - amount_in
        net = gross - fee
        pct = (net / amount_in * 100) if amount_in > 0 else Decimal("0")
        return FeeCalculation(
            fee=fee,
            gross_profit=gross,
            net_profit=net,
            net_profit_pct=pct,
            minimum_profit_required=fee,
            is_profitable=net > 0 and net >= fee,
        )

    def is_profitable(
        self, amount_in: Number, expected_amount_out: Number, transactions: int = 1
    ) -> bool:
        calculation = self.calculate(amount_in, expected_amount_out, transactions)
        if not calculation.is_profitable:
            logger.debug(
                "fees.unprofitable_trade",
                amount_in=str(amount_in),
                net_profit=str(calculation.net_profit),
                fee=str(calculation.fee),
            )
        return calculation.is_profitable

    def minimum_move_pct(self, amount_in: Number, transactions: int = 1) -> Decimal:
        """Price move (in %) a trade of ``amount_in`` needs to clear twice the fees."""
        amount_in = Decimal(str(amount_in))
        if amount_in <= 0:
            return Decimal("0")
        return self.fee_in_quote * transactions * 2 / amount_in * 100

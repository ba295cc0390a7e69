"""Exception hierarchy for the portfolio trading bot.

Admission rejections are not errors and never raise; see ``AdmissionResult``.
"""


class PortfolioBotError(Exception):
    """Base class for all bot errors."""


class ValidationError(PortfolioBotError, ValueError):
    """Malformed limits, out-of-range allocations or invalid token identifiers."""


class UnknownStrategyError(PortfolioBotError, KeyError):
    """No strategy unit is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown strategy: {self.name}"


class InvalidStateError(PortfolioBotError):
    """Requested transition is not allowed from the current portfolio state."""


class GatewayError(PortfolioBotError):
    """Market gateway call failed (network, exchange or simulated failure)."""

"""Multi-strategy trading controller with a portfolio risk and allocation engine."""

__version__ = "1.0.0"

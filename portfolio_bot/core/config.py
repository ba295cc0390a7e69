"""Configuration management for the portfolio trading bot."""

from typing import Literal, Optional

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    environment: Literal["development", "production", "test"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Portfolio Bot", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")

    @computed_field
    @property
    def is_production(self) -> bool:
        """Production hides internal error details from API clients."""
        return self.environment == "production"


# =============================================================================
# Market Gateway Configuration
# =============================================================================


class GatewayConfig(BaseSettings):
    """Market gateway configuration.

    ``simulated`` runs an offline random-walk market, ``paper`` reads live
    market data through ccxt but simulates fills, ``live`` submits real orders.
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    gateway_mode: Literal["simulated", "paper", "live"] = Field(
        default="simulated", validation_alias="GATEWAY_MODE"
    )
    exchange_id: str = Field(default="binance", validation_alias="GATEWAY_EXCHANGE_ID")
    api_key: str = Field(default="", validation_alias="GATEWAY_API_KEY")
    api_secret: str = Field(default="", validation_alias="GATEWAY_API_SECRET")
    timeout: int = Field(default=30, validation_alias="GATEWAY_TIMEOUT")
    retry_attempts: int = Field(default=3, validation_alias="GATEWAY_RETRY_ATTEMPTS")

    quote_token: str = Field(default="USDT", validation_alias="GATEWAY_QUOTE_TOKEN")
    default_slippage_pct: float = Field(
        default=1.0, validation_alias="GATEWAY_DEFAULT_SLIPPAGE_PCT"
    )
    deadline_seconds: int = Field(default=300, validation_alias="GATEWAY_DEADLINE_SECONDS")

    # Simulated market
    simulation_seed: int = Field(default=42, validation_alias="SIMULATION_SEED")
    simulation_volatility: float = Field(
        default=0.01, validation_alias="SIMULATION_VOLATILITY"
    )

    @computed_field
    @property
    def is_live(self) -> bool:
        """Check if real orders are being submitted."""
        return self.gateway_mode == "live"


# =============================================================================
# Risk Limits Configuration
# =============================================================================


class RiskLimitsConfig(BaseSettings):
    """Default portfolio risk limits and scoring policy."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    max_total_exposure: float = Field(default=10000.0, validation_alias="RISK_MAX_TOTAL_EXPOSURE")
    max_position_size: float = Field(default=1000.0, validation_alias="RISK_MAX_POSITION_SIZE")
    max_daily_loss: float = Field(default=500.0, validation_alias="RISK_MAX_DAILY_LOSS")
    max_drawdown: float = Field(default=0.15, validation_alias="RISK_MAX_DRAWDOWN")
    max_correlation: float = Field(default=0.7, validation_alias="RISK_MAX_CORRELATION")
    max_leverage: float = Field(default=1.0, validation_alias="RISK_MAX_LEVERAGE")
    min_liquidity: float = Field(default=10000.0, validation_alias="RISK_MIN_LIQUIDITY")
    max_volatility: float = Field(default=0.5, validation_alias="RISK_MAX_VOLATILITY")

    # Scoring policy
    admission_threshold: float = Field(default=80.0, validation_alias="RISK_ADMISSION_THRESHOLD")
    disable_threshold: float = Field(default=70.0, validation_alias="RISK_DISABLE_THRESHOLD")
    correlation_window: int = Field(default=50, validation_alias="RISK_CORRELATION_WINDOW")

    @field_validator("max_drawdown", "max_correlation", "max_volatility")
    @classmethod
    def validate_fraction(cls, v):
        """Validate that fractional limits are in (0, 1]."""
        if v <= 0 or v > 1:
            raise ValueError("Fractional limits must be between 0 and 1")
        return v

    @field_validator("admission_threshold", "disable_threshold")
    @classmethod
    def validate_threshold(cls, v):
        """Validate that score thresholds fit the 0-100 score range."""
        if v <= 0 or v > 100:
            raise ValueError("Score thresholds must be between 0 and 100")
        return v


# =============================================================================
# Portfolio Coordinator Configuration
# =============================================================================


class CoordinatorConfig(BaseSettings):
    """Monitoring cadence, diversification and emergency thresholds."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    monitoring_interval_seconds: float = Field(
        default=300.0, validation_alias="MONITORING_INTERVAL_SECONDS"
    )
    emergency_interval_seconds: float = Field(
        default=30.0, validation_alias="EMERGENCY_INTERVAL_SECONDS"
    )
    # How long a stop waits for ticks with a gateway call in flight
    stop_grace_seconds: float = Field(default=10.0, validation_alias="STOP_GRACE_SECONDS")
    # Closed positions stay in memory this long; storage keeps them afterwards
    closed_position_retention_hours: float = Field(
        default=24.0, validation_alias="CLOSED_POSITION_RETENTION_HOURS"
    )

    rebalance_threshold: float = Field(default=0.10, validation_alias="REBALANCE_THRESHOLD")
    over_allocation_factor: float = Field(default=1.10, validation_alias="OVER_ALLOCATION_FACTOR")
    rebalance_close_fraction: float = Field(
        default=0.10, validation_alias="REBALANCE_CLOSE_FRACTION"
    )

    emergency_stop_loss: float = Field(default=0.20, validation_alias="EMERGENCY_STOP_LOSS")
    max_drawdown: float = Field(default=0.15, validation_alias="PORTFOLIO_MAX_DRAWDOWN")

    max_correlation: float = Field(default=0.60, validation_alias="DIVERSIFICATION_MAX_CORRELATION")
    max_exposure_per_token: float = Field(
        default=0.30, validation_alias="MAX_EXPOSURE_PER_TOKEN"
    )
    max_exposure_per_strategy: float = Field(
        default=0.40, validation_alias="MAX_EXPOSURE_PER_STRATEGY"
    )

    @field_validator(
        "rebalance_threshold",
        "rebalance_close_fraction",
        "emergency_stop_loss",
        "max_drawdown",
        "max_correlation",
        "max_exposure_per_token",
        "max_exposure_per_strategy",
    )
    @classmethod
    def validate_fraction(cls, v):
        """Validate that fractions are between 0 and 1."""
        if v < 0 or v > 1:
            raise ValueError("Fraction must be between 0 and 1")
        return v


# =============================================================================
# Strategy Unit Configuration
# =============================================================================


class StrategyUnitConfig(BaseSettings):
    """Settings shared by every strategy family.

    Subclasses set ``env_prefix`` so ``DCA_ALLOCATION=35`` overrides only the
    DCA unit.
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    enabled: bool = True
    allocation: float = 0.0
    risk_level: Literal["low", "medium", "high"] = "medium"
    max_position_size: float = 500.0
    tick_interval_seconds: float = 60.0
    symbol: str = "ETH"
    stop_loss_pct: Optional[float] = None
    take_profit_pct: Optional[float] = None

    @field_validator("allocation")
    @classmethod
    def validate_allocation(cls, v):
        """Validate that allocation is between 0 and 100."""
        if v < 0 or v > 100:
            raise ValueError("Allocation must be between 0 and 100")
        return v


class DCAConfig(StrategyUnitConfig):
    """Dollar-cost averaging unit."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", env_prefix="DCA_"
    )

    allocation: float = 40.0
    risk_level: Literal["low", "medium", "high"] = "low"
    max_position_size: float = 1000.0
    stop_loss_pct: Optional[float] = 15.0
    take_profit_pct: Optional[float] = 25.0

    investment_amount: float = 100.0
    interval_hours: float = 24.0
    max_investments: int = 30
    price_drop_threshold_pct: float = 10.0
    volatility_threshold_pct: float = 20.0


class GridConfig(StrategyUnitConfig):
    """Grid trading unit."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", env_prefix="GRID_"
    )

    allocation: float = 25.0
    max_position_size: float = 500.0
    tick_interval_seconds: float = 30.0

    grid_spacing_pct: float = 2.0
    grid_levels: int = 10
    base_amount: float = 50.0
    price_tolerance_pct: float = 0.5
    rebalance_threshold_pct: float = 5.0


class MomentumConfig(StrategyUnitConfig):
    """Momentum unit."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", env_prefix="MOMENTUM_"
    )

    allocation: float = 10.0
    risk_level: Literal["low", "medium", "high"] = "high"
    max_position_size: float = 200.0
    tick_interval_seconds: float = 30.0
    stop_loss_pct: Optional[float] = 5.0
    take_profit_pct: Optional[float] = 10.0

    lookback_period: int = 20
    momentum_threshold_pct: float = 2.0
    volume_threshold: float = 10000.0
    trade_amount: float = 100.0
    cooldown_seconds: float = 300.0
    max_price_impact_pct: float = 2.0


class ScalpingConfig(StrategyUnitConfig):
    """Scalping unit, disabled by default."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", env_prefix="SCALPING_"
    )

    enabled: bool = False
    allocation: float = 5.0
    risk_level: Literal["low", "medium", "high"] = "high"
    max_position_size: float = 100.0
    tick_interval_seconds: float = 10.0
    stop_loss_pct: Optional[float] = 0.3
    take_profit_pct: Optional[float] = 0.5

    trade_amount: float = 25.0
    max_trades_per_hour: int = 10
    cooldown_seconds: float = 30.0
    min_volume: float = 5000.0


class ArbitrageConfig(StrategyUnitConfig):
    """Triangular arbitrage unit."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", env_prefix="ARBITRAGE_"
    )

    allocation: float = 20.0
    max_position_size: float = 300.0
    tick_interval_seconds: float = 15.0

    bridge_token: str = "BTC"
    min_profit_pct: float = 0.5
    trade_amount: float = 100.0
    cooldown_seconds: float = 60.0


# =============================================================================
# Monitoring & Fees Configuration
# =============================================================================


class MonitoringConfig(BaseSettings):
    """Security event retention and trade-burst detection."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    trade_burst_threshold: int = Field(default=20, validation_alias="TRADE_BURST_THRESHOLD")
    trade_burst_window_seconds: float = Field(
        default=300.0, validation_alias="TRADE_BURST_WINDOW_SECONDS"
    )
    max_events: int = Field(default=100, validation_alias="MONITORING_MAX_EVENTS")
    history_retention_hours: float = Field(
        default=24.0, validation_alias="MONITORING_HISTORY_RETENTION_HOURS"
    )


class FeeConfig(BaseSettings):
    """Flat per-transaction fee used by the profitability pre-filter."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    enabled: bool = Field(default=True, validation_alias="FEE_FILTER_ENABLED")
    flat_fee: float = Field(default=1.0, validation_alias="FEE_FLAT_AMOUNT")
    fee_token_value: float = Field(default=0.02, validation_alias="FEE_TOKEN_VALUE")


# =============================================================================
# API, Database & Logging Configuration
# =============================================================================


class ApiConfig(BaseSettings):
    """HTTP control surface configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    enabled: bool = Field(default=True, validation_alias="API_ENABLED")
    host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    port: int = Field(default=3000, validation_alias="API_PORT")


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    enabled: bool = Field(default=True, validation_alias="DATABASE_ENABLED")
    database_url: str = Field(
        default="sqlite:///./data/portfolio_bot.db", validation_alias="DATABASE_URL"
    )


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/portfolio_bot.log", validation_alias="LOG_FILE")


# =============================================================================
# Aggregate Configuration
# =============================================================================


class BotConfig:
    """
    Container for all bot configuration sections.

    Usage:
        from portfolio_bot.core.config import bot_config

        if bot_config.dca.enabled:
            amount = bot_config.dca.investment_amount
    """

    def __init__(self, **sections):
        self.system = sections.get("system") or SystemConfig()
        self.gateway = sections.get("gateway") or GatewayConfig()
        self.risk = sections.get("risk") or RiskLimitsConfig()
        self.coordinator = sections.get("coordinator") or CoordinatorConfig()
        self.dca = sections.get("dca") or DCAConfig()
        self.grid = sections.get("grid") or GridConfig()
        self.momentum = sections.get("momentum") or MomentumConfig()
        self.scalping = sections.get("scalping") or ScalpingConfig()
        self.arbitrage = sections.get("arbitrage") or ArbitrageConfig()
        self.monitoring = sections.get("monitoring") or MonitoringConfig()
        self.fees = sections.get("fees") or FeeConfig()
        self.api = sections.get("api") or ApiConfig()
        self.database = sections.get("database") or DatabaseConfig()
        self.logging = sections.get("logging") or LoggingConfig()

    @property
    def strategies(self) -> dict:
        """Strategy unit configs keyed by unit name."""
        return {
            "dca": self.dca,
            "grid": self.grid,
            "arbitrage": self.arbitrage,
            "momentum": self.momentum,
            "scalping": self.scalping,
        }

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.gateway.is_live and (not self.gateway.api_key or not self.gateway.api_secret):
            issues.append("Live gateway mode requires GATEWAY_API_KEY and GATEWAY_API_SECRET")

        total = sum(s.allocation for s in self.strategies.values() if s.enabled)
        if abs(total - 100) > self.coordinator.rebalance_threshold * 100:
            issues.append(f"Enabled allocations sum to {total:.1f}%, expected ~100%")

        if self.risk.max_position_size > self.risk.max_total_exposure:
            issues.append("max_position_size cannot exceed max_total_exposure")

        if self.coordinator.emergency_interval_seconds > self.coordinator.monitoring_interval_seconds:
            issues.append("Emergency checks must run at least as often as monitoring cycles")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

logging_config = LoggingConfig()
database_config = DatabaseConfig()
bot_config = BotConfig()


__all__ = [
    "SystemConfig",
    "GatewayConfig",
    "RiskLimitsConfig",
    "CoordinatorConfig",
    "StrategyUnitConfig",
    "DCAConfig",
    "GridConfig",
    "MomentumConfig",
    "ScalpingConfig",
    "ArbitrageConfig",
    "MonitoringConfig",
    "FeeConfig",
    "ApiConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "BotConfig",
    "bot_config",
    "logging_config",
    "database_config",
]

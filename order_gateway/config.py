"""Configuration loader for the order gateway.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

import yaml


@dataclass
class ExchangeConfig:
    """Binance USD-M futures REST settings."""
    base_url: str = "https://testnet.binancefuture.com"
    default_symbol: str = "BTCUSDT"
    recv_window_ms: int = 60000
    timeout: float = 45.0  # testnet can be slow
    max_retries: int = 5
    retry_base_delay: float = 1.0
    max_backoff_seconds: float = 30.0


@dataclass
class ClockConfig:
    """Exchange clock synchronization settings."""
    sync_interval_seconds: float = 300.0


@dataclass
class FilterConfig:
    """Instrument filter cache settings."""
    ttl_seconds: float = 3600.0


@dataclass
class RiskConfig:
    """Protective order (stop-loss / take-profit) parameters."""
    atr_interval: str = "15m"
    atr_period: int = 14
    atr_candle_margin: int = 10
    atr_multiplier: Decimal = Decimal("1.5")
    risk_reward_ratio: Decimal = Decimal("2")
    fallback_risk_pct: Decimal = Decimal("0.02")
    working_type: str = "MARK_PRICE"
    close_position: bool = False


@dataclass
class ServerConfig:
    """HTTP route layer settings."""
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origin: str = "*"


@dataclass
class LoggingConfig:
    log_file: str = "gateway.log"
    log_level: str = "INFO"


_DECIMAL_RISK_KEYS = {"atr_multiplier", "risk_reward_ratio", "fallback_risk_pct"}


@dataclass
class GatewayConfig:
    """Complete gateway configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    clock: ClockConfig = field(default_factory=ClockConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "GatewayConfig":
        return cls()

    @classmethod
    def from_yaml(cls, config_path: str) -> "GatewayConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            GatewayConfig instance

        Example YAML:
            exchange:
              base_url: https://fapi.binance.com
              recv_window_ms: 5000
            risk:
              atr_period: 14
              atr_multiplier: 1.5
            logging:
              log_file: "${LOG_DIR}/gateway.log"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        risk = RiskConfig(**{
            k: Decimal(str(v)) if k in _DECIMAL_RISK_KEYS else v
            for k, v in data.get("risk", {}).items()
        })

        return cls(
            exchange=ExchangeConfig(**data.get("exchange", {})),
            clock=ClockConfig(**data.get("clock", {})),
            filters=FilterConfig(**data.get("filters", {})),
            risk=risk,
            server=ServerConfig(**data.get("server", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            "exchange": {
                "base_url": self.exchange.base_url,
                "default_symbol": self.exchange.default_symbol,
                "recv_window_ms": self.exchange.recv_window_ms,
                "timeout": self.exchange.timeout,
                "max_retries": self.exchange.max_retries,
                "retry_base_delay": self.exchange.retry_base_delay,
                "max_backoff_seconds": self.exchange.max_backoff_seconds,
            },
            "clock": {
                "sync_interval_seconds": self.clock.sync_interval_seconds,
            },
            "filters": {
                "ttl_seconds": self.filters.ttl_seconds,
            },
            "risk": {
                "atr_interval": self.risk.atr_interval,
                "atr_period": self.risk.atr_period,
                "atr_candle_margin": self.risk.atr_candle_margin,
                "atr_multiplier": str(self.risk.atr_multiplier),
                "risk_reward_ratio": str(self.risk.risk_reward_ratio),
                "fallback_risk_pct": str(self.risk.fallback_risk_pct),
                "working_type": self.risk.working_type,
                "close_position": self.risk.close_position,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "cors_origin": self.server.cors_origin,
            },
            "logging": {
                "log_file": self.logging.log_file,
                "log_level": self.logging.log_level,
            },
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

"""Configuration for the trading core.

Supports YAML format with environment variable interpolation. The surrounding
application builds a BotConfig once and hands it to the core; the core never
reads settings files on its own.
"""
import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .rate_limit_policy import RateLimitQuota


class Venue(Enum):
    PRODUCTION = "production"
    SANDBOX = "sandbox"


BASE_URLS = {
    Venue.PRODUCTION: "https://api.binance.com",
    Venue.SANDBOX: "https://testnet.binance.vision",
}


@dataclass
class ExchangeConfig:
    """Binance connection settings."""
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    quote_asset: str = "USDT"
    venue: Venue = Venue.PRODUCTION
    read_only: bool = True
    base_url: Optional[str] = None  # overrides the venue default
    timeout: int = 10
    recv_window_ms: int = 5000
    rules_ttl_seconds: float = 4 * 60 * 60
    max_backoff_seconds: float = 60.0

    @property
    def resolved_base_url(self) -> str:
        return (self.base_url or BASE_URLS[self.venue]).rstrip("/")

    @property
    def is_sandbox(self) -> bool:
        return self.venue is Venue.SANDBOX


@dataclass
class StrategyConfig:
    """Entry/exit thresholds.

    Percentages are fractions: -0.04 is a 4% drop, 0.02 a 2% take-profit.
    """
    universe_size: int = 150
    min_drop_pct: Decimal = Decimal("-0.04")
    take_profit_pct: Decimal = Decimal("0.02")
    stop_loss_pct: Decimal = Decimal("0.02")
    time_stop: timedelta = timedelta(hours=6)
    cooldown: timedelta = timedelta(hours=1)

    def normalize(self) -> List[str]:
        """Clamp every field into its legal range.

        Returns:
            Human-readable warnings; none of them are fatal.
        """
        warnings: List[str] = []

        self.universe_size = max(10, min(500, int(self.universe_size)))

        if self.min_drop_pct > 0:
            # "4" means 4%; "0.04" means 4% too
            if self.min_drop_pct >= 1:
                self.min_drop_pct = -self.min_drop_pct / 100
            else:
                self.min_drop_pct = -self.min_drop_pct
            warnings.append(f"Drop threshold was positive; using {self.min_drop_pct}")
        elif self.min_drop_pct == 0:
            self.min_drop_pct = Decimal("-0.04")
            warnings.append("Drop threshold was zero; using -0.04")

        self.take_profit_pct = _clamp(self.take_profit_pct, Decimal("0.001"), Decimal("0.10"))
        self.stop_loss_pct = _clamp(self.stop_loss_pct, Decimal("0.001"), Decimal("0.10"))
        if self.take_profit_pct <= self.stop_loss_pct:
            warnings.append(
                f"Take-profit {self.take_profit_pct} does not exceed stop-loss {self.stop_loss_pct}"
            )

        if self.time_stop < timedelta(minutes=15):
            self.time_stop = timedelta(minutes=15)
        if self.cooldown <= timedelta(0):
            self.cooldown = timedelta(minutes=5)
        return warnings

    def __str__(self) -> str:
        return (
            f"N={self.universe_size}, drop<={self.min_drop_pct:%}, TP {self.take_profit_pct:%}, "
            f"SL {self.stop_loss_pct:%}, time stop {self.time_stop}, cooldown {self.cooldown}"
        )


def _clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return max(low, min(high, value))


@dataclass
class RankingConfig:
    """Ranking pipeline settings."""
    lookback_minutes: int = 180
    max_concurrency: int = 12
    symbol_timeout_seconds: float = 15.0
    sparse_retry_seconds: int = 30
    excluded_fragments: Tuple[str, ...] = ("BUSD", "FDUSD")


@dataclass
class ExecutionConfig:
    """Trade cycle settings."""
    settle_delay_seconds: float = 1.0
    settle_polls: int = 3
    settle_backoff_seconds: float = 0.5
    settle_tolerance: Decimal = Decimal("0.01")
    spend_margin: Decimal = Decimal("1.05")  # times minNotional
    equity_fraction: Decimal = Decimal("0.99")
    skip_same_symbol: bool = True


@dataclass
class ScheduleConfig:
    """Runner timer settings."""
    scan_interval_seconds: float = 60.0
    monitor_interval_seconds: float = 60.0


@dataclass
class RateLimitConfig:
    """Client-side request pacing."""
    orders_per_second: int = 8
    default_per_second: int = 20

    def to_quotas(self) -> Dict[str, RateLimitQuota]:
        orders = RateLimitQuota(requests_per_window=self.orders_per_second, window_seconds=1)
        return {
            "/api/v3/order": orders,
            "/api/v3/order/oco": orders,
            "default": RateLimitQuota(requests_per_window=self.default_per_second, window_seconds=1),
        }


@dataclass
class LoggingConfig:
    log_file: Optional[str] = "torra_trade.log"
    log_level: str = "INFO"


@dataclass
class BotConfig:
    """Complete core configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        exchange_raw = dict(data.get("exchange") or {})
        if "venue" in exchange_raw:
            exchange_raw["venue"] = Venue(str(exchange_raw["venue"]).lower())

        strategy_raw = dict(data.get("strategy") or {})
        strategy_kwargs: Dict[str, Any] = {}
        for k, v in strategy_raw.items():
            if k.endswith("_pct"):
                strategy_kwargs[k] = Decimal(str(v))
            elif k == "time_stop_hours":
                strategy_kwargs["time_stop"] = timedelta(hours=float(v))
            elif k == "cooldown_minutes":
                strategy_kwargs["cooldown"] = timedelta(minutes=float(v))
            else:
                strategy_kwargs[k] = v

        ranking_raw = dict(data.get("ranking") or {})
        if "excluded_fragments" in ranking_raw:
            ranking_raw["excluded_fragments"] = tuple(ranking_raw["excluded_fragments"])

        execution_raw = {
            k: Decimal(str(v)) if k in ("settle_tolerance", "spend_margin", "equity_fraction") else v
            for k, v in (data.get("execution") or {}).items()
        }

        return cls(
            exchange=ExchangeConfig(**exchange_raw),
            strategy=StrategyConfig(**strategy_kwargs),
            ranking=RankingConfig(**ranking_raw),
            execution=ExecutionConfig(**execution_raw),
            schedule=ScheduleConfig(**(data.get("schedule") or {})),
            rate_limit=RateLimitConfig(**(data.get("rate_limit") or {})),
            logging=LoggingConfig(**(data.get("logging") or {})),
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "BotConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            BotConfig instance

        Example YAML:
            exchange:
              venue: sandbox
              quote_asset: USDT
              api_key: "${BINANCE_API_KEY_SANDBOX}"
            strategy:
              min_drop_pct: -0.04
              take_profit_pct: 0.02
              cooldown_minutes: 60
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
        return cls.from_dict(data)

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file. Credentials are never written."""
        data = {
            "exchange": {
                "quote_asset": self.exchange.quote_asset,
                "venue": self.exchange.venue.value,
                "read_only": self.exchange.read_only,
                "base_url": self.exchange.base_url,
                "timeout": self.exchange.timeout,
                "recv_window_ms": self.exchange.recv_window_ms,
                "rules_ttl_seconds": self.exchange.rules_ttl_seconds,
                "max_backoff_seconds": self.exchange.max_backoff_seconds,
            },
            "strategy": {
                "universe_size": self.strategy.universe_size,
                "min_drop_pct": str(self.strategy.min_drop_pct),
                "take_profit_pct": str(self.strategy.take_profit_pct),
                "stop_loss_pct": str(self.strategy.stop_loss_pct),
                "time_stop_hours": self.strategy.time_stop.total_seconds() / 3600,
                "cooldown_minutes": self.strategy.cooldown.total_seconds() / 60,
            },
            "ranking": {
                "lookback_minutes": self.ranking.lookback_minutes,
                "max_concurrency": self.ranking.max_concurrency,
                "symbol_timeout_seconds": self.ranking.symbol_timeout_seconds,
                "sparse_retry_seconds": self.ranking.sparse_retry_seconds,
                "excluded_fragments": list(self.ranking.excluded_fragments),
            },
            "execution": {
                "settle_delay_seconds": self.execution.settle_delay_seconds,
                "settle_polls": self.execution.settle_polls,
                "settle_backoff_seconds": self.execution.settle_backoff_seconds,
                "settle_tolerance": str(self.execution.settle_tolerance),
                "spend_margin": str(self.execution.spend_margin),
                "equity_fraction": str(self.execution.equity_fraction),
                "skip_same_symbol": self.execution.skip_same_symbol,
            },
            "schedule": {
                "scan_interval_seconds": self.schedule.scan_interval_seconds,
                "monitor_interval_seconds": self.schedule.monitor_interval_seconds,
            },
            "rate_limit": {
                "orders_per_second": self.rate_limit.orders_per_second,
                "default_per_second": self.rate_limit.default_per_second,
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

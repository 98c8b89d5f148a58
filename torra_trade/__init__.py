"""
Binance Spot Dip-Entry Trading Core.

A single-exchange trading core for Binance Spot markets featuring:
- Trailing-return ranking of the most liquid quote-asset symbols (bounded fan-out)
- Inclusive drop-threshold entry decision with cooldown scheduling
- Market buy by quote notional followed by an OCO take-profit/stop-limit exit
- Exchange-legal sizing and rounding (sells sized from the observed balance)
- Signed REST client with server clock-offset tracking and one retry on drift
- Read-only mode with zero network calls for order methods
- Rate-limit policy enforcement per endpoint
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    binance_client: Binance REST client (signing, clock sync, error classes)
    symbol_rules: TTL cache of per-symbol exchange filters
    sizing: Order sizing and rounding
    ranking: Ranking pipeline
    decision: Decision engine
    execution: Venue interface and trade-cycle execution engine
    order_state: Trade cycle state machine
    paper: Simulated venue
    trader: Facade used by presentation layers
    runner: Timed scan and monitor loops
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from torra_trade.binance_client import BinanceClient
    >>> from torra_trade.config import BotConfig
    >>> from torra_trade.trader import Trader
    >>>
    >>> config = BotConfig.from_yaml("config.yaml")
    >>> async with BinanceClient(config.exchange) as client:
    ...     trader = Trader(client, config)
    ...     entered, symbol, note = await trader.try_enter()
"""

__version__ = "0.1.0"
__all__ = [
    "binance_client",
    "config",
    "decision",
    "errors",
    "execution",
    "models",
    "order_state",
    "paper",
    "ranking",
    "rate_limit_policy",
    "runner",
    "schemas",
    "secrets",
    "sizing",
    "symbol_rules",
    "trader",
]

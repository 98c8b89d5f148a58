"""Secrets management: load Binance API credentials from environment or config file.

Priority order:
1. Environment variables: BINANCE_API_KEY_<LIVE|TESTNET>, BINANCE_API_SECRET_<LIVE|TESTNET>
2. Config file: ~/.binance_config.json or custom path via ENV BINANCE_CONFIG_PATH

The config file holds either a flat {"api_key", "api_secret"} pair or one
such pair per venue under "live" / "testnet".
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional

from .config import ExchangeConfig, Venue


ENV_SUFFIX = {Venue.PRODUCTION: "LIVE", Venue.SANDBOX: "TESTNET"}


class BinanceCredentials(NamedTuple):
    api_key: str
    api_secret: str


def load_credentials(
    venue: Venue = Venue.PRODUCTION,
    config_path: Optional[str] = None,
) -> BinanceCredentials:
    """Load Binance credentials for a venue from env or config file.

    Args:
        venue: Which key pair to load
        config_path: Optional override path to config file. If not provided,
                     checks BINANCE_CONFIG_PATH env var, then ~/.binance_config.json

    Returns:
        BinanceCredentials with api_key, api_secret

    Raises:
        ValueError: If credentials are not found or incomplete
    """
    suffix = ENV_SUFFIX[venue]
    api_key = os.getenv(f"BINANCE_API_KEY_{suffix}")
    api_secret = os.getenv(f"BINANCE_API_SECRET_{suffix}")

    if api_key and api_secret:
        return BinanceCredentials(api_key=api_key, api_secret=api_secret)

    if config_path is None:
        config_path = os.getenv("BINANCE_CONFIG_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".binance_config.json")

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, ValueError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}")
        section = cfg.get(suffix.lower(), cfg)
        api_key = section.get("api_key") or api_key
        api_secret = section.get("api_secret") or api_secret

    if not api_key or not api_secret:
        raise ValueError(
            "Missing Binance credentials. Provide via:\n"
            f"  - Environment: BINANCE_API_KEY_{suffix}, BINANCE_API_SECRET_{suffix}\n"
            f"  - Config file: {config_path}\n"
            "  - BINANCE_CONFIG_PATH env var to override config location"
        )

    return BinanceCredentials(api_key=api_key, api_secret=api_secret)


def apply_credentials(exchange: ExchangeConfig, config_path: Optional[str] = None) -> ExchangeConfig:
    """Fill missing api_key/api_secret on an ExchangeConfig for its venue."""
    if exchange.api_key and exchange.api_secret:
        return exchange
    creds = load_credentials(exchange.venue, config_path)
    exchange.api_key = creds.api_key
    exchange.api_secret = creds.api_secret
    return exchange


def save_config(
    config_path: str,
    api_key: str,
    api_secret: str,
    venue: Optional[Venue] = None,
) -> None:
    """Save credentials to a config file for later use.

    WARNING: Stores secrets in plaintext. Ensure proper file permissions (600).

    Args:
        config_path: Path to save config file
        api_key: Binance API key
        api_secret: Binance API secret
        venue: Store under this venue's section; flat when None
    """
    cfg_file = Path(config_path)
    pair = {"api_key": api_key, "api_secret": api_secret}
    if venue is None:
        config = pair
    else:
        config = {}
        if cfg_file.exists():
            with cfg_file.open("r") as f:
                config = json.load(f)
        config[ENV_SUFFIX[venue].lower()] = pair
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump(config, f, indent=2)

    # Restrict permissions to owner only (Unix-like systems)
    try:
        cfg_file.chmod(0o600)
    except OSError:
        pass  # Windows doesn't support chmod

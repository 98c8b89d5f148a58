import json
import os
import stat

import pytest

from torra_trade.config import ExchangeConfig, Venue
from torra_trade.secrets import BinanceCredentials, apply_credentials, load_credentials, save_config


ENV_VARS = [
    "BINANCE_API_KEY_LIVE",
    "BINANCE_API_SECRET_LIVE",
    "BINANCE_API_KEY_TESTNET",
    "BINANCE_API_SECRET_TESTNET",
    "BINANCE_CONFIG_PATH",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_load_credentials_from_env(monkeypatch):
    """Load live credentials from environment variables."""
    monkeypatch.setenv("BINANCE_API_KEY_LIVE", "live_key")
    monkeypatch.setenv("BINANCE_API_SECRET_LIVE", "live_secret")

    creds = load_credentials()
    assert creds.api_key == "live_key"
    assert creds.api_secret == "live_secret"


def test_testnet_uses_its_own_env_pair(monkeypatch, tmp_path):
    monkeypatch.setenv("BINANCE_API_KEY_LIVE", "live_key")
    monkeypatch.setenv("BINANCE_API_SECRET_LIVE", "live_secret")
    monkeypatch.setenv("BINANCE_API_KEY_TESTNET", "test_key")
    monkeypatch.setenv("BINANCE_API_SECRET_TESTNET", "test_secret")

    creds = load_credentials(Venue.SANDBOX, config_path=str(tmp_path / "none.json"))
    assert creds == BinanceCredentials("test_key", "test_secret")


def test_load_credentials_from_flat_config_file(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "file_key", "api_secret": "file_secret"}))

    creds = load_credentials(config_path=str(config_file))
    assert creds.api_key == "file_key"
    assert creds.api_secret == "file_secret"


def test_load_credentials_from_venue_section(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({
        "live": {"api_key": "live_key", "api_secret": "live_secret"},
        "testnet": {"api_key": "test_key", "api_secret": "test_secret"},
    }))

    assert load_credentials(Venue.SANDBOX, str(config_file)).api_key == "test_key"
    assert load_credentials(Venue.PRODUCTION, str(config_file)).api_key == "live_key"


def test_config_path_from_env(tmp_path, monkeypatch):
    config_file = tmp_path / "elsewhere.json"
    config_file.write_text(json.dumps({"api_key": "k", "api_secret": "s"}))
    monkeypatch.setenv("BINANCE_CONFIG_PATH", str(config_file))

    assert load_credentials().api_key == "k"


def test_env_overrides_config_file(tmp_path, monkeypatch):
    """Environment variables take precedence over config file."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "file_key", "api_secret": "file_secret"}))
    monkeypatch.setenv("BINANCE_API_KEY_LIVE", "env_key")
    monkeypatch.setenv("BINANCE_API_SECRET_LIVE", "env_secret")

    creds = load_credentials(config_path=str(config_file))
    assert creds.api_key == "env_key"


def test_load_credentials_missing_raises():
    with pytest.raises(ValueError, match="Missing Binance credentials"):
        load_credentials(config_path="/nonexistent/path.json")


def test_corrupt_config_file_raises(tmp_path):
    config_file = tmp_path / "broken.json"
    config_file.write_text("{not json")
    with pytest.raises(ValueError, match="Failed to load config"):
        load_credentials(config_path=str(config_file))


def test_save_and_load_config(tmp_path):
    config_file = tmp_path / "saved.json"
    save_config(config_path=str(config_file), api_key="saved_key", api_secret="saved_secret")

    creds = load_credentials(config_path=str(config_file))
    assert creds == BinanceCredentials("saved_key", "saved_secret")
    if os.name == "posix":
        assert stat.S_IMODE(config_file.stat().st_mode) == 0o600


def test_save_per_venue_keeps_other_sections(tmp_path):
    config_file = tmp_path / "saved.json"
    save_config(str(config_file), "live_key", "live_secret", venue=Venue.PRODUCTION)
    save_config(str(config_file), "test_key", "test_secret", venue=Venue.SANDBOX)

    data = json.loads(config_file.read_text())
    assert set(data) == {"live", "testnet"}
    assert load_credentials(Venue.PRODUCTION, str(config_file)).api_key == "live_key"


def test_apply_credentials_fills_missing_keys(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"testnet": {"api_key": "k", "api_secret": "s"}}))
    exchange = ExchangeConfig(venue=Venue.SANDBOX)

    apply_credentials(exchange, str(config_file))
    assert (exchange.api_key, exchange.api_secret) == ("k", "s")


def test_apply_credentials_keeps_explicit_keys():
    exchange = ExchangeConfig(api_key="given", api_secret="given_secret")
    assert apply_credentials(exchange, "/nonexistent/path.json").api_key == "given"

"""Tests for environment configuration."""

import pytest

import config
from config import ConfigError, load_settings, parse_addr_labels


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch):
    monkeypatch.setattr(config, "load_dotenv", lambda *args, **kwargs: False)


def test_missing_token_refuses_to_start(monkeypatch):
    monkeypatch.delenv("DISCORD_TOKEN", raising=False)
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    with pytest.raises(ConfigError, match="DISCORD_TOKEN"):
        load_settings()


def test_missing_database_url_refuses_to_start(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "x")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(ConfigError, match="DATABASE_URL"):
        load_settings()


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "x")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("BOT_OWNER_ID", "42")
    monkeypatch.setenv("RPC_URLS_BASE", "https://a.example, https://b.example")
    monkeypatch.setenv("NOTIFY_VIA_WEBHOOK", "true")
    monkeypatch.setenv("DIGEST_MAX_ROWS", "50")
    monkeypatch.setenv("DIGEST_ADDR_LABELS", "0xABC=Treasury")

    settings = load_settings()

    assert settings.bot_owner_id == 42
    assert settings.rpc_urls["base"] == ["https://a.example", "https://b.example"]
    assert settings.rpc_urls["eth"][0] == "https://eth.llamarpc.com"
    assert settings.notify_via_webhook is True
    assert settings.digest_max_rows == 200
    assert settings.digest_addr_labels == {"0xabc": "Treasury"}


def test_dex_routers_default_and_override(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "x")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("DEX_ROUTERS_ETH", "0xABC, 0xdef")
    monkeypatch.delenv("DEX_ROUTERS_BASE", raising=False)
    monkeypatch.delenv("DEX_ROUTERS_APE", raising=False)

    settings = load_settings()

    assert settings.dex_routers["eth"] == ["0xabc", "0xdef"]
    assert settings.dex_routers["base"] == config.DEFAULT_DEX_ROUTERS["base"]
    assert settings.dex_routers["ape"] == []


def test_parse_addr_labels():
    assert parse_addr_labels("0xAbC = Vault, junk, 0xdef=Team,=x") == {"0xabc": "Vault", "0xdef": "Team"}
    assert parse_addr_labels("") == {}

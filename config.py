# config.py
import os
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_RPC_URLS: Dict[str, List[str]] = {
    "eth": [
        "https://eth.llamarpc.com",
        "https://1rpc.io/eth",
        "https://rpc.ankr.com/eth",
        "https://ethereum-rpc.publicnode.com",
    ],
    "base": [
        "https://mainnet.base.org",
        "https://base.publicnode.com",
        "https://1rpc.io/base",
        "https://base.llamarpc.com",
    ],
    "ape": [
        "https://apechain-rpc.publicnode.com",
        "https://rpc.apechain.io",
        "https://apechain.drpc.org",
    ],
}

# swap routers whose token transfers count as buys and sells
DEFAULT_DEX_ROUTERS: Dict[str, List[str]] = {
    "base": [
        "0x327df1e6de05895d2ab08513aadd9313fe505d86",
        "0x420dd381b31aef6683e2c581f93b119eee7e3f4d",
        "0xfbeef911dc5821886e1dda23b3e4f3eaffdd7930",
        "0x812e79c9c37ed676fdbdd1212d6a4e47effc6a42",
        "0xa5e0829caced8ffdd4de3c43696c57f7d7a678ff",
        "0x95ebfcb1c6b345fda69cf56c51e30421e5a35aec",
    ],
}


class ConfigError(ValueError):
    """Raised when a required setting is missing; the process must not start."""


class Settings(BaseModel):
    discord_token: str
    database_url: str
    bot_owner_id: Optional[int] = None
    dev_guild_id: Optional[int] = None

    rpc_urls: Dict[str, List[str]] = Field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_RPC_URLS.items()})
    dex_routers: Dict[str, List[str]] = Field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_DEX_ROUTERS.items()})
    poll_interval_seconds: float = 4.0
    rpc_timeout_seconds: float = 10.0
    http_timeout_seconds: float = 10.0

    eth_usd_ttl_seconds: float = 120.0
    eth_usd_fallback: float = 0.0
    coingecko_api_key: Optional[str] = None

    digest_max_rows: int = 2000
    daily_digest_catchup_minutes: int = 10
    digest_addr_labels: Dict[str, str] = Field(default_factory=dict)

    notify_via_webhook: bool = False
    relay_webhook_name: str = "MB Relay"

    max_daily_reward: float = 500.0
    seen_cache_size: int = 50_000
    api_port: int = 8000


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_int(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw.isdigit() else None


def parse_addr_labels(raw: str) -> Dict[str, str]:
    """Parses `0xabc=Name,0xdef=Other` into a lowercase address -> label map."""
    labels = {}
    for part in (raw or "").split(","):
        if "=" not in part:
            continue
        addr, label = part.split("=", 1)
        addr, label = addr.strip().lower(), label.strip()
        if addr and label:
            labels[addr] = label
    return labels


def _per_chain_list_from_env(prefix: str, defaults: Dict[str, List[str]], lowercase: bool = False) -> Dict[str, List[str]]:
    """`<PREFIX>_<CHAIN>=a,b` overrides the defaults for that chain."""
    values = {}
    for chain in DEFAULT_RPC_URLS:
        raw = os.getenv(f"{prefix}_{chain.upper()}", "")
        configured = [u.strip() for u in raw.split(",") if u.strip()]
        if lowercase:
            configured = [u.lower() for u in configured]
        values[chain] = configured or list(defaults.get(chain, []))
    return values


def load_settings() -> Settings:
    """
    Reads the environment (and a local .env file) once.
    Raises ConfigError when a required credential is missing.
    """
    load_dotenv()

    discord_token = os.getenv("DISCORD_TOKEN")
    database_url = os.getenv("DATABASE_URL")
    if not discord_token:
        raise ConfigError("DISCORD_TOKEN environment variable not set!")
    if not database_url:
        raise ConfigError("DATABASE_URL environment variable not set!")

    return Settings(
        discord_token=discord_token,
        database_url=database_url,
        bot_owner_id=_env_int("BOT_OWNER_ID"),
        dev_guild_id=_env_int("DEV_GUILD_ID"),
        rpc_urls=_per_chain_list_from_env("RPC_URLS", DEFAULT_RPC_URLS),
        dex_routers=_per_chain_list_from_env("DEX_ROUTERS", DEFAULT_DEX_ROUTERS, lowercase=True),
        poll_interval_seconds=float(os.getenv("POLL_INTERVAL_SECONDS", 4)),
        rpc_timeout_seconds=float(os.getenv("RPC_TIMEOUT_SECONDS", 10)),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", 10)),
        eth_usd_ttl_seconds=float(os.getenv("ETH_USD_TTL_SECONDS", 120)),
        eth_usd_fallback=float(os.getenv("ETH_USD_FALLBACK", 0)),
        coingecko_api_key=os.getenv("COINGECKO_API_KEY") or None,
        digest_max_rows=max(200, int(os.getenv("DIGEST_MAX_ROWS", 2000))),
        daily_digest_catchup_minutes=int(os.getenv("DAILY_DIGEST_CATCHUP_MINUTES", 10)),
        digest_addr_labels=parse_addr_labels(os.getenv("DIGEST_ADDR_LABELS", "")),
        notify_via_webhook=_env_bool("NOTIFY_VIA_WEBHOOK"),
        relay_webhook_name=os.getenv("RELAY_WEBHOOK_NAME", "MB Relay"),
        max_daily_reward=float(os.getenv("MAX_DAILY_REWARD", 500)),
        seen_cache_size=int(os.getenv("SEEN_CACHE_SIZE", 50_000)),
        api_port=int(os.getenv("API_PORT", 8000)),
    )

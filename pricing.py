# pricing.py
import asyncio
import logging
import time
from typing import Dict, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

COINGECKO_SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
COINBASE_SPOT_URL = "https://api.coinbase.com/v2/prices/{symbol}-USD/spot"
GECKOTERMINAL_TOKEN_URL = "https://api.geckoterminal.com/api/v2/networks/{network}/tokens/{address}"

COINBASE_SYMBOLS = {"ethereum": "ETH", "apecoin": "APE"}
NATIVE_COIN = {"eth": "ethereum", "base": "ethereum", "ape": "apecoin"}
GECKOTERMINAL_NETWORKS = {"eth": "eth", "base": "base", "ape": "apechain"}

ZERO_ADDRESS = "0x" + "0" * 40
# Wrapped ETH prices 1:1 with ETH
WETH_ADDRESSES = {
    "eth": "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
    "base": "0x4200000000000000000000000000000000000006",
}


class PriceService:
    """
    Best-effort USD/ETH prices. Every lookup has a fallback: the last good
    value, then the configured fallback (0 unless set).
    """

    def __init__(
        self,
        timeout: float = 10.0,
        ttl_seconds: float = 120.0,
        fallback_usd: float = 0.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.ttl_seconds = ttl_seconds
        self.fallback_usd = fallback_usd
        self.api_key = api_key
        self.transport = transport
        self._coin_cache: Dict[str, Tuple[float, float]] = {}
        self._token_cache: Dict[Tuple[str, str], Tuple[float, float]] = {}
        self._lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport, headers=headers)

    def _fresh(self, entry: Optional[Tuple[float, float]]) -> bool:
        return entry is not None and (time.monotonic() - entry[1]) < self.ttl_seconds

    async def _fetch_coingecko(self, client: httpx.AsyncClient, coin_id: str) -> Optional[float]:
        try:
            response = await client.get(COINGECKO_SIMPLE_PRICE_URL, params={"ids": coin_id, "vs_currencies": "usd"})
            response.raise_for_status()
            price = float(response.json()[coin_id]["usd"])
            return price if price > 0 else None
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"CoinGecko price for {coin_id} failed: {e}")
            return None

    async def _fetch_coinbase(self, client: httpx.AsyncClient, coin_id: str) -> Optional[float]:
        symbol = COINBASE_SYMBOLS.get(coin_id)
        if not symbol:
            return None
        try:
            response = await client.get(COINBASE_SPOT_URL.format(symbol=symbol))
            response.raise_for_status()
            price = float(response.json()["data"]["amount"])
            return price if price > 0 else None
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Coinbase price for {symbol} failed: {e}")
            return None

    async def coin_usd(self, coin_id: str) -> float:
        """
        USD price of a native coin, cached for ttl_seconds.
        Uses a double-checked lock so concurrent callers share one fetch.
        """
        entry = self._coin_cache.get(coin_id)
        if self._fresh(entry):
            return entry[0]

        async with self._lock:
            entry = self._coin_cache.get(coin_id)
            if self._fresh(entry):
                return entry[0]

            async with self._client() as client:
                price = await self._fetch_coingecko(client, coin_id)
                if price is None:
                    price = await self._fetch_coinbase(client, coin_id)

            if price is not None:
                self._coin_cache[coin_id] = (price, time.monotonic())
                return price
            if entry is not None:
                logger.info(f"Price sources failed, returning stale {coin_id} price")
                return entry[0]
            return self.fallback_usd

    async def eth_usd(self) -> float:
        return await self.coin_usd("ethereum")

    async def native_usd(self, chain: str) -> float:
        return await self.coin_usd(NATIVE_COIN.get(chain, "ethereum"))

    async def token_usd(self, chain: str, token: str) -> float:
        """GeckoTerminal token price; falls back to fdv / supply, then 0."""
        token = token.lower()
        if token == ZERO_ADDRESS:
            return await self.native_usd(chain)
        if WETH_ADDRESSES.get(chain) == token:
            return await self.eth_usd()

        key = (chain, token)
        entry = self._token_cache.get(key)
        if self._fresh(entry):
            return entry[0]

        network = GECKOTERMINAL_NETWORKS.get(chain, chain)
        url = GECKOTERMINAL_TOKEN_URL.format(network=network, address=token)
        price = None
        try:
            async with self._client() as client:
                response = await client.get(url)
                response.raise_for_status()
                attributes = response.json()["data"]["attributes"]
            price = _price_from_attributes(attributes)
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"GeckoTerminal price for {token} on {chain} failed: {e}")

        if price:
            self._token_cache[key] = (price, time.monotonic())
            return price
        if entry is not None:
            return entry[0]
        return 0.0

    async def token_to_eth(self, chain: str, token: str) -> float:
        """How much ETH one whole token is worth. 0 when unknown."""
        token = token.lower()
        if WETH_ADDRESSES.get(chain) == token or (token == ZERO_ADDRESS and NATIVE_COIN.get(chain) == "ethereum"):
            return 1.0
        token_price = await self.token_usd(chain, token)
        eth_price = await self.eth_usd()
        if not token_price or not eth_price:
            return 0.0
        return token_price / eth_price


def _price_from_attributes(attributes: dict) -> Optional[float]:
    raw = attributes.get("price_usd")
    if raw not in (None, ""):
        price = float(raw)
        if price > 0:
            return price
    fdv = attributes.get("fdv_usd")
    supply = attributes.get("normalized_total_supply") or attributes.get("total_supply")
    if fdv and supply:
        supply = float(supply)
        decimals = attributes.get("decimals")
        if attributes.get("normalized_total_supply") is None and decimals:
            supply = supply / (10 ** int(decimals))
        if supply > 0:
            return float(fdv) / supply
    return None

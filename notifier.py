# notifier.py
import asyncio
import datetime
import logging
from typing import Dict, Iterable, Optional

import discord

import schemas
from decoder import ChainFact
from digest import SubKind, fmt_eth, fmt_usd, short_addr

logger = logging.getLogger(__name__)

MINT_COLOR = 0x2ECC71
SALE_COLOR = 0xF1C40F
DIGEST_COLOR = 0x5865F2
TOKEN_BUY_COLOR = 0x00CC66
TOKEN_SELL_COLOR = 0xFF4444

OPENSEA_CHAINS = {"eth": "ethereum", "base": "base", "ape": "ape_chain"}
EXPLORERS = {"eth": "https://etherscan.io", "base": "https://basescan.org", "ape": "https://apescan.io"}


def opensea_url(chain: str, contract: str, token_id: Optional[str]) -> str:
    slug = OPENSEA_CHAINS.get(chain, chain)
    if token_id is None:
        return f"https://opensea.io/assets/{slug}/{contract}"
    return f"https://opensea.io/assets/{slug}/{contract}/{token_id}"


def tx_url(chain: str, tx_hash: str) -> str:
    return f"{EXPLORERS.get(chain, EXPLORERS['eth'])}/tx/{tx_hash}"


def _price_text(amount_eth: Optional[float], amount_usd: Optional[float], amount_native: Optional[float] = None, symbol: Optional[str] = None) -> str:
    parts = []
    if amount_native is not None and symbol and symbol.upper() not in ("ETH", "WETH"):
        parts.append(f"{amount_native:,.4f} {symbol}")
    if amount_eth:
        parts.append(fmt_eth(amount_eth))
    if amount_usd:
        parts.append(fmt_usd(amount_usd))
    return " • ".join(parts) if parts else "Free / unknown"


def build_mint_embed(
    name: str,
    fact: ChainFact,
    amount_eth: Optional[float] = None,
    amount_usd: Optional[float] = None,
    amount_native: Optional[float] = None,
    symbol: Optional[str] = None,
) -> discord.Embed:
    embed = discord.Embed(
        title=f"✨ NEW {name.upper()} MINTS!",
        url=opensea_url(fact.chain, fact.contract, fact.token_id),
        color=MINT_COLOR,
        timestamp=datetime.datetime.now(datetime.timezone.utc),
    )
    embed.add_field(name="Token", value=f"#{fact.token_id}", inline=True)
    embed.add_field(name="Minter", value=short_addr(fact.to_addr), inline=True)
    embed.add_field(name="Price", value=_price_text(amount_eth, amount_usd, amount_native, symbol), inline=True)
    embed.add_field(name="Transaction", value=f"[View]({tx_url(fact.chain, fact.tx_hash)})", inline=False)
    embed.set_footer(text=f"Live on {fact.chain.upper()}")
    return embed


def build_sale_embed(
    name: str,
    fact: ChainFact,
    amount_eth: Optional[float] = None,
    amount_usd: Optional[float] = None,
    amount_native: Optional[float] = None,
    symbol: Optional[str] = None,
) -> discord.Embed:
    if fact.token_id:
        title = f"💸 NFT SOLD – {name} #{fact.token_id}"
        url = opensea_url(fact.chain, fact.contract, fact.token_id)
    else:
        title = f"💱 {name} SWAP"
        url = tx_url(fact.chain, fact.tx_hash)
    embed = discord.Embed(title=title, url=url, color=SALE_COLOR, timestamp=datetime.datetime.now(datetime.timezone.utc))
    embed.add_field(name="Price", value=_price_text(amount_eth, amount_usd, amount_native, symbol), inline=True)
    embed.add_field(name="Buyer", value=short_addr(fact.from_addr), inline=True)
    embed.add_field(name="Seller", value=short_addr(fact.to_addr), inline=True)
    embed.add_field(name="Transaction", value=f"[View]({tx_url(fact.chain, fact.tx_hash)})", inline=False)
    embed.set_footer(text=f"Live on {fact.chain.upper()}")
    return embed


def build_token_trade_embed(
    name: str,
    fact: ChainFact,
    amount: float,
    amount_eth: Optional[float] = None,
    amount_usd: Optional[float] = None,
    price_usd: Optional[float] = None,
) -> discord.Embed:
    is_buy = fact.sub_kind == SubKind.TOKEN_BUY
    embed = discord.Embed(
        title=f"{name.upper()} {'Buy' if is_buy else 'Sell'}!",
        url=tx_url(fact.chain, fact.tx_hash),
        color=TOKEN_BUY_COLOR if is_buy else TOKEN_SELL_COLOR,
        timestamp=datetime.datetime.now(datetime.timezone.utc),
    )
    embed.add_field(name="Amount", value=f"{amount:,.4f} {name.upper()}", inline=True)
    embed.add_field(name="Value", value=_price_text(amount_eth, amount_usd), inline=True)
    if price_usd:
        embed.add_field(name="Price", value=f"${price_usd:.8f}", inline=True)
    trader = fact.to_addr if is_buy else fact.from_addr
    embed.add_field(name="Buyer" if is_buy else "Seller", value=short_addr(trader), inline=True)
    embed.add_field(name="Transaction", value=f"[View]({tx_url(fact.chain, fact.tx_hash)})", inline=False)
    embed.set_footer(text=f"Live on {fact.chain.upper()}")
    return embed


def build_digest_embed(
    summary: schemas.DigestSummary,
    guild_name: str,
    include_mints: bool = True,
    include_sales: bool = True,
) -> discord.Embed:
    embed = discord.Embed(
        title=f"📊 Daily Digest — {guild_name}",
        description=f"Activity over the last {summary.window_hours}h",
        color=DIGEST_COLOR,
        timestamp=datetime.datetime.now(datetime.timezone.utc),
    )
    if include_mints:
        embed.add_field(name="Mints", value=str(summary.mint_count), inline=True)
    if include_sales:
        embed.add_field(name="NFT sales", value=str(summary.nft_sale_count), inline=True)
        embed.add_field(name="Swaps", value=str(summary.swap_count), inline=True)
        embed.add_field(name="Token buys / sells", value=f"{summary.token_buy_count} / {summary.token_sell_count}", inline=True)
        embed.add_field(name="Volume", value=f"{fmt_eth(summary.total_eth)} • {fmt_usd(summary.total_usd)}", inline=True)
        embed.add_field(name="Top sale", value=summary.top_sale_display, inline=False)
        embed.add_field(name="Top swap", value=summary.top_swap_display, inline=False)
    embed.add_field(name="Most active", value=summary.most_active_display, inline=False)
    embed.add_field(name="Chains", value=summary.chain_display, inline=False)
    if include_sales:
        recent = "\n".join(f"• {line}" for line in summary.recent_sales) or "N/A"
        embed.add_field(name="Recent sales", value=recent[:1024], inline=False)
    embed.set_footer(text=f"{summary.row_count} events scanned")
    return embed


class RelayWebhookCache:
    """
    One relay webhook per channel. Concurrent lookups for the same channel
    share a single in-flight acquisition; the result is cached until
    invalidated.
    """

    def __init__(self, name: str = "MB Relay"):
        self.name = name
        self._cache: Dict[int, discord.Webhook] = {}
        self._inflight: Dict[int, asyncio.Task] = {}

    def invalidate(self, channel_id: int) -> None:
        self._cache.pop(channel_id, None)

    async def get_or_create(self, channel) -> Optional[discord.Webhook]:
        channel_id = channel.id
        hook = self._cache.get(channel_id)
        if hook is not None:
            return hook

        task = self._inflight.get(channel_id)
        if task is None:
            task = asyncio.ensure_future(self._acquire(channel))
            self._inflight[channel_id] = task
            task.add_done_callback(lambda done, cid=channel_id: self._forget(cid, done))
        return await asyncio.shield(task)

    def _forget(self, channel_id: int, task: asyncio.Task) -> None:
        if self._inflight.get(channel_id) is task:
            del self._inflight[channel_id]

    def _pick(self, hooks, bot_id: Optional[int]) -> Optional[discord.Webhook]:
        usable = [h for h in hooks if getattr(h, "token", None)]
        for hook in usable:
            if bot_id is not None and getattr(getattr(hook, "user", None), "id", None) == bot_id:
                return hook
        for hook in usable:
            if hook.name == self.name:
                return hook
        return usable[0] if usable else None

    async def _acquire(self, channel) -> Optional[discord.Webhook]:
        guild = getattr(channel, "guild", None)
        bot_id = getattr(getattr(guild, "me", None), "id", None)
        try:
            hook = self._pick(await channel.webhooks(), bot_id)
            if hook is None:
                hook = await channel.create_webhook(name=self.name, reason="Relay for tracker alerts")
                logger.info(f"Created relay webhook in channel {channel.id}")
        except discord.Forbidden:
            logger.warning(f"Missing Manage Webhooks in channel {channel.id}, using direct sends")
            return None
        except discord.HTTPException as e:
            logger.error(f"Failed to acquire relay webhook for channel {channel.id}: {e}")
            return None
        self._cache[channel.id] = hook
        return hook


class NotificationDispatcher:
    """Delivers one payload to many channels; one failed channel never blocks the rest."""

    def __init__(
        self,
        client: discord.Client,
        relay_cache: Optional[RelayWebhookCache] = None,
        use_relay: bool = False,
        relay_username: Optional[str] = None,
        relay_avatar_url: Optional[str] = None,
    ):
        self.client = client
        self.relay_cache = relay_cache
        self.use_relay = use_relay and relay_cache is not None
        self.relay_username = relay_username
        self.relay_avatar_url = relay_avatar_url

    async def _resolve_channel(self, channel_id):
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
        return channel

    @staticmethod
    def _payload(content: Optional[str], embed: Optional[discord.Embed]) -> dict:
        kwargs = {"allowed_mentions": discord.AllowedMentions.none()}
        if content:
            kwargs["content"] = content
        if embed is not None:
            kwargs["embed"] = embed
        return kwargs

    async def send_via_relay(self, channel, content: Optional[str] = None, embed: Optional[discord.Embed] = None) -> bool:
        """
        Posts through the channel's relay webhook. A failed send drops the
        cached webhook and retries once with a fresh one. False means the
        caller should send directly.
        """
        kwargs = self._payload(content, embed)
        if self.relay_username:
            kwargs["username"] = self.relay_username
        if self.relay_avatar_url:
            kwargs["avatar_url"] = self.relay_avatar_url

        for attempt in range(2):
            hook = await self.relay_cache.get_or_create(channel)
            if hook is None:
                return False
            try:
                await hook.send(**kwargs)
                return True
            except discord.HTTPException as e:
                logger.warning(f"Relay send failed in channel {channel.id} (attempt {attempt + 1}): {e}")
                self.relay_cache.invalidate(channel.id)
        return False

    async def send_to_channel(self, channel_id, content: Optional[str] = None, embed: Optional[discord.Embed] = None) -> bool:
        channel = await self._resolve_channel(channel_id)
        if self.use_relay and await self.send_via_relay(channel, content, embed):
            return True
        await channel.send(**self._payload(content, embed))
        return True

    async def dispatch(self, channel_ids: Iterable, content: Optional[str] = None, embed: Optional[discord.Embed] = None) -> int:
        """Returns how many channels received the payload."""
        targets = list(dict.fromkeys(str(c) for c in channel_ids if c))
        if not targets:
            return 0

        tasks = [self.send_to_channel(channel_id, content, embed) for channel_id in targets]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for channel_id, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"DISPATCH: delivery to channel {channel_id} failed: {result}")
        success_count = sum(1 for res in results if res is True)
        logger.info(f"DISPATCH: {success_count}/{len(targets)} channels delivered.")
        return success_count

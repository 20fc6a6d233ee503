# bot.py
import asyncio
import logging
from typing import List, Optional

import discord
from discord import app_commands
from sqlalchemy.orm import sessionmaker

import commands
import crud
import schemas
from config import Settings
from database import get_async_db
from digest import DigestAggregator, DigestEventStore
from notifier import NotificationDispatcher, RelayWebhookCache, build_digest_embed
from pricing import PriceService
from providers import build_provider_pools
from scheduler import DigestScheduler
from staking import StakingService
from worker import ChainWorker, SeenCache

logger = logging.getLogger(__name__)


class MintwatchBot(discord.Client):
    """
    Discord client that owns the process-scoped services: provider pools,
    caches, the digest store/aggregator, the scheduler and one polling
    worker per chain.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker):
        intents = discord.Intents.default()
        intents.guilds = True
        super().__init__(intents=intents)
        self.settings = settings
        self.session_factory = session_factory
        self.tree = app_commands.CommandTree(self)

        self.pools = build_provider_pools(settings.rpc_urls, timeout=settings.rpc_timeout_seconds)
        self.prices = PriceService(
            timeout=settings.http_timeout_seconds,
            ttl_seconds=settings.eth_usd_ttl_seconds,
            fallback_usd=settings.eth_usd_fallback,
            api_key=settings.coingecko_api_key,
        )
        self.seen = SeenCache(settings.seen_cache_size)
        self.relay_cache = RelayWebhookCache(settings.relay_webhook_name)
        self.dispatcher = NotificationDispatcher(self, self.relay_cache, use_relay=settings.notify_via_webhook)
        self.store = DigestEventStore(session_factory)
        self.aggregator = DigestAggregator(session_factory, labels=settings.digest_addr_labels, max_rows=settings.digest_max_rows)
        self.staking = StakingService(session_factory, self.pools, max_reward=settings.max_daily_reward)
        self.scheduler = DigestScheduler(
            load_settings=self.load_digest_settings,
            load_enabled=self.load_enabled_digests,
            fire=self.post_digest,
            claim=self.claim_run,
            catchup_minutes=settings.daily_digest_catchup_minutes,
        )
        self.workers: List[ChainWorker] = []
        self._worker_tasks: List[asyncio.Task] = []

    # --- digest scheduler hooks ---

    async def load_digest_settings(self, guild_id: str) -> Optional[schemas.DigestSettings]:
        async with get_async_db(self.session_factory) as db:
            row = await asyncio.to_thread(crud.get_digest_settings, db, guild_id)
            return schemas.DigestSettings.model_validate(row) if row else None

    async def load_enabled_digests(self) -> List[schemas.DigestSettings]:
        async with get_async_db(self.session_factory) as db:
            rows = await asyncio.to_thread(crud.get_enabled_digest_settings, db)
            return [schemas.DigestSettings.model_validate(row) for row in rows]

    async def claim_run(self, run_key: str, guild_id: str) -> bool:
        async with get_async_db(self.session_factory) as db:
            return await asyncio.to_thread(crud.claim_digest_run, db, run_key, guild_id)

    async def post_digest(self, settings: schemas.DigestSettings, forced: bool = False) -> int:
        summary = await self.aggregator.summarize(settings.guild_id, settings.hours_window)
        guild = self.get_guild(int(settings.guild_id))
        guild_name = guild.name if guild else settings.guild_id
        embed = build_digest_embed(summary, guild_name, settings.include_mints, settings.include_sales)
        delivered = await self.dispatcher.dispatch([settings.channel_id], embed=embed)
        logger.info(f"Digest for guild {settings.guild_id} {'(manual) ' if forced else ''}delivered to {delivered} channel(s).")
        return delivered

    async def guild_for_channel(self, channel_id: str) -> Optional[str]:
        """Guild owning a channel; falls back to the API when the channel is not cached."""
        channel = self.get_channel(int(channel_id))
        if channel is None:
            try:
                channel = await self.fetch_channel(int(channel_id))
            except (discord.HTTPException, discord.InvalidData) as e:
                logger.warning(f"Could not resolve channel {channel_id}: {e}")
                return None
        guild = getattr(channel, "guild", None)
        return str(guild.id) if guild else None

    # --- lifecycle ---

    async def setup_hook(self) -> None:
        commands.register_commands(self)
        if self.settings.dev_guild_id:
            guild = discord.Object(id=self.settings.dev_guild_id)
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
        else:
            synced = await self.tree.sync()
        logger.info(f"Synced {len(synced)} application commands.")

    async def on_ready(self) -> None:
        logger.info(f"Logged in as {self.user} in {len(self.guilds)} guild(s).")
        if self.workers:
            # on_ready fires again after reconnects
            return
        for chain, pool in self.pools.items():
            worker = ChainWorker(
                chain=chain,
                pool=pool,
                session_factory=self.session_factory,
                store=self.store,
                dispatcher=self.dispatcher,
                prices=self.prices,
                seen=self.seen,
                guild_resolver=self.guild_for_channel,
                poll_interval=self.settings.poll_interval_seconds,
                routers=self.settings.dex_routers.get(chain, []),
            )
            self.workers.append(worker)
            self._worker_tasks.append(asyncio.create_task(worker.run()))
        await self.scheduler.start()

    async def close(self) -> None:
        logger.info("Shutting down workers and digest scheduler...")
        for task in self._worker_tasks:
            task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        await self.scheduler.stop()
        await super().close()

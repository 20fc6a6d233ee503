# commands.py
import asyncio
import datetime
import logging
from typing import Optional
from zoneinfo import ZoneInfo

import discord
from discord import app_commands
from web3 import Web3

import crud
import schemas
from database import get_async_db
from digest import normalize_chain, short_addr
from scheduler import next_fire_time, normalize_tz
from staking import StakingError, parse_token_ids

logger = logging.getLogger(__name__)

TIERS = ("free", "premium", "premiumplus")
COMMAND_TIERS = {"addstaking": "premiumplus"}

CHAIN_CHOICES = [
    app_commands.Choice(name="Ethereum", value="eth"),
    app_commands.Choice(name="Base", value="base"),
    app_commands.Choice(name="ApeChain", value="ape"),
]
TIER_CHOICES = [app_commands.Choice(name=t, value=t) for t in TIERS]


class CommandRejected(app_commands.AppCommandError):
    """Raised by a command to answer the caller with a short message."""


def tier_allows(tier: str, required: str) -> bool:
    return crud.TIER_RANK.get(tier, 0) >= crud.TIER_RANK.get(required, 0)


def is_owner(interaction: discord.Interaction, owner_id: Optional[int]) -> bool:
    return owner_id is not None and interaction.user.id == owner_id


def is_admin(interaction: discord.Interaction, owner_id: Optional[int]) -> bool:
    perms = getattr(interaction.user, "guild_permissions", None)
    return is_owner(interaction, owner_id) or bool(perms and perms.administrator)


def can_manage_guild(interaction: discord.Interaction, owner_id: Optional[int]) -> bool:
    perms = getattr(interaction.user, "guild_permissions", None)
    return is_owner(interaction, owner_id) or bool(perms and (perms.administrator or perms.manage_guild))


def missing_channel_permissions(channel: discord.abc.GuildChannel, member: discord.Member) -> list[str]:
    perms = channel.permissions_for(member)
    needed = {"View Channel": perms.view_channel, "Send Messages": perms.send_messages, "Embed Links": perms.embed_links}
    return [name for name, ok in needed.items() if not ok]


def describe_schedule(settings, now: Optional[datetime.datetime] = None) -> str:
    now = now or datetime.datetime.now(datetime.timezone.utc)
    tz = normalize_tz(settings.tz) or "UTC"
    target = next_fire_time(now, tz, settings.hour, settings.minute)
    local_now = now.astimezone(ZoneInfo(tz))
    return (
        f"Channel: <#{settings.channel_id}>\n"
        f"Time: {settings.hour:02d}:{settings.minute:02d} {tz} (window {settings.hours_window}h)\n"
        f"Mints: {'on' if settings.include_mints else 'off'} • Sales: {'on' if settings.include_sales else 'off'}\n"
        f"Status: {'enabled' if settings.enabled else 'disabled'}\n"
        f"Now in {tz}: {local_now:%Y-%m-%d %H:%M}\n"
        f"Next run: <t:{int(target.timestamp())}:F>"
    )


def register_commands(bot) -> None:
    """Attaches every slash command to bot.tree. `bot` is a MintwatchBot."""
    tree: app_commands.CommandTree = bot.tree
    owner_id = bot.settings.bot_owner_id

    async def ensure_tier(interaction: discord.Interaction, command: str) -> None:
        required = COMMAND_TIERS.get(command)
        if not required:
            return
        async with get_async_db(bot.session_factory) as db:
            tier = await asyncio.to_thread(crud.get_effective_tier, db, str(interaction.guild_id), interaction.user.id)
        if not tier_allows(tier, required):
            raise CommandRejected(f"`/{command}` needs the **{required}** tier (this server: {tier}).")

    @tree.error
    async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
        original = getattr(error, "original", error)
        if isinstance(original, (CommandRejected, StakingError)):
            message = str(original)
        else:
            logger.error(f"Command /{interaction.command.name if interaction.command else '?'} failed: {original}", exc_info=original)
            message = "😕 Something went wrong. Please try again later."
        if interaction.response.is_done():
            await interaction.followup.send(message, ephemeral=True)
        else:
            await interaction.response.send_message(message, ephemeral=True)

    @tree.command(name="ping", description="Check that the bot is alive")
    async def ping(interaction: discord.Interaction):
        await interaction.response.send_message(f"🏓 Pong! {round(bot.latency * 1000)}ms", ephemeral=True)

    # --- mint/sale tracking ---

    @tree.command(name="trackmint", description="Track mints and sales of an NFT contract in this channel")
    @app_commands.describe(name="Display name", address="Contract address", chain="Chain", mint_price="Mint price per token", mint_token="ERC-20 used to pay the mint (blank for native)", mint_token_symbol="Symbol of the mint token")
    @app_commands.choices(chain=CHAIN_CHOICES)
    async def trackmint(
        interaction: discord.Interaction,
        name: str,
        address: str,
        chain: app_commands.Choice[str],
        mint_price: Optional[float] = None,
        mint_token: Optional[str] = None,
        mint_token_symbol: Optional[str] = None,
    ):
        if not is_admin(interaction, owner_id):
            raise CommandRejected("Admins only.")
        if not Web3.is_address(address) or (mint_token and not Web3.is_address(mint_token)):
            raise CommandRejected("That is not a valid contract address.")
        await interaction.response.defer(ephemeral=True)

        contract = schemas.TrackedContractCreate(
            name=name.strip(),
            address=address,
            chain=normalize_chain(chain.value).value,
            mint_price=mint_price,
            mint_token=mint_token,
            mint_token_symbol=mint_token_symbol,
        )
        async with get_async_db(bot.session_factory) as db:
            row, created = await asyncio.to_thread(crud.upsert_tracked_contract, db, contract, str(interaction.channel_id))
        verb = "Now tracking" if created else "Updated"
        await interaction.followup.send(f"✅ {verb} **{row.name}** ({short_addr(row.address)}) on {row.chain} in <#{interaction.channel_id}>.")

    @tree.command(name="untrackmint", description="Stop all alerts for a tracked contract")
    async def untrackmint(interaction: discord.Interaction, name: str):
        if not is_admin(interaction, owner_id):
            raise CommandRejected("Admins only.")
        async with get_async_db(bot.session_factory) as db:
            ok = await asyncio.to_thread(crud.clear_contract_channels, db, name)
        await interaction.response.send_message(f"🛑 Tracking paused for **{name}**." if ok else f"No tracker named **{name}**.", ephemeral=True)

    @tree.command(name="untrackchannel", description="Stop a tracker posting in this channel")
    async def untrackchannel(interaction: discord.Interaction, name: str):
        if not is_admin(interaction, owner_id):
            raise CommandRejected("Admins only.")
        async with get_async_db(bot.session_factory) as db:
            ok = await asyncio.to_thread(crud.remove_channel_from_contract, db, name, str(interaction.channel_id))
        reply = f"🔕 **{name}** will no longer post here." if ok else f"**{name}** is not posting in this channel."
        await interaction.response.send_message(reply, ephemeral=True)

    @tree.command(name="listtrackers", description="List the contracts tracked in this server")
    async def listtrackers(interaction: discord.Interaction):
        async with get_async_db(bot.session_factory) as db:
            rows = await asyncio.to_thread(crud.get_tracked_contracts, db)
        guild = interaction.guild
        lines = []
        for row in rows:
            here = [c for c in row.channel_ids or [] if guild and guild.get_channel(int(c))]
            if here:
                channels = ", ".join(f"<#{c}>" for c in here)
                lines.append(f"• **{row.name}** `{short_addr(row.address)}` [{row.chain}] → {channels}")
        await interaction.response.send_message("\n".join(lines) or "No trackers in this server.", ephemeral=True)

    @tree.command(name="tracktoken", description="Announce DEX buys and sells of an ERC-20 token in this channel")
    @app_commands.describe(name="Token name", address="Token contract address", chain="Chain")
    @app_commands.choices(chain=CHAIN_CHOICES)
    async def tracktoken(interaction: discord.Interaction, name: str, address: str, chain: Optional[app_commands.Choice[str]] = None):
        if not is_admin(interaction, owner_id):
            raise CommandRejected("Admins only.")
        if not Web3.is_address(address):
            raise CommandRejected("That is not a valid token address.")
        network = chain.value if chain else "base"
        async with get_async_db(bot.session_factory) as db:
            row, created = await asyncio.to_thread(
                crud.upsert_tracked_token, db, str(interaction.guild_id), name, address, network, str(interaction.channel_id)
            )
        verb = "Now tracking" if created else "Updated"
        await interaction.response.send_message(f"✅ {verb} **{row.name.upper()}** buys and sells on {row.chain} in <#{interaction.channel_id}>.")

    @tree.command(name="untracktoken", description="Stop tracking a token in this server")
    @app_commands.describe(token="Token name or address")
    async def untracktoken(interaction: discord.Interaction, token: str):
        if not is_admin(interaction, owner_id):
            raise CommandRejected("Admins only.")
        guild_id = str(interaction.guild_id)
        async with get_async_db(bot.session_factory) as db:
            removed = await asyncio.to_thread(crud.remove_tracked_token, db, guild_id, token)
            remaining = await asyncio.to_thread(crud.get_tracked_tokens, db, guild_id)
            listing = "\n".join(f"• **{t.name.upper()}** `{short_addr(t.address)}`" for t in remaining)
        listing = f"📡 Currently tracking:\n{listing}" if listing else "🧼 No tokens are currently being tracked."
        if removed is None:
            await interaction.response.send_message(f"❌ No tracked token matches `{token}`.\n\n{listing}", ephemeral=True)
            return
        await interaction.response.send_message(f"🗑️ Untracked **{removed.name.upper()}**.\n\n{listing}")

    # --- daily digest ---

    digest_group = app_commands.Group(name="digest", description="Daily digest of on-chain activity")

    @digest_group.command(name="setup", description="Post a daily digest at a local time")
    @app_commands.describe(tz="IANA zone or alias such as EST, PST, NY")
    async def digest_setup(
        interaction: discord.Interaction,
        channel: discord.TextChannel,
        hour: app_commands.Range[int, 0, 23],
        minute: app_commands.Range[int, 0, 59] = 0,
        tz: str = "UTC",
        hours_window: app_commands.Range[int, 1, 168] = 24,
        include_mints: bool = True,
        include_sales: bool = True,
    ):
        if not is_admin(interaction, owner_id):
            raise CommandRejected("Admins only.")
        zone = normalize_tz(tz)
        if zone is None:
            raise CommandRejected(f"Unknown timezone `{tz}`. Try an IANA name like `America/New_York` or an alias like `EST`.")
        me = interaction.guild.me if interaction.guild else None
        missing = missing_channel_permissions(channel, me) if me else []
        if missing:
            raise CommandRejected(f"I need {', '.join(missing)} in {channel.mention}.")
        await interaction.response.defer(ephemeral=True)

        update = schemas.DigestSettingsUpdate(
            guild_id=str(interaction.guild_id),
            channel_id=str(channel.id),
            tz=zone,
            hour=hour,
            minute=minute,
            hours_window=hours_window,
            include_mints=include_mints,
            include_sales=include_sales,
        )
        async with get_async_db(bot.session_factory) as db:
            saved = await asyncio.to_thread(crud.upsert_digest_settings, db, update)
            snapshot = schemas.DigestSettings.model_validate(saved)
        await bot.scheduler.reschedule_guild(str(interaction.guild_id))
        await interaction.followup.send(f"✅ Daily digest saved.\n{describe_schedule(snapshot)}")

    @digest_group.command(name="off", description="Turn the daily digest off")
    async def digest_off(interaction: discord.Interaction):
        if not is_admin(interaction, owner_id):
            raise CommandRejected("Admins only.")
        async with get_async_db(bot.session_factory) as db:
            ok = await asyncio.to_thread(crud.disable_digest, db, str(interaction.guild_id))
        await bot.scheduler.reschedule_guild(str(interaction.guild_id))
        await interaction.response.send_message("🛑 Daily digest disabled." if ok else "The digest was never set up here.", ephemeral=True)

    @digest_group.command(name="test", description="Post the digest now")
    async def digest_test(interaction: discord.Interaction):
        if not is_admin(interaction, owner_id):
            raise CommandRejected("Admins only.")
        await interaction.response.defer(ephemeral=True)
        posted = await bot.scheduler.run_now(str(interaction.guild_id))
        await interaction.followup.send("📨 Digest posted." if posted else "Run `/digest setup` first.")

    @digest_group.command(name="show", description="Show the digest settings")
    async def digest_show(interaction: discord.Interaction):
        if not is_admin(interaction, owner_id):
            raise CommandRejected("Admins only.")
        async with get_async_db(bot.session_factory) as db:
            row = await asyncio.to_thread(crud.get_digest_settings, db, str(interaction.guild_id))
            snapshot = schemas.DigestSettings.model_validate(row) if row else None
        if snapshot is None:
            await interaction.response.send_message("The digest is not set up. Use `/digest setup`.", ephemeral=True)
            return
        await interaction.response.send_message(describe_schedule(snapshot), ephemeral=True)

    tree.add_command(digest_group)

    # --- staking ---

    @tree.command(name="addstaking", description="Register an NFT staking project for this server")
    @app_commands.choices(network=CHAIN_CHOICES)
    async def addstaking(
        interaction: discord.Interaction,
        name: str,
        contract: str,
        daily_reward: float,
        token_contract: str,
        vault_wallet: str,
        network: Optional[app_commands.Choice[str]] = None,
    ):
        if not can_manage_guild(interaction, owner_id):
            raise CommandRejected("You need Manage Server to do that.")
        if not all(Web3.is_address(a) for a in (contract, token_contract, vault_wallet)):
            raise CommandRejected("Contract, token and vault must be valid addresses.")
        if daily_reward <= 0:
            raise CommandRejected("Daily reward must be positive.")
        await ensure_tier(interaction, "addstaking")

        chain = network.value if network else "base"
        async with get_async_db(bot.session_factory) as db:
            await asyncio.to_thread(
                crud.add_staking_project, db, str(interaction.guild_id), name, contract, chain, daily_reward, token_contract, vault_wallet
            )
        await interaction.response.send_message(f"✅ Staking enabled for **{name}** ({short_addr(contract)}) at {daily_reward:g}/NFT/day.", ephemeral=True)

    @tree.command(name="removestaking", description="Remove a staking project from this server")
    async def removestaking(interaction: discord.Interaction, contract: str):
        if not can_manage_guild(interaction, owner_id):
            raise CommandRejected("You need Manage Server to do that.")
        async with get_async_db(bot.session_factory) as db:
            ok = await asyncio.to_thread(crud.remove_staking_project, db, str(interaction.guild_id), contract)
        await interaction.response.send_message("🗑️ Staking project removed." if ok else "No such staking project here.", ephemeral=True)

    @tree.command(name="stake", description="Stake NFTs you own")
    @app_commands.describe(token_ids="Comma separated token ids", contract="Needed when the server has several projects")
    async def stake(interaction: discord.Interaction, wallet: str, token_ids: str, contract: Optional[str] = None):
        if not Web3.is_address(wallet):
            raise CommandRejected("That is not a valid wallet address.")
        ids = parse_token_ids(token_ids)
        await interaction.response.defer(ephemeral=True)
        staked = await bot.staking.run(bot.staking.stake, str(interaction.guild_id), wallet, ids, contract)
        if staked:
            await interaction.followup.send(f"✅ Staked {len(staked)} NFT(s): {', '.join('#' + t for t in staked)}")
        else:
            await interaction.followup.send("Those NFTs were already staked.")

    @tree.command(name="unstake", description="Unstake NFTs")
    async def unstake(interaction: discord.Interaction, wallet: str, token_ids: str, contract: Optional[str] = None):
        ids = parse_token_ids(token_ids)
        await interaction.response.defer(ephemeral=True)
        removed = await bot.staking.run(bot.staking.unstake, str(interaction.guild_id), wallet, ids, contract)
        await interaction.followup.send(f"Unstaked {removed} NFT(s).")

    @tree.command(name="seerewards", description="Show staked NFTs and rewards for a wallet")
    async def seerewards(interaction: discord.Interaction, wallet: str):
        status = await bot.staking.run(bot.staking.reward_status, wallet)
        embed = discord.Embed(title="🎁 Staking rewards", description=short_addr(status.wallet), color=0x9B59B6)
        embed.add_field(name="Staked", value=str(status.staked_count), inline=True)
        embed.add_field(name="Earned", value=f"{status.total_rewards:,.2f}", inline=True)
        embed.add_field(name="Pending", value=f"{status.pending:,.2f}", inline=True)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @tree.command(name="claimrewards", description="Claim pending staking rewards")
    async def claimrewards(interaction: discord.Interaction, wallet: str):
        await interaction.response.defer(ephemeral=True)
        amount = await bot.staking.run(bot.staking.claim, wallet)
        await interaction.followup.send(f"💰 Claimed {amount:,.2f} rewards for {short_addr(wallet.lower())}.")

    @tree.command(name="liststakers", description="Top stakers in this server")
    async def liststakers(interaction: discord.Interaction):
        rows = await bot.staking.run(bot.staking.list_stakers, str(interaction.guild_id))
        lines = [f"{i}. `{short_addr(wallet)}` — {count} NFT(s)" for i, (wallet, count) in enumerate(rows[:20], start=1)]
        await interaction.response.send_message("\n".join(lines) or "Nobody is staking yet.", ephemeral=True)

    # --- premium tiers ---

    @tree.command(name="setpremium", description="Set a server's tier (bot owner)")
    @app_commands.choices(tier=TIER_CHOICES)
    async def setpremium(interaction: discord.Interaction, server_id: str, tier: app_commands.Choice[str]):
        if not is_owner(interaction, owner_id):
            raise CommandRejected("Bot owner only.")
        async with get_async_db(bot.session_factory) as db:
            await asyncio.to_thread(crud.set_server_tier, db, server_id.strip(), tier.value)
        await interaction.response.send_message(f"✅ Server `{server_id}` is now **{tier.value}**.", ephemeral=True)

    @tree.command(name="setuserpremium", description="Set a user's tier (bot owner)")
    @app_commands.choices(tier=TIER_CHOICES)
    async def setuserpremium(interaction: discord.Interaction, user: discord.User, tier: app_commands.Choice[str]):
        if not is_owner(interaction, owner_id):
            raise CommandRejected("Bot owner only.")
        async with get_async_db(bot.session_factory) as db:
            await asyncio.to_thread(crud.set_user_tier, db, user.id, tier.value)
        await interaction.response.send_message(f"✅ {user.mention} is now **{tier.value}**.", ephemeral=True)

    @tree.command(name="premiumlist", description="List premium servers and users (bot owner)")
    async def premiumlist(interaction: discord.Interaction):
        if not is_owner(interaction, owner_id):
            raise CommandRejected("Bot owner only.")
        async with get_async_db(bot.session_factory) as db:
            servers, users = await asyncio.to_thread(crud.list_premium, db)
            lines = [f"🏠 `{s.server_id}` — {s.tier}" for s in servers] + [f"👤 <@{u.user_id}> — {u.tier}" for u in users]
        await interaction.response.send_message("\n".join(lines) or "No premium entries.", ephemeral=True)

    logger.info(f"Registered {len(tree.get_commands())} slash commands.")

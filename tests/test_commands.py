"""Tests for the slash command callbacks, driven with a fake interaction."""

import asyncio
from types import SimpleNamespace

import discord
import pytest
from discord import app_commands

import crud
import schemas
from commands import CommandRejected, register_commands
from staking import StakingError

OWNER_ID = 1
GUILD_ID = 10
CHANNEL_ID = 20
APES = "0x" + "c" * 40
TOKEN = "0x" + "6" * 40
BASE = app_commands.Choice(name="Base", value="base")


class FakeResponse:
    def __init__(self):
        self.messages = []
        self.deferred = False

    def is_done(self):
        return self.deferred or bool(self.messages)

    async def send_message(self, content=None, *, embed=None, ephemeral=False):
        self.messages.append((content, ephemeral))

    async def defer(self, *, ephemeral=False, thinking=False):
        self.deferred = True


class FakeFollowup:
    def __init__(self):
        self.messages = []

    async def send(self, content=None, *, embed=None, ephemeral=False):
        self.messages.append((content, ephemeral))


class FakeInteraction:
    def __init__(self, user_id=2, admin=False, manage_guild=False):
        perms = SimpleNamespace(administrator=admin, manage_guild=manage_guild)
        self.user = SimpleNamespace(id=user_id, guild_permissions=perms)
        self.guild_id = GUILD_ID
        self.channel_id = CHANNEL_ID
        self.guild = None
        self.command = None
        self.response = FakeResponse()
        self.followup = FakeFollowup()


class FakeScheduler:
    def __init__(self):
        self.rescheduled = []

    async def reschedule_guild(self, guild_id):
        self.rescheduled.append(guild_id)


@pytest.fixture
def bot(session_factory):
    client = discord.Client(intents=discord.Intents.none())
    fake = SimpleNamespace(
        tree=app_commands.CommandTree(client),
        settings=SimpleNamespace(bot_owner_id=OWNER_ID),
        session_factory=session_factory,
        scheduler=FakeScheduler(),
        latency=0.05,
    )
    register_commands(fake)
    return fake


def _callback(bot, name, group=None):
    if group:
        return bot.tree.get_command(group).get_command(name).callback
    return bot.tree.get_command(name).callback


def _admin():
    return FakeInteraction(admin=True)


def test_every_command_is_registered(bot):
    names = {c.name for c in bot.tree.get_commands()}
    assert {"ping", "trackmint", "untrackmint", "untrackchannel", "listtrackers", "tracktoken", "untracktoken",
            "digest", "addstaking", "removestaking", "stake", "unstake", "seerewards", "claimrewards",
            "liststakers", "setpremium", "setuserpremium", "premiumlist"} <= names


def test_ping(bot):
    interaction = FakeInteraction()
    asyncio.run(_callback(bot, "ping")(interaction))
    assert interaction.response.messages == [("🏓 Pong! 50ms", True)]


def test_trackmint_is_admin_only(bot, db):
    with pytest.raises(CommandRejected, match="Admins only"):
        asyncio.run(_callback(bot, "trackmint")(FakeInteraction(), "Apes", APES, BASE))
    assert crud.get_tracked_contracts(db) == []


def test_trackmint_rejects_bad_address(bot):
    with pytest.raises(CommandRejected, match="valid contract address"):
        asyncio.run(_callback(bot, "trackmint")(_admin(), "Apes", "0x123", BASE))


def test_trackmint_twice_then_untrackchannel(bot, db):
    trackmint = _callback(bot, "trackmint")
    first, second = _admin(), _admin()
    asyncio.run(trackmint(first, "Apes", APES, BASE))
    asyncio.run(trackmint(second, "Apes", APES, BASE))

    assert first.followup.messages[0][0].startswith("✅ Now tracking **Apes**")
    assert second.followup.messages[0][0].startswith("✅ Updated **Apes**")
    assert crud.get_tracked_contract_by_name(db, "apes").channel_ids == [str(CHANNEL_ID)]

    untrack = _callback(bot, "untrackchannel")
    removed, again = _admin(), _admin()
    asyncio.run(untrack(removed, "Apes"))
    asyncio.run(untrack(again, "Apes"))
    assert "no longer post here" in removed.response.messages[0][0]
    assert "is not posting in this channel" in again.response.messages[0][0]


def test_bot_owner_counts_as_admin(bot, db):
    asyncio.run(_callback(bot, "trackmint")(FakeInteraction(user_id=OWNER_ID), "Apes", APES, BASE))
    assert len(crud.get_tracked_contracts(db)) == 1


def test_tracktoken_and_untracktoken(bot, db):
    tracktoken, untracktoken = _callback(bot, "tracktoken"), _callback(bot, "untracktoken")
    with pytest.raises(CommandRejected):
        asyncio.run(tracktoken(FakeInteraction(), "pimp", TOKEN))

    added = _admin()
    asyncio.run(tracktoken(added, "Pimp", TOKEN))
    assert "Now tracking **PIMP**" in added.response.messages[0][0]
    token = crud.get_tracked_tokens(db, str(GUILD_ID))[0]
    assert (token.chain, token.channel_id) == ("base", str(CHANNEL_ID))

    missing = _admin()
    asyncio.run(untracktoken(missing, "other"))
    content, ephemeral = missing.response.messages[0]
    assert ephemeral is True
    assert "No tracked token" in content
    assert "PIMP" in content

    removed = _admin()
    asyncio.run(untracktoken(removed, "pimp"))
    assert removed.response.messages[0][0].startswith("🗑️ Untracked **PIMP**")
    assert "No tokens are currently being tracked" in removed.response.messages[0][0]
    db.expire_all()
    assert crud.get_tracked_tokens(db, str(GUILD_ID)) == []


def test_addstaking_needs_manage_server(bot):
    with pytest.raises(CommandRejected, match="Manage Server"):
        asyncio.run(_callback(bot, "addstaking")(FakeInteraction(), "Apes", APES, 10.0, TOKEN, TOKEN))


def test_addstaking_needs_premiumplus(bot, db):
    addstaking = _callback(bot, "addstaking")
    manager = FakeInteraction(user_id=3, manage_guild=True)

    with pytest.raises(CommandRejected, match="premiumplus"):
        asyncio.run(addstaking(manager, "Apes", APES, 10.0, TOKEN, TOKEN))
    assert crud.get_staking_projects(db, str(GUILD_ID)) == []

    crud.set_server_tier(db, str(GUILD_ID), "premium")
    with pytest.raises(CommandRejected, match="premiumplus"):
        asyncio.run(addstaking(FakeInteraction(user_id=3, manage_guild=True), "Apes", APES, 10.0, TOKEN, TOKEN))

    crud.set_user_tier(db, 3, "premiumplus")
    allowed = FakeInteraction(user_id=3, manage_guild=True)
    asyncio.run(addstaking(allowed, "Apes", APES, 10.0, TOKEN, TOKEN))
    assert "Staking enabled for **Apes**" in allowed.response.messages[0][0]
    assert [p.contract_address for p in crud.get_staking_projects(db, str(GUILD_ID))] == [APES]


def test_owner_only_premium_commands(bot, db):
    gold = app_commands.Choice(name="premium", value="premium")
    with pytest.raises(CommandRejected, match="Bot owner only"):
        asyncio.run(_callback(bot, "setpremium")(_admin(), "555", gold))
    with pytest.raises(CommandRejected, match="Bot owner only"):
        asyncio.run(_callback(bot, "premiumlist")(_admin()))

    asyncio.run(_callback(bot, "setpremium")(FakeInteraction(user_id=OWNER_ID), " 555 ", gold))
    assert crud.get_effective_tier(db, "555", None) == "premium"

    listing = FakeInteraction(user_id=OWNER_ID)
    asyncio.run(_callback(bot, "premiumlist")(listing))
    assert "`555` — premium" in listing.response.messages[0][0]


def test_digest_off(bot, db):
    digest_off = _callback(bot, "off", group="digest")
    never = _admin()
    asyncio.run(digest_off(never))
    assert never.response.messages[0][0] == "The digest was never set up here."

    crud.upsert_digest_settings(db, schemas.DigestSettingsUpdate(guild_id=str(GUILD_ID), channel_id="c1", hour=9))
    done = _admin()
    asyncio.run(digest_off(done))
    assert done.response.messages[0][0] == "🛑 Daily digest disabled."
    db.expire_all()
    assert crud.get_digest_settings(db, str(GUILD_ID)).enabled is False
    assert bot.scheduler.rescheduled == [str(GUILD_ID), str(GUILD_ID)]

    with pytest.raises(CommandRejected, match="Admins only"):
        asyncio.run(digest_off(FakeInteraction()))


def test_digest_setup_rejects_unknown_timezone(bot):
    setup = _callback(bot, "setup", group="digest")
    channel = SimpleNamespace(id=30, mention="<#30>")
    with pytest.raises(CommandRejected, match="Unknown timezone"):
        asyncio.run(setup(_admin(), channel, 9, 0, "Mars/Olympus"))
    assert bot.scheduler.rescheduled == []


def test_error_handler_replies_ephemerally(bot):
    interaction = FakeInteraction()
    asyncio.run(bot.tree.on_error(interaction, CommandRejected("Admins only.")))
    assert interaction.response.messages == [("Admins only.", True)]

    deferred = FakeInteraction()
    deferred.response.deferred = True
    wrapped = app_commands.CommandInvokeError(bot.tree.get_command("stake"), StakingError("Wallet does not own token(s): 3"))
    asyncio.run(bot.tree.on_error(deferred, wrapped))
    assert deferred.followup.messages == [("Wallet does not own token(s): 3", True)]


def test_error_handler_hides_unexpected_errors(bot, caplog):
    interaction = FakeInteraction()
    interaction.command = bot.tree.get_command("ping")
    error = app_commands.CommandInvokeError(interaction.command, RuntimeError("db exploded"))

    asyncio.run(bot.tree.on_error(interaction, error))

    assert interaction.response.messages == [("😕 Something went wrong. Please try again later.", True)]
    assert "db exploded" in caplog.text

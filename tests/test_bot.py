"""Tests for `bot.MintwatchBot` helpers that do not need a gateway connection."""

import asyncio
from types import SimpleNamespace

import discord

from bot import MintwatchBot


class FakeClient:
    def __init__(self, cached=None, fetched=None, fetch_error=None):
        self.cached = cached or {}
        self.fetched = fetched or {}
        self.fetch_error = fetch_error
        self.fetch_calls = []

    def get_channel(self, channel_id):
        return self.cached.get(channel_id)

    async def fetch_channel(self, channel_id):
        self.fetch_calls.append(channel_id)
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.fetched[channel_id]


def _channel(guild_id):
    return SimpleNamespace(guild=SimpleNamespace(id=guild_id))


def test_guild_for_cached_channel():
    client = FakeClient(cached={5: _channel(77)})
    assert asyncio.run(MintwatchBot.guild_for_channel(client, "5")) == "77"
    assert client.fetch_calls == []


def test_guild_for_uncached_channel_is_fetched():
    client = FakeClient(fetched={6: _channel(88)})
    assert asyncio.run(MintwatchBot.guild_for_channel(client, "6")) == "88"
    assert client.fetch_calls == [6]


def test_unknown_channel_resolves_to_none():
    missing = discord.NotFound(SimpleNamespace(status=404, reason="Not Found"), "Unknown Channel")
    client = FakeClient(fetch_error=missing)
    assert asyncio.run(MintwatchBot.guild_for_channel(client, "7")) is None


def test_dm_channel_has_no_guild():
    client = FakeClient(cached={8: SimpleNamespace()})
    assert asyncio.run(MintwatchBot.guild_for_channel(client, "8")) is None

"""Tests for the block polling worker."""

import asyncio
from types import SimpleNamespace

import crud
import models
import schemas
from decoder import ERC20_PAYMENT_TOPIC, TRANSFER_TOPIC
from digest import DigestEventStore
from worker import ChainWorker, SeenCache

CONTRACT = "0x" + "c" * 40
MINTER = "0x" + "b" * 40
ZERO_TOPIC = "0x" + "0" * 64


def _mint_log(tx="0x" + "1" * 64, token_id=5):
    return {
        "address": CONTRACT,
        "topics": [TRANSFER_TOPIC, ZERO_TOPIC, "0x" + MINTER[2:].rjust(64, "0"), "0x" + hex(token_id)[2:].rjust(64, "0")],
        "data": "0x",
        "transactionHash": tx,
        "blockNumber": 10,
        "logIndex": 0,
    }


class FakePool:
    def __init__(self, logs):
        self.block_number = 100
        self.logs = logs
        self.filters = []
        self.rotations = 0
        self.decimals = {}

    def _get_logs(self, log_filter):
        self.filters.append(log_filter)
        return list(self.logs)

    def current_endpoint(self):
        return "https://fake"

    def rotate(self):
        self.rotations += 1

    def web3(self):
        return SimpleNamespace(eth=SimpleNamespace(get_logs=self._get_logs, block_number=self.block_number, contract=self._contract))

    def _contract(self, address, abi):
        decimals = self.decimals.get(address.lower(), 18)
        return SimpleNamespace(functions=SimpleNamespace(decimals=lambda: SimpleNamespace(call=lambda: decimals)))

    def call(self, fn):
        return fn(self.web3())


class FakeDispatcher:
    def __init__(self):
        self.sent = []

    async def dispatch(self, channel_ids, content=None, embed=None):
        self.sent.append((list(channel_ids), embed))
        return len(channel_ids)


class FakePrices:
    async def token_to_eth(self, chain, token):
        return 1.0

    async def token_usd(self, chain, token):
        return 3000.0


async def _guild_of(channel_id):
    return "guild-" + channel_id


def _worker(session_factory, pool, dispatcher, seen=None, routers=()):
    return ChainWorker(
        chain="base",
        pool=pool,
        session_factory=session_factory,
        store=DigestEventStore(session_factory),
        dispatcher=dispatcher,
        prices=FakePrices(),
        seen=seen or SeenCache(100),
        guild_resolver=_guild_of,
        routers=routers,
    )


def _track(session_factory, channel="111", **kwargs):
    db = session_factory()
    try:
        crud.upsert_tracked_contract(db, schemas.TrackedContractCreate(name="Apes", address=CONTRACT, chain="base", **kwargs), channel)
    finally:
        db.close()


def test_seen_cache_is_bounded_lru():
    cache = SeenCache(max_size=2)
    assert cache.add("a") is True
    assert cache.add("a") is False
    cache.add("b")
    cache.add("a")  # refresh a
    cache.add("c")  # evicts b
    assert "a" in cache
    assert "b" not in cache
    assert len(cache) == 2


def test_tick_records_and_announces_new_mint(session_factory):
    _track(session_factory, mint_price=0.01)
    pool = FakePool([_mint_log()])
    dispatcher = FakeDispatcher()
    worker = _worker(session_factory, pool, dispatcher)

    processed = asyncio.run(worker.tick())

    assert processed == 1
    assert pool.filters[0]["fromBlock"] == 99
    assert pool.filters[0]["toBlock"] == 100
    channels, embed = dispatcher.sent[0]
    assert channels == ["111"]
    assert embed.title == "✨ NEW APES MINTS!"

    db = session_factory()
    try:
        row = db.query(models.DigestEvent).one()
    finally:
        db.close()
    assert row.guild_id == "guild-111"
    assert row.event_type == "mint"
    assert row.token_id == "5"
    assert row.amount_eth == 0.01
    assert row.amount_usd == 30.0


def test_same_block_is_not_processed_twice(session_factory):
    _track(session_factory)
    pool = FakePool([_mint_log()])
    dispatcher = FakeDispatcher()
    worker = _worker(session_factory, pool, dispatcher)

    async def scenario():
        first = await worker.tick()
        second = await worker.tick()
        pool.block_number = 101
        third = await worker.tick()
        return first, second, third

    # block 101 re-delivers the same log; the seen cache drops it
    assert asyncio.run(scenario()) == (1, 0, 0)
    assert len(dispatcher.sent) == 1


def test_paused_contract_is_skipped(session_factory):
    _track(session_factory)
    db = session_factory()
    try:
        crud.clear_contract_channels(db, "apes")
    finally:
        db.close()
    pool = FakePool([_mint_log()])
    worker = _worker(session_factory, pool, FakeDispatcher())

    assert asyncio.run(worker.tick()) == 0
    assert pool.filters == []


def test_block_number_failure_skips_tick(session_factory):
    class BrokenPool(FakePool):
        def call(self, fn):
            raise TimeoutError("all endpoints down")

    worker = _worker(session_factory, BrokenPool([]), FakeDispatcher())
    assert asyncio.run(worker.tick()) == 0
    assert worker.last_block is None


def _word(value):
    return hex(value)[2:].rjust(64, "0") if isinstance(value, int) else value[2:].rjust(64, "0")


def test_erc20_payment_becomes_valued_sale(session_factory):
    _track(session_factory)
    buyer, seller, usdc = "0x" + "1" * 40, "0x" + "2" * 40, "0x" + "d" * 40
    tx = "0x" + "5" * 64
    transfer = {
        "address": CONTRACT,
        "topics": [TRANSFER_TOPIC, "0x" + _word(seller), "0x" + _word(buyer), "0x" + _word(9)],
        "data": "0x",
        "transactionHash": tx,
        "blockNumber": 100,
        "logIndex": 1,
    }
    payment = {
        "address": CONTRACT,
        "topics": [ERC20_PAYMENT_TOPIC, "0x" + _word(buyer), "0x" + _word(seller)],
        "data": "0x" + _word(usdc) + _word(2_500_000),
        "transactionHash": tx,
        "blockNumber": 100,
        "logIndex": 2,
    }
    pool = FakePool([transfer, payment])
    pool.decimals[usdc] = 6
    dispatcher = FakeDispatcher()
    worker = _worker(session_factory, pool, dispatcher)

    assert asyncio.run(worker.tick()) == 1

    db = session_factory()
    try:
        row = db.query(models.DigestEvent).one()
    finally:
        db.close()
    assert (row.event_type, row.sub_type, row.token_id) == ("sale", "nft_sale", "9")
    assert (row.buyer, row.seller) == (buyer, seller)
    assert row.amount_native == 2.5
    assert row.amount_eth == 2.5
    assert row.amount_usd == 7500.0
    assert worker._decimals[usdc] == 6
    assert dispatcher.sent[0][1].title == "💸 NFT SOLD – Apes #9"


ROUTER = "0x" + "4" * 40
TOKEN = "0x" + "6" * 40


def _token_transfer(sender, recipient, amount, tx):
    return {
        "address": TOKEN,
        "topics": [TRANSFER_TOPIC, "0x" + _word(sender), "0x" + _word(recipient)],
        "data": "0x" + _word(amount),
        "transactionHash": tx,
        "blockNumber": 100,
        "logIndex": 0,
    }


def test_router_transfers_become_token_buys_and_sells(session_factory):
    db = session_factory()
    try:
        crud.upsert_tracked_token(db, "g1", "Pimp", TOKEN, "base", "222")
    finally:
        db.close()
    trader = "0x" + "3" * 40
    logs = [
        _token_transfer(ROUTER, trader, 1500 * 10**18, "0x" + "a" * 64),
        _token_transfer(trader, ROUTER, 20 * 10**18, "0x" + "b" * 64),
        _token_transfer(trader, "0x" + "8" * 40, 5 * 10**18, "0x" + "c" * 64),
        _token_transfer(ROUTER, trader, 10**10, "0x" + "e" * 64),
    ]
    pool = FakePool(logs)
    dispatcher = FakeDispatcher()
    worker = _worker(session_factory, pool, dispatcher, routers=[ROUTER.upper().replace("0X", "0x")])

    assert asyncio.run(worker.tick()) == 2
    assert pool.filters[0]["topics"] == [TRANSFER_TOPIC]

    db = session_factory()
    try:
        rows = {row.sub_type: row for row in db.query(models.DigestEvent).all()}
    finally:
        db.close()
    assert set(rows) == {"token_buy", "token_sell"}
    buy = rows["token_buy"]
    assert (buy.guild_id, buy.event_type, buy.buyer, buy.seller) == ("g1", "sale", trader, ROUTER)
    assert buy.amount_native == 1500
    assert buy.amount_usd == 1500 * 3000.0
    assert rows["token_sell"].seller == trader
    assert [(channels, embed.title) for channels, embed in dispatcher.sent] == [(["222"], "PIMP Buy!"), (["222"], "PIMP Sell!")]


def test_tokens_are_ignored_without_routers(session_factory):
    db = session_factory()
    try:
        crud.upsert_tracked_token(db, "g1", "Pimp", TOKEN, "base", "222")
    finally:
        db.close()
    pool = FakePool([_token_transfer(ROUTER, "0x" + "3" * 40, 10**18, "0x" + "a" * 64)])
    worker = _worker(session_factory, pool, FakeDispatcher())

    assert asyncio.run(worker.tick()) == 0
    assert pool.filters == []

# worker.py
import asyncio
import logging
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Hashable, Iterable, List, Optional

from sqlalchemy.orm import sessionmaker
from web3 import Web3

import crud
import schemas
from decoder import TRANSFER_TOPIC, ChainFact, EventDecoder, get_logs_safe
from digest import DigestEventStore, EventKind
from notifier import NotificationDispatcher, build_mint_embed, build_sale_embed, build_token_trade_embed
from pricing import ZERO_ADDRESS, PriceService
from providers import RpcProviderPool

logger = logging.getLogger(__name__)

NATIVE_SYMBOLS = {"eth": "ETH", "base": "ETH", "ape": "APE"}
MIN_TOKEN_AMOUNT = 0.0001

ERC20_DECIMALS_ABI = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    }
]


class SeenCache:
    """
    Bounded LRU of facts already alerted in this process. Resets on restart;
    the digest store's unique key is what keeps the ledger correct.
    """

    def __init__(self, max_size: int = 50_000):
        self.max_size = max_size
        self._keys: "OrderedDict[Hashable, None]" = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: Hashable) -> bool:
        """True if the key was not seen before."""
        if key in self._keys:
            self._keys.move_to_end(key)
            return False
        self._keys[key] = None
        if len(self._keys) > self.max_size:
            self._keys.popitem(last=False)
        return True


class ChainWorker:
    """
    Polls one chain: on every new block, fetches logs for [n-1, n] per
    tracked contract, decodes them, and records and announces new facts.
    Missed blocks are not backfilled.
    """

    def __init__(
        self,
        chain: str,
        pool: RpcProviderPool,
        session_factory: sessionmaker,
        store: DigestEventStore,
        dispatcher: NotificationDispatcher,
        prices: PriceService,
        seen: SeenCache,
        guild_resolver: Callable[[str], Awaitable[Optional[str]]],
        poll_interval: float = 4.0,
        routers: Iterable[str] = (),
    ):
        self.chain = chain
        self.pool = pool
        self.session_factory = session_factory
        self.store = store
        self.dispatcher = dispatcher
        self.prices = prices
        self.seen = seen
        self.guild_resolver = guild_resolver
        self.poll_interval = poll_interval
        self.routers = [r.lower() for r in routers]
        self.decoder = EventDecoder(chain)
        self.last_block: Optional[int] = None
        self._decimals: Dict[str, int] = {}

    async def run(self) -> None:
        """The background task that runs until cancelled."""
        logger.info(f"[{self.chain}] worker started on {self.pool.current_endpoint()}, interval {self.poll_interval}s.")
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[{self.chain}] tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def tick(self) -> int:
        """Processes the newest block once. Returns the number of new facts."""
        try:
            block = await asyncio.to_thread(self.pool.call, lambda w3: w3.eth.block_number)
        except Exception as e:
            logger.warning(f"[{self.chain}] could not read block number: {e}")
            return 0
        if self.last_block is not None and block <= self.last_block:
            return 0
        self.last_block = block

        contracts = await asyncio.to_thread(self._load_contracts)
        processed = 0
        for contract in contracts:
            if not contract.channel_ids:
                continue
            facts = await asyncio.to_thread(self._fetch_facts, contract.address, block)
            for fact in facts:
                if not self.seen.add(fact.seen_key):
                    continue
                await self.handle_fact(contract, fact)
                processed += 1
        processed += await self._tick_tokens(block)
        if processed:
            logger.info(f"[{self.chain}] block {block}: {processed} new fact(s).")
        return processed

    def _load_contracts(self) -> List[schemas.TrackedContract]:
        db = self.session_factory()
        try:
            return [schemas.TrackedContract.model_validate(row) for row in crud.get_contracts_for_chain(db, self.chain)]
        finally:
            db.close()

    def _load_tokens(self) -> List[schemas.TrackedToken]:
        db = self.session_factory()
        try:
            return [schemas.TrackedToken.model_validate(row) for row in crud.get_tokens_for_chain(db, self.chain)]
        finally:
            db.close()

    def _get_logs(self, address: str, block: int, topics: Optional[list] = None) -> list:
        log_filter = {
            "address": Web3.to_checksum_address(address),
            "fromBlock": max(0, block - 1),
            "toBlock": block,
        }
        if topics:
            log_filter["topics"] = topics
        return get_logs_safe(lambda f: self.pool.web3().eth.get_logs(f), log_filter, on_fault=self.pool.rotate)

    def _fetch_facts(self, address: str, block: int) -> List[ChainFact]:
        return self.decoder.decode(self._get_logs(address, block), address)

    def _fetch_token_facts(self, address: str, block: int) -> List[ChainFact]:
        logs = self._get_logs(address, block, topics=[TRANSFER_TOPIC])
        return self.decoder.decode_token_transfers(logs, address, self.routers)

    async def _tick_tokens(self, block: int) -> int:
        if not self.routers:
            return 0
        tokens = await asyncio.to_thread(self._load_tokens)
        by_address: Dict[str, List[schemas.TrackedToken]] = {}
        for token in tokens:
            by_address.setdefault(token.address, []).append(token)

        processed = 0
        for address, subscriptions in by_address.items():
            facts = await asyncio.to_thread(self._fetch_token_facts, address, block)
            for fact in facts:
                if not self.seen.add(fact.seen_key):
                    continue
                if await self.handle_token_fact(subscriptions, fact):
                    processed += 1
        return processed

    def _token_decimals(self, token: str) -> int:
        if token == ZERO_ADDRESS:
            return 18
        if token in self._decimals:
            return self._decimals[token]

        def call(w3: Web3):
            erc20 = w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_DECIMALS_ABI)
            return erc20.functions.decimals().call()

        try:
            decimals = int(self.pool.call(call))
        except Exception as e:
            logger.warning(f"[{self.chain}] decimals() failed for {token}, assuming 18: {e}")
            decimals = 18
        self._decimals[token] = decimals
        return decimals

    async def value_fact(self, contract: schemas.TrackedContract, fact: ChainFact) -> dict:
        """Native, ETH and USD amounts for a fact. Unknown prices leave amounts empty."""
        if fact.kind == EventKind.SALE and fact.payment_token and fact.amount_raw is not None:
            token = fact.payment_token
            decimals = await asyncio.to_thread(self._token_decimals, token)
            native = fact.amount_raw / (10 ** decimals)
            symbol = NATIVE_SYMBOLS.get(self.chain) if token == ZERO_ADDRESS else None
        elif fact.kind == EventKind.MINT and contract.mint_price:
            token = (contract.mint_token or ZERO_ADDRESS).lower()
            native = contract.mint_price
            symbol = contract.mint_token_symbol or (NATIVE_SYMBOLS.get(self.chain) if token == ZERO_ADDRESS else None)
        else:
            return {"amount_native": None, "amount_eth": None, "amount_usd": None, "symbol": None}

        per_eth = await self.prices.token_to_eth(self.chain, token)
        per_usd = await self.prices.token_usd(self.chain, token)
        return {
            "amount_native": native,
            "amount_eth": native * per_eth if per_eth else None,
            "amount_usd": native * per_usd if per_usd else None,
            "symbol": symbol,
        }

    async def handle_fact(self, contract: schemas.TrackedContract, fact: ChainFact) -> None:
        amounts = await self.value_fact(contract, fact)

        if fact.kind == EventKind.MINT:
            event_type, buyer, seller = "mint", fact.to_addr, None
        else:
            event_type, buyer, seller = (fact.sub_kind.value if fact.sub_kind else "sale"), fact.from_addr, fact.to_addr

        guild_ids = set()
        for channel_id in contract.channel_ids:
            guild_id = await self.guild_resolver(channel_id)
            if guild_id:
                guild_ids.add(guild_id)
        for guild_id in guild_ids:
            await self.store.record({
                "guild_id": guild_id,
                "event_type": event_type,
                "chain": self.chain,
                "contract": fact.contract,
                "token_id": fact.token_id,
                "amount_native": amounts["amount_native"],
                "amount_eth": amounts["amount_eth"],
                "amount_usd": amounts["amount_usd"],
                "buyer": buyer,
                "seller": seller,
                "tx_hash": fact.tx_hash,
            })

        builder = build_mint_embed if fact.kind == EventKind.MINT else build_sale_embed
        embed = builder(
            contract.name,
            fact,
            amount_eth=amounts["amount_eth"],
            amount_usd=amounts["amount_usd"],
            amount_native=amounts["amount_native"],
            symbol=amounts["symbol"],
        )
        await self.dispatcher.dispatch(contract.channel_ids, embed=embed)

    async def handle_token_fact(self, subscriptions: List[schemas.TrackedToken], fact: ChainFact) -> bool:
        """Records and announces a router buy or sell. Dust transfers are dropped."""
        decimals = await asyncio.to_thread(self._token_decimals, fact.payment_token)
        amount = fact.amount_raw / (10 ** decimals)
        if amount < MIN_TOKEN_AMOUNT:
            return False

        price_usd = await self.prices.token_usd(self.chain, fact.payment_token)
        per_eth = await self.prices.token_to_eth(self.chain, fact.payment_token)
        amount_usd = amount * price_usd if price_usd else None
        amount_eth = amount * per_eth if per_eth else None

        # tokens move from seller to buyer; the router sits on one side
        for token in subscriptions:
            await self.store.record({
                "guild_id": token.guild_id,
                "event_type": fact.sub_kind.value,
                "chain": self.chain,
                "contract": fact.contract,
                "amount_native": amount,
                "amount_eth": amount_eth,
                "amount_usd": amount_usd,
                "buyer": fact.to_addr,
                "seller": fact.from_addr,
                "tx_hash": fact.tx_hash,
            })
            if token.channel_id:
                embed = build_token_trade_embed(token.name, fact, amount, amount_eth=amount_eth, amount_usd=amount_usd, price_usd=price_usd)
                await self.dispatcher.dispatch([token.channel_id], embed=embed)
        return True

# digest.py
import asyncio
import datetime
import enum
import logging
from collections import Counter
from typing import Dict, Iterable, Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

import crud
import schemas

logger = logging.getLogger(__name__)

MAX_WINDOW_HOURS = 168
CHAIN_BREAKDOWN_SIZE = 6
RECENT_SALES_SIZE = 5


class EventKind(str, enum.Enum):
    MINT = "mint"
    SALE = "sale"


class SubKind(str, enum.Enum):
    SWAP = "swap"
    TOKEN_BUY = "token_buy"
    TOKEN_SELL = "token_sell"
    NFT_SALE = "nft_sale"


class Chain(str, enum.Enum):
    ETH = "eth"
    BASE = "base"
    APE = "ape"


_KIND_ALIASES = {
    "mint": (EventKind.MINT, None),
    "minted": (EventKind.MINT, None),
    "sale": (EventKind.SALE, None),
    "sold": (EventKind.SALE, None),
    "nft_sale": (EventKind.SALE, SubKind.NFT_SALE),
    "buy": (EventKind.SALE, SubKind.TOKEN_BUY),
    "token_buy": (EventKind.SALE, SubKind.TOKEN_BUY),
    "sell": (EventKind.SALE, SubKind.TOKEN_SELL),
    "token_sell": (EventKind.SALE, SubKind.TOKEN_SELL),
    "swap": (EventKind.SALE, SubKind.SWAP),
}

_CHAIN_ALIASES = {
    "eth": Chain.ETH,
    "ethereum": Chain.ETH,
    "mainnet": Chain.ETH,
    "homestead": Chain.ETH,
    "base": Chain.BASE,
    "ape": Chain.APE,
    "apechain": Chain.APE,
}


def normalize_event_kind(raw: Optional[str]) -> Optional[tuple[EventKind, Optional[SubKind]]]:
    """Maps a kind alias to (kind, sub-kind). None means unrecognized."""
    if not raw:
        return None
    return _KIND_ALIASES.get(str(raw).strip().lower())


def normalize_chain(raw: Optional[str]) -> Optional[Chain]:
    if not raw:
        return None
    return _CHAIN_ALIASES.get(str(raw).strip().lower())


def short_addr(addr: Optional[str]) -> str:
    if not addr:
        return "N/A"
    if len(addr) < 12:
        return addr
    return f"{addr[:6]}…{addr[-4:]}"


def label_addr(addr: Optional[str], labels: Optional[Dict[str, str]] = None) -> str:
    if addr and labels and addr.lower() in labels:
        return labels[addr.lower()]
    return short_addr(addr)


def fmt_eth(value: Optional[float]) -> str:
    if value is None:
        return "N/A"
    text = f"{value:,.4f}".rstrip("0").rstrip(".")
    return f"{text} ETH"


def fmt_usd(value: Optional[float]) -> str:
    if value is None:
        return "N/A"
    return f"${value:,.2f}"


def _as_utc(ts: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc)


class DigestEventStore:
    """
    Deduplicated append log of mint/sale facts per guild.
    The unique key (guild, kind, tx hash, token id or '') is the only dedupe
    mechanism; concurrent writers race on the insert, not on a lock.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def build_row(self, event: Union[dict, schemas.DigestEventIn]) -> tuple[Optional[dict], Optional[str]]:
        """Returns (row values, None) or (None, rejection reason)."""
        try:
            parsed = event if isinstance(event, schemas.DigestEventIn) else schemas.DigestEventIn.model_validate(event)
        except ValidationError as e:
            return None, f"invalid event: {e.error_count()} field error(s)"

        if not parsed.guild_id:
            return None, "missing guild id"
        kind = normalize_event_kind(parsed.event_type)
        if kind is None:
            return None, f"unrecognized event kind: {parsed.event_type!r}"
        event_kind, sub_kind = kind
        chain = normalize_chain(parsed.chain)

        ts = _as_utc(parsed.ts) or datetime.datetime.now(datetime.timezone.utc)
        row = {
            "guild_id": parsed.guild_id,
            "event_type": event_kind.value,
            "sub_type": sub_kind.value if sub_kind else None,
            "chain": chain.value if chain else None,
            "contract": parsed.contract,
            "token_id": parsed.token_id,
            "token_id_norm": parsed.token_id or "",
            "amount_native": parsed.amount_native,
            "amount_eth": parsed.amount_eth,
            "amount_usd": parsed.amount_usd,
            "buyer": parsed.buyer,
            "seller": parsed.seller,
            "tx_hash": parsed.tx_hash,
            "ts": ts,
        }
        return row, None

    def record_sync(self, event: Union[dict, schemas.DigestEventIn]) -> schemas.RecordResult:
        row, reason = self.build_row(event)
        if row is None:
            logger.debug(f"Digest event rejected: {reason}")
            return schemas.RecordResult(inserted=False, reason=reason)

        db = self.session_factory()
        try:
            inserted = crud.insert_digest_event(db, row)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record digest event for guild {row['guild_id']}: {e}", exc_info=True)
            return schemas.RecordResult(inserted=False, reason="database error")
        finally:
            db.close()

        if not inserted:
            return schemas.RecordResult(inserted=False, reason="duplicate")
        return schemas.RecordResult(inserted=True)

    async def record(self, event: Union[dict, schemas.DigestEventIn]) -> schemas.RecordResult:
        """Never raises; failures come back as inserted=False with a reason."""
        return await asyncio.to_thread(self.record_sync, event)


def _sale_line(row) -> schemas.SaleLine:
    return schemas.SaleLine(
        contract=row.contract,
        token_id=row.token_id,
        chain=row.chain,
        amount_eth=row.amount_eth,
        amount_usd=row.amount_usd,
        buyer=row.buyer,
        seller=row.seller,
        tx_hash=row.tx_hash,
        ts=_as_utc(row.ts),
    )


def format_sale_line(sale: schemas.SaleLine, labels: Optional[Dict[str, str]] = None) -> str:
    name = label_addr(sale.contract, labels)
    what = f"{name} #{sale.token_id}" if sale.token_id else f"{name} swap"
    parts = [what]
    if sale.amount_eth is not None:
        parts.append(fmt_eth(sale.amount_eth))
    if sale.amount_usd is not None:
        parts.append(f"({fmt_usd(sale.amount_usd)})")
    if sale.chain:
        parts.append(f"[{sale.chain}]")
    return " ".join(parts)


def compute_digest_summary(
    rows: Iterable,
    guild_id: str,
    window_hours: int,
    labels: Optional[Dict[str, str]] = None,
) -> schemas.DigestSummary:
    """
    Folds newest-first rows into a DigestSummary.
    Most-active ties go to the lexicographically smallest address, top-sale
    ties to the newest sale.
    """
    summary = schemas.DigestSummary(guild_id=guild_id, window_hours=window_hours)
    contract_counts: Counter = Counter()
    chain_counts: Counter = Counter()
    top_sale = None
    top_swap = None
    top_swap_value = None

    for row in rows:
        summary.row_count += 1
        ts = _as_utc(row.ts)
        if ts is not None:
            if summary.newest_ts is None or ts > summary.newest_ts:
                summary.newest_ts = ts
            if summary.oldest_ts is None or ts < summary.oldest_ts:
                summary.oldest_ts = ts
        if row.contract:
            contract_counts[row.contract] += 1
        if row.chain:
            chain_counts[row.chain] += 1

        if row.event_type == EventKind.MINT.value:
            summary.mint_count += 1
            continue
        if row.event_type != EventKind.SALE.value:
            continue

        summary.sale_count += 1
        if row.token_id:
            summary.nft_sale_count += 1
        else:
            summary.swap_count += 1
        if row.sub_type == SubKind.TOKEN_BUY.value:
            summary.token_buy_count += 1
        elif row.sub_type == SubKind.TOKEN_SELL.value:
            summary.token_sell_count += 1

        if row.amount_eth is not None:
            summary.total_eth += row.amount_eth
            if top_sale is None or row.amount_eth > top_sale.amount_eth:
                top_sale = row
        if row.amount_usd is not None:
            summary.total_usd += row.amount_usd

        if not row.token_id:
            value = row.amount_usd if row.amount_usd is not None else row.amount_eth
            if value is not None and (top_swap_value is None or value > top_swap_value):
                top_swap, top_swap_value = row, value

        if len(summary.recent_sales) < RECENT_SALES_SIZE:
            summary.recent_sales.append(format_sale_line(_sale_line(row), labels))

    if contract_counts:
        address, count = min(contract_counts.items(), key=lambda item: (-item[1], item[0]))
        summary.most_active_contract = address
        summary.most_active_count = count
        summary.most_active_display = f"{label_addr(address, labels)} ({count} events)"

    if top_sale is not None:
        summary.top_sale = _sale_line(top_sale)
        summary.top_sale_display = format_sale_line(summary.top_sale, labels)
    if top_swap is not None:
        summary.top_swap = _sale_line(top_swap)
        summary.top_swap_display = format_sale_line(summary.top_swap, labels)

    if chain_counts:
        ranked = sorted(chain_counts.items(), key=lambda item: (-item[1], item[0]))[:CHAIN_BREAKDOWN_SIZE]
        summary.chain_counts = dict(ranked)
        summary.chain_display = " • ".join(f"{chain}:{count}" for chain, count in ranked)

    return summary


class DigestAggregator:
    """Read-only rollups over the trailing window of a guild's digest events."""

    def __init__(self, session_factory: sessionmaker, labels: Optional[Dict[str, str]] = None, max_rows: int = 2000):
        self.session_factory = session_factory
        self.labels = labels or {}
        self.max_rows = max_rows

    def summarize_sync(self, guild_id: str, window_hours: int = 24, now: Optional[datetime.datetime] = None) -> schemas.DigestSummary:
        window_hours = max(1, min(MAX_WINDOW_HOURS, int(window_hours)))
        now = now or datetime.datetime.now(datetime.timezone.utc)
        since = now - datetime.timedelta(hours=window_hours)
        db = self.session_factory()
        try:
            rows = crud.fetch_digest_window(db, guild_id, since, self.max_rows)
            return compute_digest_summary(rows, guild_id, window_hours, self.labels)
        finally:
            db.close()

    async def summarize(self, guild_id: str, window_hours: int = 24, now: Optional[datetime.datetime] = None) -> schemas.DigestSummary:
        return await asyncio.to_thread(self.summarize_sync, guild_id, window_hours, now)

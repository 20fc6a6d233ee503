"""Tests for digest rollups."""

import datetime
from types import SimpleNamespace

from digest import DigestAggregator, DigestEventStore, compute_digest_summary, short_addr

NOW = datetime.datetime(2026, 3, 10, 12, 0, tzinfo=datetime.timezone.utc)


def _row(event_type, minutes_ago=0, **fields):
    values = {
        "event_type": event_type,
        "sub_type": None,
        "chain": "base",
        "contract": "0xaaaa000000000000000000000000000000000001",
        "token_id": None,
        "amount_eth": None,
        "amount_usd": None,
        "buyer": None,
        "seller": None,
        "tx_hash": None,
        "ts": NOW - datetime.timedelta(minutes=minutes_ago),
    }
    values.update(fields)
    return SimpleNamespace(**values)


def test_empty_window_gives_zeros_and_placeholders():
    summary = compute_digest_summary([], "g1", 24)

    assert summary.mint_count == 0
    assert summary.sale_count == 0
    assert summary.total_eth == 0
    assert summary.total_usd == 0
    assert summary.top_sale is None
    assert summary.top_sale_display == "N/A"
    assert summary.most_active_display == "N/A"
    assert summary.chain_display == "N/A"
    assert summary.recent_sales == []


def test_counts_volume_and_top_sale():
    rows = [
        _row("sale", 1, token_id="1", amount_eth=1.0, tx_hash="0x1"),
        _row("sale", 2, token_id="2", amount_eth=3.5, tx_hash="0x2"),
        _row("mint", 3, token_id="3", tx_hash="0x3"),
    ]

    summary = compute_digest_summary(rows, "g1", 24)

    assert summary.sale_count == 2
    assert summary.mint_count == 1
    assert summary.total_eth == 4.5
    assert summary.top_sale.amount_eth == 3.5
    assert summary.top_sale.tx_hash == "0x2"
    assert summary.nft_sale_count == 2
    assert summary.swap_count == 0


def test_top_sale_tie_goes_to_newest():
    rows = [
        _row("sale", 1, token_id="1", amount_eth=2.0, tx_hash="0xnew"),
        _row("sale", 5, token_id="2", amount_eth=2.0, tx_hash="0xold"),
    ]
    assert compute_digest_summary(rows, "g1", 24).top_sale.tx_hash == "0xnew"


def test_most_active_tie_breaks_on_address():
    rows = [
        _row("mint", 1, contract="0xbbbb"),
        _row("mint", 2, contract="0xaaaa"),
        _row("sale", 3, contract="0xbbbb"),
        _row("sale", 4, contract="0xaaaa"),
    ]

    summary = compute_digest_summary(rows, "g1", 24)

    assert summary.most_active_contract == "0xaaaa"
    assert summary.most_active_count == 2


def test_sub_kinds_and_swap_values():
    rows = [
        _row("sale", 1, sub_type="token_buy", amount_usd=50.0, tx_hash="0xa"),
        _row("sale", 2, sub_type="token_sell", amount_eth=0.2, tx_hash="0xb"),
        _row("sale", 3, sub_type="swap", amount_usd=500.0, amount_eth=0.1, tx_hash="0xc"),
    ]

    summary = compute_digest_summary(rows, "g1", 24)

    assert summary.token_buy_count == 1
    assert summary.token_sell_count == 1
    assert summary.swap_count == 3
    assert summary.total_usd == 550.0
    # swaps rank by USD when known
    assert summary.top_swap.tx_hash == "0xc"


def test_chain_breakdown_keeps_top_six():
    rows = []
    for i, chain in enumerate(["eth", "base", "ape", "c4", "c5", "c6", "c7"]):
        rows += [_row("mint", i, chain=chain)] * (10 - i)

    summary = compute_digest_summary(rows, "g1", 24)

    assert list(summary.chain_counts) == ["eth", "base", "ape", "c4", "c5", "c6"]
    assert summary.chain_display.startswith("eth:10 • base:9")


def test_recent_sales_are_newest_five_with_labels():
    contract = "0x1111111111111111111111111111111111111111"
    rows = [_row("sale", i, contract=contract, token_id=str(i), amount_eth=0.1) for i in range(8)]

    summary = compute_digest_summary(rows, "g1", 24, labels={contract: "Apes"})

    assert len(summary.recent_sales) == 5
    assert summary.recent_sales[0].startswith("Apes #0")
    assert "Apes" in summary.most_active_display


def test_short_addr():
    assert short_addr("0x1234567890abcdef1234567890abcdef12345678") == "0x1234…5678"
    assert short_addr(None) == "N/A"


def test_summarize_reads_only_the_window(session_factory):
    store = DigestEventStore(session_factory)
    store.record_sync({"guild_id": "g1", "event_type": "sale", "tx_hash": "0x1", "token_id": "1", "amount_eth": 1.0, "ts": NOW - datetime.timedelta(hours=1)})
    store.record_sync({"guild_id": "g1", "event_type": "sale", "tx_hash": "0x2", "token_id": "2", "amount_eth": 9.0, "ts": NOW - datetime.timedelta(hours=30)})
    store.record_sync({"guild_id": "g2", "event_type": "mint", "tx_hash": "0x3", "ts": NOW - datetime.timedelta(hours=1)})

    summary = DigestAggregator(session_factory).summarize_sync("g1", 24, now=NOW)

    assert summary.sale_count == 1
    assert summary.mint_count == 0
    assert summary.total_eth == 1.0
    assert summary.newest_ts == NOW - datetime.timedelta(hours=1)


def test_summarize_clamps_window(session_factory):
    summary = DigestAggregator(session_factory).summarize_sync("g1", 1000, now=NOW)
    assert summary.window_hours == 168

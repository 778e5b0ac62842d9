import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from payment_verifier import verify
from payment_verifier.db import ConcurrentUpdateError
from payment_verifier.verify import run_verification, order_payment_view, screen_orders

from fakes import (
    FakeChainReader, WALLET, BUYER, OTHER_BUYER, TOKEN, TOKENS,
    make_order, transfer_event, native_tx,
)

TX_A = "0x" + "aa" * 32
TX_B = "0x" + "bb" * 32


def _run(reader, store, notifier=None, **kwargs):
    params = dict(
        receiving_wallet=WALLET,
        tokens=TOKENS,
        native_symbol="HYPE",
        confirmation_delay=6,
        lookback=500,
        tolerance=Decimal("0.99"),
        now=datetime.now(timezone.utc),
    )
    params.update(kwargs)
    return run_verification(reader, store, notifier, **params)


def test_full_payment_completes_order(store, notifier):
    make_order(store)
    reader = FakeChainReader(head=1000, logs={TOKEN: [transfer_event(BUYER, 25_000_000, TX_A, 900)]})

    report = _run(reader, store, notifier)

    assert report["window"] == {"from_block": 494, "to_block": 994, "head": 1000}
    assert report["summary"]["completed"] == 1
    assert report["summary"]["updated"] == 1
    assert store.get_order("order-1")["status"] == "completed"
    notifier.send_order_confirmation.assert_called_once()

    run = store.list_runs()[0]
    assert run["status"] == "success"
    assert run["from_block"] == 494
    assert run["to_block"] == 994
    assert run["summary"]["completed"] == 1


def test_unconfirmed_blocks_are_not_credited(store):
    make_order(store)
    reader = FakeChainReader(head=1000, logs={TOKEN: [transfer_event(BUYER, 25_000_000, TX_A, 998)]})

    report = _run(reader, store)

    assert report["summary"]["no_match"] == 1
    assert store.get_order("order-1")["status"] == "pending"


def test_overlapping_runs_credit_each_transfer_once(store):
    make_order(store)
    reader = FakeChainReader(head=1000, logs={TOKEN: [transfer_event(BUYER, 10_000_000, TX_A, 900)]})

    _run(reader, store)
    reader.head = 1010
    second = _run(reader, store)

    saved = store.get_order("order-1")
    assert saved["status"] == "underpaid"
    assert saved["paid_amount"] == "10"
    assert saved["tx_hashes"] == [TX_A]
    assert second["summary"]["no_match"] == 1
    assert second["results"][0]["status"] == "no_new_transfers"


def test_top_up_completes_underpaid_order(store):
    make_order(store)
    reader = FakeChainReader(head=1000, logs={TOKEN: [transfer_event(BUYER, 10_000_000, TX_A, 900)]})
    _run(reader, store)

    reader.logs[TOKEN].append(transfer_event(BUYER, 15_000_000, TX_B, 950))
    report = _run(reader, store)

    assert report["summary"]["completed"] == 1
    saved = store.get_order("order-1")
    assert saved["status"] == "completed"
    assert saved["paid_amount"] == "25"
    assert saved["tx_hashes"] == [TX_A, TX_B]


def test_native_payment(store):
    make_order(store, payment_method="HYPE", total_token_amount="2")
    reader = FakeChainReader(head=1000, blocks={
        900: {"number": 900, "transactions": [native_tx(BUYER, 2 * 10 ** 18, TX_A, 900)]},
    })

    report = _run(reader, store)

    assert report["summary"]["completed"] == 1
    assert not any(call[0] == "get_logs" for call in reader.calls)


def test_native_scan_skipped_without_native_orders(store):
    make_order(store)
    reader = FakeChainReader(head=1000)

    _run(reader, store)

    assert not any(call[0] == "iter_blocks" for call in reader.calls)


def test_transfer_from_unknown_wallet_is_ignored(store):
    make_order(store)
    reader = FakeChainReader(head=1000, logs={TOKEN: [transfer_event(OTHER_BUYER, 25_000_000, TX_A, 900)]})

    report = _run(reader, store)

    assert report["summary"]["no_match"] == 1
    assert store.get_order("order-1")["paid_amount"] == "0"


def test_no_orders_skips_chain(store):
    reader = FakeChainReader(head=1000)

    report = _run(reader, store)

    assert report["summary"]["total_orders"] == 0
    assert reader.calls == []
    assert store.list_runs()[0]["status"] == "success"


def test_short_chain_has_nothing_to_scan(store):
    make_order(store)
    report = _run(FakeChainReader(head=3), store)
    assert report["window"] is None
    assert report["message"] == "Not enough new blocks to scan."


def test_rpc_failure_aborts_and_is_logged(store):
    make_order(store)
    reader = FakeChainReader()
    reader.latest_block_number = MagicMock(side_effect=ConnectionError("rpc down"))

    with pytest.raises(ConnectionError):
        _run(reader, store)

    run = store.list_runs()[0]
    assert run["status"] == "error"
    assert "rpc down" in run["message"]
    assert store.get_order("order-1")["status"] == "pending"


def test_one_bad_order_does_not_stop_the_run(store, monkeypatch):
    make_order(store, "bad", wallet_address=BUYER)
    make_order(store, "good", wallet_address=OTHER_BUYER)
    reader = FakeChainReader(head=1000, logs={TOKEN: [
        transfer_event(BUYER, 25_000_000, TX_A, 900),
        transfer_event(OTHER_BUYER, 25_000_000, TX_B, 901),
    ]})

    real_reconcile = verify.reconcile_order

    def flaky_reconcile(store, order, transfers, **kwargs):
        if order["id"] == "bad":
            raise RuntimeError("disk full")
        return real_reconcile(store, order, transfers, **kwargs)

    monkeypatch.setattr(verify, "reconcile_order", flaky_reconcile)

    report = _run(reader, store)

    assert report["summary"]["errors"] == 1
    assert report["summary"]["completed"] == 1
    assert store.get_order("bad")["verification_error"] == "disk full"
    assert store.get_order("bad")["status"] == "pending"
    assert store.get_order("good")["status"] == "completed"


def _two_paid_orders(store):
    make_order(store, "bad", wallet_address=BUYER,
               created_at="2026-01-01T00:00:00.000000+00:00")
    make_order(store, "good", wallet_address=OTHER_BUYER,
               created_at="2026-01-02T00:00:00.000000+00:00")
    return FakeChainReader(head=1000, logs={TOKEN: [
        transfer_event(BUYER, 25_000_000, TX_A, 900),
        transfer_event(OTHER_BUYER, 25_000_000, TX_B, 901),
    ]})


def test_failing_error_record_does_not_stop_the_run(store, monkeypatch):
    reader = _two_paid_orders(store)
    real_reconcile = verify.reconcile_order

    def locked_reconcile(store, order, transfers, **kwargs):
        if order["id"] == "bad":
            raise sqlite3.OperationalError("database is locked")
        return real_reconcile(store, order, transfers, **kwargs)

    monkeypatch.setattr(verify, "reconcile_order", locked_reconcile)
    monkeypatch.setattr(store, "record_verification_error",
                        MagicMock(side_effect=sqlite3.OperationalError("database is locked")))

    report = _run(reader, store)

    assert report["summary"]["errors"] == 1
    assert report["summary"]["completed"] == 1
    assert store.get_order("good")["status"] == "completed"
    assert store.list_runs()[0]["status"] == "success"


def test_lost_update_is_reported_as_conflict(store, monkeypatch):
    reader = _two_paid_orders(store)
    real_reconcile = verify.reconcile_order

    def racing_reconcile(store, order, transfers, **kwargs):
        if order["id"] == "bad":
            raise ConcurrentUpdateError("Order bad changed since it was read")
        return real_reconcile(store, order, transfers, **kwargs)

    monkeypatch.setattr(verify, "reconcile_order", racing_reconcile)

    report = _run(reader, store)

    assert report["summary"]["conflicts"] == 1
    assert report["summary"]["errors"] == 0
    assert {r["order_id"]: r["status"] for r in report["results"]}["bad"] == "conflict"
    assert store.get_order("bad")["verification_error"] is None
    assert store.get_order("good")["status"] == "completed"


def test_on_demand_check_uses_short_lookback(store, monkeypatch):
    make_order(store, "a")
    make_order(store, "b", wallet_address=OTHER_BUYER)
    monkeypatch.setattr(verify, "ON_DEMAND_LOOKBACK_BLOCKS", 120)
    reader = FakeChainReader(head=1000)

    report = _run(reader, store, order_id="b", lookback=None)

    assert report["summary"]["total_orders"] == 1
    assert report["window"]["from_block"] == 994 - 120


def test_missing_receiving_wallet_refuses_to_run(store, monkeypatch):
    monkeypatch.setattr(verify, "RECEIVING_WALLET", None)
    with pytest.raises(RuntimeError):
        _run(FakeChainReader(), store, receiving_wallet=None)


def test_zero_total_order_is_skipped_and_run_continues(store):
    make_order(store, "free", total_token_amount="0", created_at="2026-01-01T00:00:00.000000+00:00")
    make_order(store, "paid", wallet_address=OTHER_BUYER)
    reader = FakeChainReader(head=1000, logs={TOKEN: [
        transfer_event(BUYER, 1_000_000, TX_A, 900),
        transfer_event(OTHER_BUYER, 25_000_000, TX_B, 901),
    ]})

    report = _run(reader, store)

    assert report["summary"]["skipped"] == 1
    assert report["summary"]["completed"] == 1
    assert store.get_order("free")["status"] == "pending"
    assert store.get_order("free")["paid_amount"] == "0"


def test_screen_orders_flags_bad_data():
    orders = [
        {"id": "ok", "wallet_address": BUYER, "payment_method": "usdt0", "total_token_amount": "5"},
        {"id": "method", "wallet_address": BUYER, "payment_method": "DOGE", "total_token_amount": "5"},
        {"id": "total", "wallet_address": BUYER, "payment_method": "USDT0", "total_token_amount": None},
        {"id": "wallet", "wallet_address": "", "payment_method": "USDT0", "total_token_amount": "5"},
    ]

    ready, skipped = screen_orders(orders, {"USDT0", "HYPE"})

    assert [o["id"] for o in ready] == ["ok"]
    assert {s["order_id"]: s["status"] for s in skipped} == {
        "method": "invalid", "total": "invalid", "wallet": "skipped",
    }


def test_order_payment_view(store):
    make_order(store)
    view = order_payment_view(store, "order-1")
    assert view["status"] == "pending"
    assert view["remaining_amount"] == "25"
    with pytest.raises(ValueError):
        order_payment_view(store, "missing")

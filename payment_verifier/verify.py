#!/usr/bin/env python3
"""
Payment Verifier - Verification Job
One run: load eligible orders, scan the confirmation-delayed block window,
match transfers to orders, reconcile each order independently.

Usage:
    python -m payment_verifier.verify run
    python -m payment_verifier.verify run --order-id <id>
    python -m payment_verifier.verify watch --interval 15
    python -m payment_verifier.verify order <id>
    python -m payment_verifier.verify runs --limit 20
"""

import sys
import json
import time
import signal
import logging
import argparse
from datetime import datetime, timezone

from .config import (
    RECEIVING_WALLET, TOKENS, NATIVE_SYMBOL, PAYMENT_METHODS,
    CONFIRMATION_DELAY_BLOCKS, SCAN_LOOKBACK_BLOCKS, ON_DEMAND_LOOKBACK_BLOCKS,
    COMPLETION_TOLERANCE, POLL_INTERVAL,
)
from .db import OrderStore, ConcurrentUpdateError, to_timestamp
from .chain import ChainReader
from .notifier import ResendNotifier
from .transfers import scan_window, collect_transfers
from .matcher import match_transfers
from .reconcile import reconcile_order, parse_token_total, STATUS_COMPLETED, STATUS_UNDERPAID

logger = logging.getLogger(__name__)


# ============================================================
# Order screening
# ============================================================

def screen_orders(orders, payment_methods=None):
    """
    Split orders into those the engine can credit and those it must skip.
    Bad order data is logged on every run; retrying will not fix it.
    """
    payment_methods = PAYMENT_METHODS if payment_methods is None else payment_methods
    ready, skipped = [], []
    for order in orders:
        if not order.get("wallet_address"):
            logger.warning("Order %s is missing a wallet_address. Skipping.", order["id"])
            skipped.append({"order_id": order["id"], "status": "skipped", "detail": "missing wallet_address"})
            continue
        method = (order.get("payment_method") or "").upper()
        if method not in payment_methods:
            logger.error("Order %s has unsupported payment_method %r. Skipping.", order["id"], order.get("payment_method"))
            skipped.append({"order_id": order["id"], "status": "invalid", "detail": "unsupported payment_method"})
            continue
        try:
            parse_token_total(order)
        except ValueError as e:
            logger.error("%s. Skipping.", e)
            skipped.append({"order_id": order["id"], "status": "invalid", "detail": str(e)})
            continue
        ready.append(order)
    return ready, skipped


# ============================================================
# Verification run
# ============================================================

def run_verification(
    reader,
    store,
    notifier=None,
    order_id=None,
    now=None,
    receiving_wallet=None,
    tokens=None,
    native_symbol=NATIVE_SYMBOL,
    confirmation_delay=CONFIRMATION_DELAY_BLOCKS,
    lookback=None,
    tolerance=COMPLETION_TOLERANCE,
):
    """
    Verify payments for all eligible orders, or for one order when order_id is given.

    RPC failures abort the run (recorded in the run log, then re-raised).
    Failures on a single order are recorded on that order and the run continues.
    Returns a report dict.
    """
    receiving_wallet = receiving_wallet or RECEIVING_WALLET
    if not receiving_wallet:
        raise RuntimeError("VERIFIER_RECEIVING_WALLET is not configured")
    tokens = TOKENS if tokens is None else tokens
    native_symbol = native_symbol.upper()
    if lookback is None:
        lookback = ON_DEMAND_LOOKBACK_BLOCKS if order_id else SCAN_LOOKBACK_BLOCKS
    now = now or datetime.now(timezone.utc)
    started_at = to_timestamp(datetime.now(timezone.utc))

    logger.info("Starting payment verification. Order ID: %s", order_id or "All")

    report = {
        "timestamp": started_at,
        "order_id": order_id,
        "window": None,
        "results": [],
        "summary": {
            "total_orders": 0,
            "updated": 0,
            "completed": 0,
            "underpaid": 0,
            "no_match": 0,
            "skipped": 0,
            "conflicts": 0,
            "errors": 0,
        },
    }

    orders = store.fetch_eligible_orders(now, order_id=order_id)
    report["summary"]["total_orders"] = len(orders)
    if not orders:
        report["message"] = "No pending orders to check."
        logger.info(report["message"])
        _record_run(store, report, started_at, "success")
        return report

    payment_methods = {native_symbol, *(s.upper() for s in tokens)}
    ready, skipped = screen_orders(orders, payment_methods)
    report["results"].extend(skipped)
    report["summary"]["skipped"] = len(skipped)
    if not ready:
        report["message"] = "No orders with valid payment data."
        _record_run(store, report, started_at, "success")
        return report

    try:
        head = reader.latest_block_number()
        window = scan_window(head, confirmation_delay, lookback)
        if window is None:
            report["message"] = "Not enough new blocks to scan."
            logger.info(report["message"])
            _record_run(store, report, started_at, "success")
            return report
        from_block, to_block = window
        report["window"] = {"from_block": from_block, "to_block": to_block, "head": head}
        logger.info("Scanning from block %d to %d", from_block, to_block)

        needs_native = any(o["payment_method"].upper() == native_symbol for o in ready)
        token_methods = {o["payment_method"].upper() for o in ready}
        wanted_tokens = {s: t for s, t in tokens.items() if s.upper() in token_methods}
        transfers = collect_transfers(
            reader, from_block, to_block, receiving_wallet,
            include_native=needs_native, tokens=wanted_tokens, native_symbol=native_symbol,
        )
    except Exception as e:
        logger.error("Chain scan failed, aborting run: %s", e)
        report["message"] = f"Chain scan failed: {e}"
        _record_run(store, report, started_at, "error")
        raise

    matched = match_transfers(ready, transfers)
    matched_ids = {order["id"] for order, _ in matched}
    logger.info("Processing transactions for %d order(s).", len(matched))

    for order in ready:
        if order["id"] not in matched_ids:
            report["results"].append({"order_id": order["id"], "status": "no_match"})
            report["summary"]["no_match"] += 1

    for order, order_transfers in matched:
        try:
            result = reconcile_order(store, order, order_transfers, notifier=notifier, tolerance=tolerance)
        except ConcurrentUpdateError as e:
            # Another run already wrote this order; the next run picks up anything still missing.
            logger.warning("Skipping order %s: %s", order["id"], e)
            report["results"].append({"order_id": order["id"], "status": "conflict", "detail": str(e)})
            report["summary"]["conflicts"] += 1
            continue
        except Exception as e:
            logger.exception("Error processing order %s", order["id"])
            try:
                store.record_verification_error(order["id"], str(e))
            except Exception as record_error:
                logger.error("Could not record error on order %s: %s", order["id"], record_error)
            report["results"].append({"order_id": order["id"], "status": "error", "detail": str(e)})
            report["summary"]["errors"] += 1
            continue

        report["results"].append(result)
        if result["status"] == "no_new_transfers":
            report["summary"]["no_match"] += 1
            continue
        report["summary"]["updated"] += 1
        if result["status"] == STATUS_COMPLETED:
            report["summary"]["completed"] += 1
        elif result["status"] == STATUS_UNDERPAID:
            report["summary"]["underpaid"] += 1

    report["message"] = f"Verification complete. Checked {len(orders)} orders."
    logger.info("%s Summary: %s", report["message"], report["summary"])
    _record_run(store, report, started_at, "success")
    return report


def _record_run(store, report, started_at, status):
    window = report.get("window") or {}
    store.record_run({
        "started_at": started_at,
        "status": status,
        "message": report.get("message", ""),
        "order_id": report.get("order_id"),
        "from_block": window.get("from_block"),
        "to_block": window.get("to_block"),
        "summary": report["summary"],
    })


def order_payment_view(store, order_id):
    """What the checkout confirmation page shows for an order."""
    order = store.get_order(order_id)
    if not order:
        raise ValueError(f"Order {order_id} not found")
    return {
        "order_id": order["id"],
        "status": order["status"],
        "payment_method": order["payment_method"],
        "total_token_amount": order["total_token_amount"],
        "paid_amount": order["paid_amount"],
        "remaining_amount": order["remaining_amount"],
        "tx_hashes": order["tx_hashes"],
        "expires_at": order["expires_at"],
    }


# ============================================================
# Polling loop (for deployments without an external scheduler)
# ============================================================

def watch(reader, store, notifier=None, interval=POLL_INTERVAL):
    """
    Run verification every `interval` seconds.
    Foreground process - Ctrl-C to stop. A failed run is logged and retried next tick.
    """
    logger.info("Watching for payments every %ss - Ctrl-C to stop", interval)
    running = True

    def handle_sigint(sig, frame):
        nonlocal running
        running = False
        logger.info("Stopping watcher...")

    signal.signal(signal.SIGINT, handle_sigint)

    while running:
        try:
            run_verification(reader, store, notifier)
        except Exception as e:
            logger.error("Verification run failed: %s", e)

        # Sleep in small increments so Ctrl-C is responsive
        for _ in range(interval):
            if not running:
                break
            time.sleep(1)

    logger.info("Watcher stopped.")


# ============================================================
# CLI
# ============================================================

def main(argv=None):
    parser = argparse.ArgumentParser(description="On-chain payment verifier")
    parser.add_argument("--db", default=None, help="SQLite database path")
    parser.add_argument("--rpc", default=None, help="Override RPC URL")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run one verification pass")
    run.add_argument("--order-id", help="Check a single order (short lookback)")
    run.add_argument("--lookback", type=int, help="Override scan lookback in blocks")

    w = sub.add_parser("watch", help="Verify continuously (foreground)")
    w.add_argument("--interval", type=int, default=POLL_INTERVAL, help="Poll interval in seconds")

    order = sub.add_parser("order", help="Show an order's payment status")
    order.add_argument("order_id")

    runs = sub.add_parser("runs", help="Recent verification runs")
    runs.add_argument("--limit", type=int, default=20)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command is None:
        parser.print_help()
        return 0

    store = OrderStore(args.db)

    if args.command == "run":
        result = run_verification(
            ChainReader(args.rpc), store, ResendNotifier(),
            order_id=args.order_id, lookback=args.lookback,
        )
        print(json.dumps(result, indent=2, default=str))

    elif args.command == "watch":
        watch(ChainReader(args.rpc), store, ResendNotifier(), interval=args.interval)

    elif args.command == "order":
        print(json.dumps(order_payment_view(store, args.order_id), indent=2))

    elif args.command == "runs":
        print(json.dumps(store.list_runs(args.limit), indent=2))

    return 0


def cli():
    try:
        sys.exit(main())
    except ValueError as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(json.dumps({"error": f"Unexpected error: {e}"}), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli()

#!/usr/bin/env python3
"""
Payment Verifier - Preflight Check

Validates configuration, initializes the database, tests RPC connectivity
and compares configured token decimals with what the contracts report.

Usage:
    python -m payment_verifier.preflight

    # Or with env vars pre-set:
    VERIFIER_RECEIVING_WALLET=0x... python -m payment_verifier.preflight
"""

import sys

from . import config


def banner(msg):
    print(f"\n{'='*60}")
    print(f"  {msg}")
    print(f"{'='*60}\n")


def ok(msg):
    print(f"  ✅ {msg}")


def warn(msg):
    print(f"  ⚠️  {msg}")


def fail(msg):
    print(f"  ❌ {msg}")


def section(msg):
    print(f"\n--- {msg} ---")


def check_wallet(receiving_wallet):
    section("Receiving Wallet")
    if receiving_wallet:
        ok(f"VERIFIER_RECEIVING_WALLET: {receiving_wallet}")
        return []
    fail("VERIFIER_RECEIVING_WALLET not set - verification runs will refuse to start")
    return ["No receiving wallet configured"]


def check_tunables():
    section("Scan Window")
    ok(f"Confirmation delay: {config.CONFIRMATION_DELAY_BLOCKS} blocks")
    ok(f"Lookback: {config.SCAN_LOOKBACK_BLOCKS} blocks (on-demand: {config.ON_DEMAND_LOOKBACK_BLOCKS})")
    ok(f"Completion tolerance: {config.COMPLETION_TOLERANCE}")
    if config.SCAN_LOOKBACK_BLOCKS <= config.CONFIRMATION_DELAY_BLOCKS:
        warn("Lookback is not larger than the confirmation delay - runs may not overlap")
    return []


def check_database(store_factory):
    section("Database")
    try:
        store = store_factory()
        ok(f"SQLite database initialized: {store.db_path}")
        return []
    except Exception as e:
        fail(f"Database init failed: {e}")
        return [f"DB init: {e}"]


def check_rpc(reader, tokens):
    section("RPC Connectivity")
    errors = []
    try:
        block = reader.latest_block_number()
        ok(f"{config.CHAIN['name']} ({reader.rpc_url}): block #{block:,}")
    except Exception as e:
        fail(f"{reader.rpc_url}: {e}")
        return [f"RPC: {e}"]

    section("Payment Tokens")
    for symbol, token in tokens.items():
        try:
            onchain = reader.token_decimals(token["address"])
        except Exception as e:
            fail(f"{symbol} ({token['address']}): {e}")
            errors.append(f"Token {symbol}: {e}")
            continue
        declared = token.get("decimals")
        if declared is None:
            ok(f"{symbol}: {onchain} decimals (read from contract)")
        elif declared == onchain:
            ok(f"{symbol}: {declared} decimals")
        else:
            fail(f"{symbol}: configured {declared} decimals but contract reports {onchain}")
            errors.append(f"Token {symbol}: decimals mismatch")
    return errors


def run_checks(reader=None, store_factory=None, receiving_wallet=None, tokens=None):
    """Run every check. Returns the list of problems found."""
    from .chain import ChainReader
    from .db import OrderStore

    reader = reader or ChainReader()
    store_factory = store_factory or OrderStore
    receiving_wallet = config.RECEIVING_WALLET if receiving_wallet is None else receiving_wallet
    tokens = config.TOKENS if tokens is None else tokens

    errors = []
    errors += check_wallet(receiving_wallet)
    errors += check_tunables()
    errors += check_database(store_factory)
    errors += check_rpc(reader, tokens)

    section("Notifications")
    if config.RESEND_API_KEY:
        ok("RESEND_API_KEY configured")
    else:
        warn("RESEND_API_KEY not set - confirmation emails will be marked failed")
    return errors


def main():
    banner("Payment Verifier - Preflight")
    errors = run_checks()
    banner("Preflight Complete" if not errors else "Preflight Complete (with issues)")
    if errors:
        print("Issues to fix:")
        for e in errors:
            print(f"  ❌ {e}")
        print()
    else:
        print("Everything looks good! 🎉\n")
    print("Quick start:")
    print("  python -m payment_verifier.verify run")
    print("  python -m payment_verifier.server")
    print()
    return 0 if not errors else 1


if __name__ == "__main__":
    sys.exit(main())

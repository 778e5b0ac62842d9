"""
Payment Verifier - Python Package Exports

Usage:
    from payment_verifier import ChainReader, OrderStore, ResendNotifier, run_verification

    reader = ChainReader()
    store = OrderStore()
    report = run_verification(reader, store, ResendNotifier())
"""

# Chain access & transfer extraction
from .chain import ChainReader
from .transfers import (
    scan_window,
    collect_transfers,
    fetch_native_transfers,
    fetch_token_transfers,
    from_base_units,
)

# Order store
from .db import OrderStore, ConcurrentUpdateError

# Matching & reconciliation
from .matcher import index_orders, match_transfers
from .reconcile import apply_transfers, reconcile_order, decide_status, completion_threshold

# Notifications
from .notifier import ResendNotifier, NotificationError

# Job
from .verify import run_verification, order_payment_view, watch

__all__ = [
    # Chain
    "ChainReader", "scan_window", "collect_transfers",
    "fetch_native_transfers", "fetch_token_transfers", "from_base_units",
    # Store
    "OrderStore", "ConcurrentUpdateError",
    # Reconciliation
    "index_orders", "match_transfers",
    "apply_transfers", "reconcile_order", "decide_status", "completion_threshold",
    # Notifications
    "ResendNotifier", "NotificationError",
    # Job
    "run_verification", "order_payment_view", "watch",
]

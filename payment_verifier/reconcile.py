"""
Payment Verifier - Reconciliation Engine
Credits newly observed transfers to an order exactly once per transaction hash,
recomputes paid/remaining amounts, and moves the order through
pending -> underpaid -> completed.
"""

import logging
from decimal import Decimal, InvalidOperation, localcontext

from .config import COMPLETION_TOLERANCE
from .transfers import AMOUNT_PRECISION, format_amount, normalize_hash

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_UNDERPAID = "underpaid"
STATUS_COMPLETED = "completed"


# ============================================================
# Pure decision logic
# ============================================================

def parse_token_total(order):
    """
    The order total in payment-token units. Raises ValueError when it is
    missing or not positive: such an order can never be completed.
    """
    raw = order.get("total_token_amount")
    if raw is None or str(raw).strip() == "":
        raise ValueError(f"Order {order.get('id')} has no total_token_amount")
    try:
        total = Decimal(str(raw))
    except InvalidOperation:
        raise ValueError(f"Order {order.get('id')} has an unparsable total_token_amount: {raw!r}")
    if not total.is_finite() or total <= 0:
        raise ValueError(f"Order {order.get('id')} has an invalid total_token_amount: {raw}")
    return total


def completion_threshold(total, tolerance=COMPLETION_TOLERANCE):
    with localcontext() as ctx:
        ctx.prec = AMOUNT_PRECISION
        return Decimal(total) * Decimal(tolerance)


def decide_status(paid, total, tolerance=COMPLETION_TOLERANCE):
    """completed once paid reaches total * tolerance, underpaid otherwise."""
    if Decimal(paid) >= completion_threshold(total, tolerance):
        return STATUS_COMPLETED
    return STATUS_UNDERPAID


def apply_transfers(order, transfers, tolerance=COMPLETION_TOLERANCE):
    """
    Compute the order's new payment state from transfers observed this run.

    Transfers whose hash is already in tx_hashes are ignored. Returns None when
    nothing new was seen (no write needed), else a dict with the new status,
    paid_amount, remaining_amount and the extended tx_hashes list.
    """
    total = parse_token_total(order)
    known = list(order.get("tx_hashes") or [])
    seen = {normalize_hash(h) for h in known}

    new_transfers = [t for t in transfers if normalize_hash(t["tx_hash"]) not in seen]
    if not new_transfers:
        return None

    new_hashes = []
    for t in new_transfers:
        tx_hash = normalize_hash(t["tx_hash"])
        if tx_hash not in new_hashes:
            new_hashes.append(tx_hash)

    with localcontext() as ctx:
        ctx.prec = AMOUNT_PRECISION
        credited = sum((Decimal(t["amount"]) for t in new_transfers), Decimal("0"))
        paid = Decimal(str(order.get("paid_amount") or "0")) + credited
        remaining = max(total - paid, Decimal("0"))
        overpaid = max(paid - total, Decimal("0"))

    return {
        "status": decide_status(paid, total, tolerance),
        "paid_amount": paid,
        "remaining_amount": remaining,
        "credited": credited,
        "overpaid_amount": overpaid,
        "new_tx_hashes": new_hashes,
        "tx_hashes": known + new_hashes,
    }


# ============================================================
# Persist + notify
# ============================================================

def reconcile_order(store, order, transfers, notifier=None, tolerance=COMPLETION_TOLERANCE):
    """
    Apply a run's transfers to one order and persist the result in a single
    compare-and-set write. Sends the confirmation email on the transition to
    completed. Store errors propagate; notification errors do not.
    """
    decision = apply_transfers(order, transfers, tolerance)
    if decision is None:
        logger.info("No new transactions for order %s", order["id"])
        return {"order_id": order["id"], "status": "no_new_transfers"}

    for tx_hash in decision["new_tx_hashes"]:
        logger.info("Crediting tx %s to order %s", tx_hash, order["id"])

    updated = store.update_order(order["id"], {
        "status": decision["status"],
        "paid_amount": format_amount(decision["paid_amount"]),
        "remaining_amount": format_amount(decision["remaining_amount"]),
        "tx_hashes": decision["tx_hashes"],
    }, expected_version=order.get("version", 0))

    logger.info(
        "Order %s updated to status: %s, total paid: %s %s",
        order["id"], decision["status"], format_amount(decision["paid_amount"]), order["payment_method"],
    )

    result = {
        "order_id": order["id"],
        "status": decision["status"],
        "previous_status": order.get("status"),
        "credited": format_amount(decision["credited"]),
        "paid_amount": format_amount(decision["paid_amount"]),
        "remaining_amount": format_amount(decision["remaining_amount"]),
        "new_tx_hashes": decision["new_tx_hashes"],
        "notification": None,
    }
    if decision["overpaid_amount"] > 0:
        result["overpaid_amount"] = format_amount(decision["overpaid_amount"])
        logger.warning("Order %s overpaid by %s %s", order["id"], result["overpaid_amount"], order["payment_method"])

    if decision["status"] == STATUS_COMPLETED and order.get("status") != STATUS_COMPLETED:
        result["notification"] = send_confirmation(store, notifier, updated or order)
    elif decision["status"] == STATUS_UNDERPAID and notifier is not None:
        result["notification"] = send_underpayment_notice(notifier, updated or order)

    return result


def send_confirmation(store, notifier, order):
    """
    Send the order confirmation once. The outcome is stored in
    confirmation_status; 'sent' blocks any repeat.
    """
    if order.get("confirmation_status") == "sent":
        return "already_sent"
    if notifier is None:
        logger.warning("No notifier configured; confirmation for order %s not sent", order["id"])
        store.set_confirmation_status(order["id"], "skipped")
        return "skipped"
    if not order.get("shipping_email"):
        logger.warning("Order %s has no contact email; skipping confirmation", order["id"])
        store.set_confirmation_status(order["id"], "skipped")
        return "skipped"

    try:
        items = store.fetch_order_items(order["id"])
        customer_name = f"{order.get('shipping_first_name', '')} {order.get('shipping_last_name', '')}".strip()
        notifier.send_order_confirmation(
            to=order["shipping_email"],
            customer_name=customer_name or "Valued Customer",
            order_id=str(order["id"]),
            order_date=(order.get("created_at") or "")[:10],
            items=[{
                "name": f"{i['name']} (Size: {i['size']})" if i.get("size") else i["name"],
                "quantity": i.get("quantity") or 0,
                "price": i.get("price") or "0",
            } for i in items],
            total=order.get("total") or "0",
        )
    except Exception as e:
        # Payment stays completed; the email can be resent by hand.
        logger.error("Failed to send confirmation email for order %s: %s", order["id"], e)
        store.set_confirmation_status(order["id"], "failed")
        return "failed"

    store.set_confirmation_status(order["id"], "sent")
    return "sent"


def send_underpayment_notice(notifier, order):
    """Best-effort reminder to send the remainder."""
    if not order.get("shipping_email"):
        return None
    try:
        notifier.send_underpayment_notice(
            to=order["shipping_email"],
            order_id=str(order["id"]),
            paid_amount=order["paid_amount"],
            remaining_amount=order["remaining_amount"],
            payment_method=order["payment_method"],
        )
    except Exception as e:
        logger.error("Failed to send underpayment notice for order %s: %s", order["id"], e)
        return "failed"
    return "sent"

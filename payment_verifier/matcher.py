"""
Payment Verifier - Order Matching
Pairs transfers with eligible orders by sender address and payment method.
"""

import logging
from collections import defaultdict

logger = logging.getLogger(__name__)


def order_key(address, payment_method):
    return (address.lower(), payment_method.upper())


def index_orders(orders):
    """
    Map (wallet address, payment method) -> order.
    If two eligible orders share a key, only the oldest is credited this run;
    a transfer must never be counted towards two orders.
    """
    index = {}
    for order in sorted(orders, key=lambda o: o.get("created_at") or ""):
        if not order.get("wallet_address") or not order.get("payment_method"):
            continue
        key = order_key(order["wallet_address"], order["payment_method"])
        if key in index:
            logger.warning(
                "Orders %s and %s both await %s from %s; crediting %s first",
                index[key]["id"], order["id"], key[1], key[0], index[key]["id"],
            )
            continue
        index[key] = order
    return index


def match_transfers(orders, transfers):
    """
    Group transfers per order. A transfer applies only to an order whose wallet
    sent it and whose payment method is the transfer's coin or token.
    Returns a list of (order, [transfers]) for orders with at least one transfer.
    """
    index = index_orders(orders)
    grouped = defaultdict(list)
    for transfer in transfers:
        sender = transfer.get("from")
        if not sender:
            continue
        key = order_key(sender, transfer["payment_method"])
        order = index.get(key)
        if order is None:
            continue
        grouped[order["id"]].append(transfer)

    return [(order, grouped[order["id"]]) for order in index.values() if grouped.get(order["id"])]

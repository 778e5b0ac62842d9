"""
Payment Verifier - Transfer Extraction
Finds payments to the receiving wallet inside a confirmation-delayed block window:
native-coin value transfers and ERC-20 Transfer events of the configured tokens.
"""

import logging
from decimal import Decimal, localcontext

from web3 import Web3

from .config import (
    NATIVE_SYMBOL, NATIVE_DECIMALS, TOKENS,
    CONFIRMATION_DELAY_BLOCKS, SCAN_LOOKBACK_BLOCKS,
)

logger = logging.getLogger(__name__)

# Enough significant digits for any uint256
AMOUNT_PRECISION = 78


# ============================================================
# Amount & identifier helpers
# ============================================================

def from_base_units(raw, decimals):
    """Exact conversion of an integer base-unit amount to a token Decimal."""
    with localcontext() as ctx:
        ctx.prec = AMOUNT_PRECISION
        return Decimal(int(raw)) / (Decimal(10) ** int(decimals))


def format_amount(value):
    """Plain (non-scientific) string for a Decimal amount, trailing zeros dropped."""
    with localcontext() as ctx:
        ctx.prec = AMOUNT_PRECISION
        value = Decimal(value)
        if value == 0:
            return "0"
        return format(value.normalize(), "f")


def normalize_hash(tx_hash):
    """Lower-case 0x-prefixed hex for a hash given as bytes/HexBytes or str."""
    if isinstance(tx_hash, (bytes, bytearray)):
        return Web3.to_hex(tx_hash).lower()
    tx_hash = str(tx_hash).lower()
    return tx_hash if tx_hash.startswith("0x") else f"0x{tx_hash}"


def normalize_address(address):
    return address.lower() if address else None


# ============================================================
# Scan window
# ============================================================

def scan_window(head, confirmation_delay=CONFIRMATION_DELAY_BLOCKS, lookback=SCAN_LOOKBACK_BLOCKS):
    """
    Block range to scan: [to_block - lookback, head - confirmation_delay].
    Returns (from_block, to_block), or None when there is nothing to scan yet.
    """
    to_block = max(head - confirmation_delay, 0)
    from_block = max(to_block - lookback, 0)
    if from_block >= to_block:
        return None
    return from_block, to_block


# ============================================================
# Native coin
# ============================================================

def fetch_native_transfers(reader, from_block, to_block, receiving_wallet,
                           symbol=NATIVE_SYMBOL, decimals=NATIVE_DECIMALS):
    """Value-bearing transactions sent to the receiving wallet."""
    wallet = normalize_address(receiving_wallet)
    transfers = []
    for block in reader.iter_blocks(from_block, to_block, full_transactions=True):
        if block is None:
            continue
        for tx in block["transactions"]:
            # Contract creations have no recipient
            to_address = tx.get("to")
            if not to_address or to_address.lower() != wallet:
                continue
            value = int(tx.get("value", 0))
            if value <= 0:
                continue
            transfers.append({
                "tx_hash": normalize_hash(tx["hash"]),
                "log_index": None,
                "from": normalize_address(tx["from"]),
                "to": wallet,
                "amount": from_base_units(value, decimals),
                "amount_raw": value,
                "payment_method": symbol,
                "block_number": tx.get("blockNumber", block.get("number")),
            })
    logger.info("Found %d native %s transfer(s) in blocks %d-%d", len(transfers), symbol, from_block, to_block)
    return transfers


# ============================================================
# ERC-20 tokens
# ============================================================

def fetch_token_transfers(reader, from_block, to_block, receiving_wallet, tokens=None):
    """Transfer(from, to=receiving_wallet, value) events of every configured token."""
    tokens = TOKENS if tokens is None else tokens
    wallet = normalize_address(receiving_wallet)
    transfers = []
    for symbol, token in tokens.items():
        decimals = token.get("decimals")
        if decimals is None:
            decimals = reader.token_decimals(token["address"])
        events = reader.get_logs(
            token["address"], "Transfer",
            {"to": Web3.to_checksum_address(receiving_wallet)},
            from_block, to_block,
        )
        found = 0
        for event in events:
            args = event["args"]
            if normalize_address(args["to"]) != wallet:
                continue
            value = int(args["value"])
            if value <= 0:
                continue
            transfers.append({
                "tx_hash": normalize_hash(event["transactionHash"]),
                "log_index": event.get("logIndex"),
                "from": normalize_address(args["from"]),
                "to": wallet,
                "amount": from_base_units(value, decimals),
                "amount_raw": value,
                "payment_method": symbol.upper(),
                "block_number": event.get("blockNumber"),
            })
            found += 1
        logger.info("Found %d %s transfer(s) in blocks %d-%d", found, symbol, from_block, to_block)
    return transfers


def collect_transfers(reader, from_block, to_block, receiving_wallet,
                      include_native=True, tokens=None, native_symbol=NATIVE_SYMBOL):
    """
    All payments to the receiving wallet in the window, tokens first.
    The native path walks every block, so it only runs when some order needs it.
    """
    transfers = fetch_token_transfers(reader, from_block, to_block, receiving_wallet, tokens)
    if include_native:
        transfers.extend(fetch_native_transfers(
            reader, from_block, to_block, receiving_wallet, symbol=native_symbol
        ))

    unique = []
    seen = set()
    for t in transfers:
        key = (t["tx_hash"], t["log_index"], t["payment_method"])
        if key in seen:
            continue
        seen.add(key)
        unique.append(t)
    return unique

"""
Payment Verifier - Configuration and Constants
Chain config, payment tokens, ABI, scan tunables.

All configuration can be overridden via environment variables:
- VERIFIER_RPC_URL - JSON-RPC endpoint of the chain being watched
- VERIFIER_RECEIVING_WALLET - shop wallet that customers pay into
- VERIFIER_TOKEN_<SYMBOL>_ADDRESS / _DECIMALS - ERC-20 payment tokens
- VERIFIER_CONFIRMATION_DELAY - blocks to stay behind the chain head
- VERIFIER_SCAN_LOOKBACK - blocks scanned per scheduled run
- VERIFIER_ON_DEMAND_LOOKBACK - blocks scanned when a single order is checked
- VERIFIER_TOLERANCE_FACTOR - fraction of the total that completes an order
- VERIFIER_DATA_DIR - data directory (default: <project>/data/)
- VERIFIER_API_KEY - Bearer token for the trigger endpoint
- RESEND_API_KEY - email API key for order confirmations
"""

import os
import json
from decimal import Decimal, InvalidOperation

from web3 import Web3


def _load_dotenv():
    """Load .env file from project root if it exists. No dependencies required."""
    env_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env")
    if not os.path.isfile(env_path):
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()
            # Don't override existing env vars
            if key and key not in os.environ:
                os.environ[key] = value


_load_dotenv()


def _int_env(name, default):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise RuntimeError(f"{name} cannot be negative, got {value}")
    return value


def parse_tolerance(raw):
    """
    Parse the completion tolerance factor.
    Must lie strictly between 0 and 1: 1 would demand exact payment,
    anything above would never complete an order.
    """
    try:
        factor = Decimal(str(raw))
    except InvalidOperation:
        raise RuntimeError(f"Invalid tolerance factor: {raw!r}")
    if not (Decimal("0") < factor < Decimal("1")):
        raise RuntimeError(f"Tolerance factor must be between 0 and 1 (exclusive), got {factor}")
    return factor


# ============================================================
# Chain Configuration
# ============================================================

CHAIN = {
    "name": os.environ.get("VERIFIER_CHAIN_NAME", "HyperEVM"),
    "chain_id": _int_env("VERIFIER_CHAIN_ID", 999),
    "rpc": os.environ.get("VERIFIER_RPC_URL", "https://rpc.hyperliquid.xyz/evm"),
    "explorer": os.environ.get("VERIFIER_EXPLORER_URL", "https://explorer.hyperliquid.xyz"),
}

# Native coin of the chain; orders with this payment_method are paid by plain value transfers
NATIVE_SYMBOL = os.environ.get("VERIFIER_NATIVE_SYMBOL", "HYPE").upper()
NATIVE_DECIMALS = 18

# ERC-20 payment tokens, keyed by the payment_method tag stored on orders.
# decimals=None means "read decimals() from the contract".
TOKENS = {}
for _symbol, _address, _decimals in (
    ("USDT0", "0xb8ce59fc3717ada4c02eadf9682a9e934f625ebb", 6),
    ("USDHL", "0xb50A96253aBDF803D85efcDce07Ad8becBc52BD5", 6),
):
    TOKENS[_symbol] = {
        "address": os.environ.get(f"VERIFIER_TOKEN_{_symbol}_ADDRESS", _address),
        "decimals": _int_env(f"VERIFIER_TOKEN_{_symbol}_DECIMALS", _decimals),
    }

for _symbol, _token in TOKENS.items():
    if not Web3.is_address(_token["address"]):
        raise RuntimeError(f"Invalid contract address for token {_symbol}: {_token['address']}")

PAYMENT_METHODS = {NATIVE_SYMBOL, *TOKENS.keys()}


# ============================================================
# Wallet
# ============================================================

RECEIVING_WALLET = os.environ.get("VERIFIER_RECEIVING_WALLET") or None

if RECEIVING_WALLET and not Web3.is_address(RECEIVING_WALLET):
    raise RuntimeError(f"VERIFIER_RECEIVING_WALLET is not a valid address: {RECEIVING_WALLET}")


# ============================================================
# Scanning & Reconciliation Tunables
# ============================================================

# Blocks behind the head before a payment is credited (reorg safety)
CONFIRMATION_DELAY_BLOCKS = _int_env("VERIFIER_CONFIRMATION_DELAY", 6)

# Scheduled runs must overlap: lookback has to cover more blocks than
# the chain produces between two runs, or payments slip through unseen.
SCAN_LOOKBACK_BLOCKS = _int_env("VERIFIER_SCAN_LOOKBACK", 500)
ON_DEMAND_LOOKBACK_BLOCKS = _int_env("VERIFIER_ON_DEMAND_LOOKBACK", 120)

BLOCK_BATCH_SIZE = max(1, _int_env("VERIFIER_BLOCK_BATCH_SIZE", 20))
LOG_CHUNK_SIZE = max(1, _int_env("VERIFIER_LOG_CHUNK_SIZE", 1000))
RPC_TIMEOUT = _int_env("VERIFIER_RPC_TIMEOUT", 15)

COMPLETION_TOLERANCE = parse_tolerance(os.environ.get("VERIFIER_TOLERANCE_FACTOR", "0.99"))

POLL_INTERVAL = max(1, _int_env("VERIFIER_POLL_INTERVAL", 15))


# ============================================================
# Notifications
# ============================================================

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RESEND_API_URL = "https://api.resend.com/emails"
FROM_EMAIL = os.environ.get("VERIFIER_FROM_EMAIL", "HyperWear <noreply@hyperwear.io>")


# ============================================================
# Trigger server
# ============================================================

API_KEY = os.environ.get("VERIFIER_API_KEY", "")
PORT = _int_env("VERIFIER_PORT", 9090)


# ============================================================
# ABIs
# ============================================================

# Minimal ERC20 ABI: decimals() and the Transfer event
ERC20_ABI = json.loads("""[
    {"inputs":[],"name":"decimals","outputs":[{"name":"","type":"uint8"}],"stateMutability":"view","type":"function"},
    {"inputs":[],"name":"symbol","outputs":[{"name":"","type":"string"}],"stateMutability":"view","type":"function"},
    {"anonymous":false,"inputs":[{"indexed":true,"name":"from","type":"address"},{"indexed":true,"name":"to","type":"address"},{"indexed":false,"name":"value","type":"uint256"}],"name":"Transfer","type":"event"}
]""")


# ============================================================
# Data paths
# ============================================================

DATA_DIR = os.environ.get("VERIFIER_DATA_DIR",
                          os.path.join(os.path.dirname(os.path.dirname(__file__)), "data"))
DB_PATH = os.path.join(DATA_DIR, "orders.db")

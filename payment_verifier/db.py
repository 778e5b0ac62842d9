"""
Payment Verifier - SQLite Order Store
Orders with payment bookkeeping, their line items, and a log of verification runs.
The orders table is the only shared mutable state of the verifier.
"""

import os
import json
import sqlite3
import logging
from datetime import datetime, timezone
from contextlib import contextmanager

from .config import DB_PATH

logger = logging.getLogger(__name__)

ELIGIBLE_STATUSES = ("pending", "underpaid")


class ConcurrentUpdateError(RuntimeError):
    """Raised when an order changed between read and write (lost compare-and-set)."""


# ============================================================
# Schema
# ============================================================

SCHEMA_SQL = """
-- Orders (created by checkout, payment fields mutated only by the verifier)
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'pending',
    payment_method TEXT NOT NULL,
    wallet_address TEXT,
    total TEXT NOT NULL DEFAULT '0',
    total_token_amount TEXT,
    paid_amount TEXT NOT NULL DEFAULT '0',
    remaining_amount TEXT NOT NULL DEFAULT '0',
    tx_hashes_json TEXT NOT NULL DEFAULT '[]',
    version INTEGER NOT NULL DEFAULT 0,
    confirmation_status TEXT,
    verification_error TEXT,
    shipping_email TEXT NOT NULL DEFAULT '',
    shipping_first_name TEXT NOT NULL DEFAULT '',
    shipping_last_name TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_wallet ON orders(wallet_address);
CREATE INDEX IF NOT EXISTS idx_orders_expires ON orders(expires_at);

-- Order line items (read for the confirmation email)
CREATE TABLE IF NOT EXISTS order_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id TEXT NOT NULL REFERENCES orders(id),
    name TEXT NOT NULL,
    size TEXT,
    quantity INTEGER NOT NULL DEFAULT 1,
    price TEXT NOT NULL DEFAULT '0'
);

CREATE INDEX IF NOT EXISTS idx_items_order ON order_items(order_id);

-- Verification run log
CREATE TABLE IF NOT EXISTS reconciliation_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    finished_at TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    order_id TEXT,
    from_block INTEGER,
    to_block INTEGER,
    summary_json TEXT NOT NULL DEFAULT '{}'
);
"""


def to_timestamp(dt):
    """Fixed-width UTC ISO timestamp so that TEXT comparison orders correctly."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now():
    return to_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value):
    """Accept a datetime or an ISO string (any offset, or a trailing Z) and return to_timestamp form."""
    if isinstance(value, datetime):
        return to_timestamp(value)
    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Invalid timestamp: {value!r}")
    return to_timestamp(dt)


# ============================================================
# Store
# ============================================================

class OrderStore:
    """SQLite-backed order table. One instance per process, passed to the verifier."""

    def __init__(self, db_path=None):
        self.db_path = db_path or DB_PATH
        self.init_db()

    # --- Connection management ---

    def get_connection(self):
        """Get a SQLite connection with WAL mode and foreign keys."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def get_db(self):
        """Context manager for database connections with auto-commit."""
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self):
        """Initialize database schema."""
        with self.get_db() as conn:
            conn.executescript(SCHEMA_SQL)

    # --- Orders ---

    def insert_order(self, order):
        """Insert an order dict. Used by checkout tooling and tests."""
        now = _now()
        expires_at = parse_timestamp(order["expires_at"])
        created_at = parse_timestamp(order["created_at"]) if order.get("created_at") else now
        total_token_amount = order.get("total_token_amount")
        with self.get_db() as conn:
            conn.execute("""
                INSERT INTO orders
                (id, status, payment_method, wallet_address, total, total_token_amount,
                 paid_amount, remaining_amount, tx_hashes_json, shipping_email,
                 shipping_first_name, shipping_last_name, created_at, expires_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                str(order["id"]),
                order.get("status", "pending"),
                order["payment_method"],
                order.get("wallet_address"),
                str(order.get("total", "0")),
                None if total_token_amount is None else str(total_token_amount),
                str(order.get("paid_amount", "0")),
                str(order.get("remaining_amount", total_token_amount or "0")),
                json.dumps(list(order.get("tx_hashes", []))),
                order.get("shipping_email", ""),
                order.get("shipping_first_name", ""),
                order.get("shipping_last_name", ""),
                created_at,
                expires_at,
                now,
            ))
        return self.get_order(order["id"])

    def get_order(self, order_id):
        """Get a single order by id, or None."""
        with self.get_db() as conn:
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (str(order_id),)).fetchone()
            return _order_row_to_dict(row)

    def fetch_eligible_orders(self, now=None, order_id=None):
        """
        Orders the verifier may credit: status pending/underpaid, wallet set, not expired.
        order_id narrows the result to one order (on-demand check).
        """
        now = to_timestamp(now or datetime.now(timezone.utc))
        query = """
            SELECT * FROM orders
            WHERE status IN (?, ?)
            AND wallet_address IS NOT NULL AND wallet_address != ''
            AND expires_at > ?
        """
        params = [*ELIGIBLE_STATUSES, now]
        if order_id is not None:
            query += " AND id = ?"
            params.append(str(order_id))
        query += " ORDER BY created_at ASC"
        with self.get_db() as conn:
            rows = conn.execute(query, params).fetchall()
            return [_order_row_to_dict(r) for r in rows]

    def update_order(self, order_id, updates, expected_version):
        """
        Write the payment fields of one order in a single statement.

        The write only lands if the row still carries expected_version;
        otherwise another run got there first and ConcurrentUpdateError is raised.
        """
        allowed = {"status", "paid_amount", "remaining_amount", "tx_hashes"}
        required = {"status", "paid_amount", "remaining_amount", "tx_hashes"}
        unknown = set(updates) - allowed
        if unknown:
            raise ValueError(f"Invalid order columns: {sorted(unknown)}")
        missing = required - set(updates)
        if missing:
            raise ValueError(f"Order update must carry {sorted(missing)}")

        with self.get_db() as conn:
            cur = conn.execute("""
                UPDATE orders SET
                    status = ?,
                    paid_amount = ?,
                    remaining_amount = ?,
                    tx_hashes_json = ?,
                    verification_error = NULL,
                    version = version + 1,
                    updated_at = ?
                WHERE id = ? AND version = ?
            """, (
                updates["status"],
                str(updates["paid_amount"]),
                str(updates["remaining_amount"]),
                json.dumps(list(updates["tx_hashes"])),
                _now(),
                str(order_id),
                expected_version,
            ))
            if cur.rowcount != 1:
                raise ConcurrentUpdateError(
                    f"Order {order_id} changed since it was read (expected version {expected_version})"
                )
        return self.get_order(order_id)

    def set_confirmation_status(self, order_id, status):
        """Record the outcome of the confirmation email (sent, failed, skipped)."""
        with self.get_db() as conn:
            conn.execute(
                "UPDATE orders SET confirmation_status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), str(order_id))
            )

    def record_verification_error(self, order_id, message):
        """Attach the last processing error to an order for follow-up."""
        with self.get_db() as conn:
            conn.execute(
                "UPDATE orders SET verification_error = ?, updated_at = ? WHERE id = ?",
                (message, _now(), str(order_id))
            )

    # --- Order items ---

    def insert_order_item(self, order_id, name, quantity=1, price="0", size=None):
        with self.get_db() as conn:
            conn.execute(
                "INSERT INTO order_items (order_id, name, size, quantity, price) VALUES (?, ?, ?, ?, ?)",
                (str(order_id), name, size, int(quantity), str(price))
            )

    def fetch_order_items(self, order_id):
        with self.get_db() as conn:
            rows = conn.execute(
                "SELECT name, size, quantity, price FROM order_items WHERE order_id = ? ORDER BY id",
                (str(order_id),)
            ).fetchall()
            return [dict(r) for r in rows]

    # --- Run log ---

    def record_run(self, run):
        """Append a verification run record."""
        with self.get_db() as conn:
            conn.execute("""
                INSERT INTO reconciliation_runs
                (started_at, finished_at, status, message, order_id, from_block, to_block, summary_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                run["started_at"],
                run.get("finished_at", _now()),
                run["status"],
                run.get("message", ""),
                run.get("order_id"),
                run.get("from_block"),
                run.get("to_block"),
                json.dumps(run.get("summary", {}), default=str),
            ))

    def list_runs(self, limit=20):
        with self.get_db() as conn:
            rows = conn.execute(
                "SELECT * FROM reconciliation_runs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
            runs = []
            for row in rows:
                d = dict(row)
                d["summary"] = json.loads(d.pop("summary_json") or "{}")
                runs.append(d)
            return runs


def _order_row_to_dict(row):
    """Convert an order row to a dict with tx_hashes as a list."""
    if row is None:
        return None
    d = dict(row)
    # A corrupt hash list must surface, not read as empty: it is the dedup key.
    d["tx_hashes"] = json.loads(d.pop("tx_hashes_json") or "[]")
    return d

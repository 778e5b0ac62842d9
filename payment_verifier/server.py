#!/usr/bin/env python3
"""
Payment Verifier - Trigger API Server

A lightweight HTTP server that a scheduler (cron) or the checkout
confirmation page pokes to run payment verification.

Usage:
    # Start the server
    VERIFIER_API_KEY=your-secret-key python -m payment_verifier.server --port 8080

    # Or with defaults (port 9090, no auth in dev mode)
    python -m payment_verifier.server

Endpoints:
    GET  /health          - Health check
    GET  /orders/<id>     - Payment status of one order
    POST /verify          - Run verification; body {"orderId": "..."} scopes it to one order
"""

import sys
import json
import logging
import argparse
from http.server import HTTPServer, BaseHTTPRequestHandler
from urllib.parse import urlparse
from datetime import datetime, timezone

from .config import API_KEY, PORT
from .db import OrderStore
from .chain import ChainReader
from .notifier import ResendNotifier
from .verify import run_verification, order_payment_view

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ============================================================
# Server
# ============================================================

class VerifierServer(HTTPServer):
    """HTTP server carrying the verifier's collaborators. Single-threaded: one run at a time."""

    def __init__(self, address, reader, store, notifier=None, api_key=API_KEY):
        super().__init__(address, VerifierHandler)
        self.reader = reader
        self.store = store
        self.notifier = notifier
        self.api_key = api_key


def check_auth(handler):
    """Verify Bearer token if an API key is configured."""
    api_key = handler.server.api_key
    if not api_key:
        return True  # No auth configured (dev mode)
    auth = handler.headers.get("Authorization", "")
    if auth == f"Bearer {api_key}":
        return True
    handler.send_error_json(401, "Unauthorized: invalid or missing Bearer token")
    return False


# ============================================================
# Request Handler
# ============================================================

class VerifierHandler(BaseHTTPRequestHandler):
    """HTTP handler for verifier endpoints."""

    def log_message(self, format, *args):
        logger.info("%s - %s", self.address_string(), format % args)

    def send_json(self, data, status=200):
        """Send a JSON response."""
        body = json.dumps(data, indent=2, default=str).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(body)

    def send_error_json(self, status, message):
        """Send a JSON error response."""
        self.send_json({"error": message, "status": status}, status)

    def read_body(self):
        """Read and parse JSON request body. Empty or non-JSON bodies read as {}."""
        length = int(self.headers.get("Content-Length", 0))
        if length == 0:
            return {}
        raw = self.rfile.read(length)
        try:
            body = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return body if isinstance(body, dict) else {}

    def route(self, method):
        """Route requests to handlers."""
        path = urlparse(self.path).path.rstrip("/")

        if method == "GET" and path == "/health":
            return self.handle_health()
        if method == "POST" and path == "/verify":
            return self.handle_verify()

        # Parameterized route: /orders/<id>
        parts = path.split("/")
        if method == "GET" and len(parts) == 3 and parts[1] == "orders":
            return self.handle_get_order(parts[2])

        self.send_error_json(404, f"Not found: {method} {path}")

    # --- Handlers ---

    def handle_health(self):
        self.send_json({
            "status": "ok",
            "service": "payment-verifier",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def handle_get_order(self, order_id):
        try:
            self.send_json(order_payment_view(self.server.store, order_id))
        except ValueError as e:
            self.send_error_json(404, str(e))
        except Exception as e:
            logger.exception("Failed to load order %s", order_id)
            self.send_error_json(500, str(e))

    def handle_verify(self):
        """
        Run one verification pass.

        POST /verify
        {"orderId": "abc-123"}  # optional - defaults to all eligible orders
        """
        body = self.read_body()
        order_id = body.get("orderId")
        try:
            report = run_verification(
                self.server.reader, self.server.store, self.server.notifier,
                order_id=str(order_id) if order_id is not None else None,
            )
            self.send_json(report)
        except ValueError as e:
            self.send_error_json(400, str(e))
        except Exception as e:
            logger.error("Verification run failed: %s", e)
            self.send_error_json(500, str(e))

    # --- HTTP method dispatchers ---

    def do_GET(self):
        if not check_auth(self):
            return
        self.route("GET")

    def do_POST(self):
        if not check_auth(self):
            return
        self.route("POST")

    def do_OPTIONS(self):
        """Handle CORS preflight."""
        self.send_response(204)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Authorization, Content-Type")
        self.end_headers()


def run_server(port=None, host="0.0.0.0", db_path=None, rpc_url=None):
    """Start the verifier API server."""
    port = port or PORT
    server = VerifierServer((host, port), ChainReader(rpc_url), OrderStore(db_path), ResendNotifier())

    auth_mode = "Bearer token" if server.api_key else "OPEN (no auth - set VERIFIER_API_KEY for production)"
    logger.info("Payment Verifier API Server v%s listening on %s:%s (auth: %s)", VERSION, host, port, auth_mode)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server stopped.")
    finally:
        server.server_close()


# ============================================================
# CLI
# ============================================================

def main():
    parser = argparse.ArgumentParser(description="Payment Verifier API Server")
    parser.add_argument("--port", type=int, default=None, help="Port (default: 9090 or VERIFIER_PORT)")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--db", default=None, help="SQLite database path")
    parser.add_argument("--rpc", default=None, help="Override RPC URL")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s",
                        stream=sys.stderr)
    run_server(port=args.port, host=args.host, db_path=args.db, rpc_url=args.rpc)


if __name__ == "__main__":
    main()

"""
Payment Verifier - Customer Notifications
Order confirmation and underpayment emails sent through the Resend HTTP API.
Delivery is best-effort: callers log failures and carry on.
"""

import html
import logging
from decimal import Decimal

import requests

from .config import RESEND_API_KEY, RESEND_API_URL, FROM_EMAIL

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    """Raised when an email could not be handed to the provider."""


class ResendNotifier:
    """Sends transactional email via Resend."""

    def __init__(self, api_key=None, from_email=FROM_EMAIL, api_url=RESEND_API_URL,
                 session=None, timeout=10):
        self.api_key = RESEND_API_KEY if api_key is None else api_key
        self.from_email = from_email
        self.api_url = api_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def _send(self, to, subject, body_html):
        if not self.api_key:
            raise NotificationError("RESEND_API_KEY is not set")
        try:
            resp = self.session.post(
                self.api_url,
                json={
                    "from": self.from_email,
                    "to": to,
                    "subject": subject,
                    "html": body_html,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NotificationError(f"Email request failed: {e}") from e
        if resp.status_code >= 300:
            raise NotificationError(f"Email provider returned {resp.status_code}: {resp.text[:200]}")
        logger.info("Sent '%s' to %s", subject, to)
        return resp.json() if resp.content else {}

    def send_order_confirmation(self, to, customer_name, order_id, order_date, items, total):
        """
        items: list of {"name": str, "quantity": int, "price": str|Decimal}
        total: fiat order total
        """
        subject = f"Order Confirmed: #{order_id}"
        return self._send(to, subject, render_confirmation(customer_name, order_id, order_date, items, total))

    def send_underpayment_notice(self, to, order_id, paid_amount, remaining_amount, payment_method):
        subject = f"Payment incomplete for order #{order_id}"
        body = (
            f"<h1>We received part of your payment</h1>"
            f"<p>Order #{html.escape(str(order_id))} has received {html.escape(str(paid_amount))} "
            f"{html.escape(payment_method)}.</p>"
            f"<p>Please send the remaining {html.escape(str(remaining_amount))} "
            f"{html.escape(payment_method)} from the same wallet to complete your order.</p>"
        )
        return self._send(to, subject, body)


def _money(value):
    return f"${Decimal(str(value)).quantize(Decimal('0.01'))}"


def render_confirmation(customer_name, order_id, order_date, items, total):
    rows = []
    for item in items:
        line_total = Decimal(str(item.get("price") or 0)) * int(item.get("quantity") or 0)
        rows.append(
            f"<tr><td>{html.escape(item['name'])} (x{int(item.get('quantity') or 0)})</td>"
            f"<td style=\"text-align: right;\">{_money(line_total)}</td></tr>"
        )
    return (
        f"<h1>Thanks for your order, {html.escape(customer_name)}!</h1>"
        f"<p>Your order #{html.escape(str(order_id))} from {html.escape(order_date)} has been confirmed.</p>"
        f"<table style=\"width: 100%;\">{''.join(rows)}"
        f"<tr><td style=\"font-weight: bold;\">Total</td>"
        f"<td style=\"text-align: right; font-weight: bold;\">{_money(total)}</td></tr>"
        f"</table>"
        f"<p>We'll notify you when it ships.</p>"
    )

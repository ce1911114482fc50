import logging
from typing import Optional, Protocol, Tuple

import httpx

from app.models import OrderDB
from shared.utils import settings

logger = logging.getLogger("orders-service.notifier")


class Notifier(Protocol):
    async def notify(self, address: str, subject: str, text_body: str, html_body: str) -> bool:
        ...


class HttpNotifier:
    """Hands emails to the notifications service. Never raises."""

    def __init__(self, base_url: str = settings.NOTIFICATIONS_SERVICE_URL,
                 timeout: float = settings.NOTIFIER_TIMEOUT_SECONDS,
                 request_id: Optional[str] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.request_id = request_id

    async def notify(self, address: str, subject: str, text_body: str, html_body: str) -> bool:
        headers = {}
        if self.request_id:
            headers["X-Request-ID"] = self.request_id
        payload = {"to": address, "subject": subject, "text": text_body, "html": html_body}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(f"{self.base_url}/notify", json=payload, headers=headers)
                response.raise_for_status()
                return True
            except httpx.HTTPError as exc:
                logger.error(f"Failed sending '{subject}' to {address}: {exc}")
                return False


async def send_safely(notifier: Notifier, address: Optional[str], message: Tuple[str, str, str],
                      order_id: Optional[str] = None) -> bool:
    """Notification failures are logged and never propagate into order logic."""
    if not address:
        logger.warning("No customer email for notification", extra={"order_id": order_id})
        return False
    subject, text_body, html_body = message
    try:
        return await notifier.notify(address, subject, text_body, html_body)
    except Exception:
        logger.exception("Notifier raised", extra={"order_id": order_id})
        return False


# --- Messages ---
def _money(value) -> str:
    return f"₹{value:.2f}"


def order_placed_message(order: OrderDB) -> Tuple[str, str, str]:
    items = "".join(
        f"<li>{item.name} (Qty: {item.quantity}) - {_money(item.price_at_order)}</li>"
        for item in order.items
    )
    address = order.shipping_address
    html = (
        f"<h2>Thank you for your order!</h2><p>Your Order ID: {order.id}</p>"
        f"<p>Order Placed: {order.order_date:%Y-%m-%d %H:%M} UTC</p>"
        f"<p>Total Amount: {_money(order.total_amount)}</p>"
        f"<p>Shipping To: {address.name}, {address.city_village}</p>"
        f"<h3>Items:</h3><ul>{items}</ul>"
        "<p>You can track your order status in the 'My Orders' section.</p>"
    )
    text = f"Your order {order.id} has been placed. Total: {_money(order.total_amount)}"
    return "Your Order Has Been Placed!", text, html


def order_delivered_message(order: OrderDB, confirmed_by: str) -> Tuple[str, str, str]:
    html = (
        f"<p>Great news! Your order ({order.id}) has been delivered and confirmed by the {confirmed_by}.</p>"
        f"<p>Received Date: {order.received_by_date:%Y-%m-%d %H:%M} UTC</p>"
        "<p>Thank you for shopping with us!</p>"
    )
    return "Your Order Has Been Delivered!", f"Your order {order.id} has been delivered.", html


def order_cancelled_message(order: OrderDB, role: str, reason: str) -> Tuple[str, str, str]:
    if role == "user":
        html = f"<p>Your order ({order.id}) has been successfully cancelled as requested.</p>"
        return "Your Order Has Been Cancelled", f"Order {order.id} cancelled.", html
    by = {"seller": "the seller", "admin": "administration", "delivery": "our delivery team"}[role]
    html = (
        f"<p>Your order ({order.id}) has been cancelled by {by}.</p>"
        f"<p><strong>Reason:</strong> {reason}</p>"
        "<p>Contact support for questions.</p>"
    )
    text = f"Your order {order.id} was cancelled by {by}. Reason: {reason}."
    return f"Your Order ({order.id}) Has Been Cancelled", text, html

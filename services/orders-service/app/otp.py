"""OTP-gated delivery confirmation.

Cash-on-delivery gives no payment proof of receipt, so a staff member
(admin, seller or delivery agent) confirms delivery by entering a one-time
code that is only ever shown on the customer's own order page. The code is
never returned to, logged for, or emailed to the confirming actor.
"""
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Optional

from app.exceptions import InvalidOrExpiredOTP, InvalidState, ValidationError
from app.lifecycle import Clock, OrderLifecycle, stale_status_error
from app.models import Actor, OrderDB, OrderStatus
from app.notifier import Notifier
from app.permissions import ensure_can_handle, ensure_staff
from shared.security_config import is_valid_otp
from shared.utils import settings

logger = logging.getLogger("orders-service.otp")


def generate_otp(length: int = settings.DELIVERY_OTP_LENGTH, exclude: Optional[str] = None) -> str:
    """Zero-padded numeric code from the OS CSPRNG, distinct from `exclude`."""
    if length <= 0:
        raise ValueError("OTP length must be positive")
    while True:
        code = "".join(secrets.choice(string.digits) for _ in range(length))
        if code != exclude:
            return code


class DeliveryConfirmation:
    def __init__(self, store, notifier: Notifier, clock: Clock = datetime.utcnow,
                 ttl_minutes: int = settings.DELIVERY_OTP_TTL_MINUTES,
                 otp_length: int = settings.DELIVERY_OTP_LENGTH):
        self.store = store
        self.clock = clock
        self.ttl = timedelta(minutes=ttl_minutes)
        self.otp_length = otp_length
        self.lifecycle = OrderLifecycle(store, notifier, clock)

    async def issue(self, order_id: str, actor: Actor) -> dict:
        ensure_staff(actor)
        order = await self.lifecycle.load(order_id)
        ensure_can_handle(order, actor)
        if order.status != OrderStatus.PENDING:
            raise InvalidState(f"Cannot generate OTP for order status '{order.status}'. Must be 'pending'.")

        now = self.clock()
        outstanding = order.active_otp(now)
        code = generate_otp(self.otp_length, exclude=outstanding.code if outstanding else None)
        expires_at = now + self.ttl

        doc = await self.store.set_delivery_otp(
            order.id, OrderStatus.PENDING.value,
            {"code": code, "expires_at": expires_at, "issued_by_role": actor.role},
        )
        if doc is None:
            raise stale_status_error(await self.store.get_order(order.id))

        logger.info(
            "Delivery OTP issued",
            extra={"order_id": order.id, "actor_id": actor.id, "actor_role": actor.role},
        )
        return {
            "order_id": order.id,
            "expires_at": expires_at,
            "message": (
                f"OTP generated for order {order.id}. It is visible on the customer's "
                "'My Orders' page. Ask the customer for the OTP."
            ),
        }

    async def confirm(self, order_id: str, actor: Actor, code: str) -> OrderDB:
        code = (code or "").strip()
        if not is_valid_otp(code, self.otp_length):
            raise ValidationError(f"Please enter the {self.otp_length}-digit OTP.")
        ensure_staff(actor)

        doc = await self.store.get_order(order_id)
        if doc is None:
            # Same answer as a wrong code: do not reveal whether the order exists
            raise InvalidOrExpiredOTP()
        order = OrderDB(**doc)
        ensure_can_handle(order, actor)
        if order.status != OrderStatus.PENDING:
            raise InvalidState(f"Order status is '{order.status}', cannot confirm delivery.")

        delivered = await self.lifecycle.mark_delivered(order.id, code, actor.role, actor.id)
        if delivered is not None:
            return delivered

        current = await self.store.get_order(order.id)
        if current is not None and current["status"] != OrderStatus.PENDING.value:
            # Another confirmer or a cancellation got there first
            raise InvalidState(f"Order status is '{current['status']}', cannot confirm delivery.")
        logger.warning(
            "Delivery OTP rejected",
            extra={"order_id": order.id, "actor_id": actor.id, "actor_role": actor.role},
        )
        raise InvalidOrExpiredOTP()

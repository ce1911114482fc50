import logging
from datetime import datetime
from typing import Dict, List

from app.exceptions import CancellationWindowClosed, InvalidState, NotFound, ValidationError
from app.lifecycle import Clock, OrderLifecycle
from app.models import Actor, OrderDB, OrderStatus, Role, StaffRole
from app.notifier import Notifier
from app.permissions import ensure_can_handle, ensure_staff

logger = logging.getLogger("orders-service.cancellation")

SELLER_CANCELLATION_REASONS = [
    "Item Out of Stock",
    "Unable to Fulfill/Ship",
    "Customer Requested Cancellation",
    "Other Reason",
]

ADMIN_CANCELLATION_REASONS = [
    "Unable to contact the customer",
    "Out of stock/unavailable item",
    "Address incorrect/incomplete",
    "Customer requested cancellation",
    "Other (Admin)",
]

DELIVERY_CANCELLATION_REASONS = [
    "Unable to contact the customer",
    "Delay in shipping/delivery timeframe exceeded",
    "Out of stock/unavailable item",
    "Address incorrect/incomplete",
    "Customer requested cancellation",
    "Logistics issue/Vehicle breakdown",
    "Other (Admin/Delivery)",
]

REASONS_BY_ROLE: Dict[str, List[str]] = {
    StaffRole.SELLER.value: SELLER_CANCELLATION_REASONS,
    StaffRole.ADMIN.value: ADMIN_CANCELLATION_REASONS,
    StaffRole.DELIVERY.value: DELIVERY_CANCELLATION_REASONS,
}

# Stored reason is prefixed with who cancelled
REASON_PREFIXES = {
    StaffRole.SELLER.value: "Cancelled by Seller",
    StaffRole.ADMIN.value: "Admin Cancelled",
    StaffRole.DELIVERY.value: "Cancelled by Delivery",
}

CUSTOMER_CANCELLATION_REASON = "Cancelled by customer"


def reasons_for(role: str) -> List[str]:
    try:
        return list(REASONS_BY_ROLE[StaffRole(role).value])
    except ValueError:
        raise ValidationError(f"No cancellation reasons for role '{role}'.")


class CancellationPolicy:
    """Who may cancel what, and which stock comes back."""

    def __init__(self, store, notifier: Notifier, clock: Clock = datetime.utcnow):
        self.store = store
        self.clock = clock
        self.lifecycle = OrderLifecycle(store, notifier, clock)

    async def cancel_by_customer(self, order_id: str, actor: Actor) -> OrderDB:
        doc = await self.store.get_order(order_id)
        if doc is None or doc.get("user_id") != actor.id:
            # Other customers' orders are indistinguishable from missing ones
            raise NotFound("Order not found or you do not have permission to cancel it.")
        order = OrderDB(**doc)
        if order.status != OrderStatus.PENDING:
            raise InvalidState(f"Order cannot be cancelled (Status: {order.status}).")
        if not order.customer_can_cancel(self.clock()):
            raise CancellationWindowClosed("Cancellation window has passed.")

        return await self.lifecycle.cancel(
            order, order.items, CUSTOMER_CANCELLATION_REASON, Role.USER.value, actor.id,
        )

    async def cancel_by_staff(self, order_id: str, actor: Actor, reason: str) -> OrderDB:
        ensure_staff(actor)
        role = StaffRole(actor.role).value
        reason = (reason or "").strip()
        if reason not in REASONS_BY_ROLE[role]:
            raise ValidationError("Invalid or missing cancellation reason.")

        order = await self.lifecycle.load(order_id)
        ensure_can_handle(order, actor)
        if order.status != OrderStatus.PENDING:
            raise InvalidState(f"Order cannot be cancelled (Status: {order.status}).")

        if role == StaffRole.SELLER.value:
            lines = order.lines_for_seller(actor.id)
        else:
            lines = order.items
        stored_reason = f"{REASON_PREFIXES[role]}: {reason}"
        if len(lines) < len(order.items):
            logger.info(
                "Seller cancelled a multi-seller order, restoring own lines only",
                extra={"order_id": order.id, "actor_id": actor.id, "actor_role": role},
            )
        return await self.lifecycle.cancel(order, lines, stored_reason, role, actor.id)

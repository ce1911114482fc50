import logging

from app.exceptions import PermissionDenied
from app.models import Actor, OrderDB, Role, StaffRole

logger = logging.getLogger("orders-service.permissions")


def ensure_staff(actor: Actor, role: StaffRole = None):
    """The actor must be admin/seller/delivery, and `role` when one is given."""
    if not actor.is_staff:
        raise PermissionDenied("Only staff can perform this action.")
    if role is not None and actor.role != StaffRole(role).value:
        raise PermissionDenied(f"This action requires the '{StaffRole(role).value}' role.")


def ensure_can_handle(order: OrderDB, actor: Actor):
    """Admins and delivery agents handle any order; sellers only orders that
    contain at least one of their own lines."""
    ensure_staff(actor)
    if actor.role == Role.SELLER and actor.id not in order.seller_ids:
        logger.warning(
            "Seller attempted action on unrelated order",
            extra={"order_id": order.id, "actor_id": actor.id, "actor_role": actor.role},
        )
        raise PermissionDenied("Permission Denied: Order does not contain your products.")

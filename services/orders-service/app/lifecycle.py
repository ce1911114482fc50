"""Order lifecycle state machine.

    pending ──(OTP confirmed)──> delivered
       └────(authorized cancel)──> cancelled

Both targets are terminal. Every transition is a compare-and-swap on
``status == pending`` so that two racing requests cannot both apply their
side effects; the loser sees ``InvalidState``.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from pymongo.errors import PyMongoError

from app.exceptions import InvalidState, NotFound
from app.ledger import StockLedger
from app.models import OrderDB, OrderItemDB, OrderStatus
from app.notifier import Notifier, order_cancelled_message, order_delivered_message, send_safely

logger = logging.getLogger("orders-service.lifecycle")

Clock = Callable[[], datetime]

ALLOWED_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

# Cleared on entering a terminal status
TERMINAL_CLEARED_FIELDS = ("delivery_otp", "cancellation_allowed_until")

CONFIRMER_LABELS = {"admin": "administration", "seller": "seller", "delivery": "delivery partner"}


def can_transition(current, target) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def ensure_transition(current, target):
    if not can_transition(current, target):
        raise InvalidState(
            f"Order status is '{OrderStatus(current).value}', cannot move to '{OrderStatus(target).value}'."
        )


def delivered_update(now: datetime) -> Tuple[dict, Tuple[str, ...]]:
    set_fields = {
        "status": OrderStatus.DELIVERED.value,
        "received_by_date": now,
        "updated_at": now,
    }
    return set_fields, TERMINAL_CLEARED_FIELDS


def cancelled_update(now: datetime, reason: str, role: str, actor_id: str) -> Tuple[dict, Tuple[str, ...]]:
    set_fields = {
        "status": OrderStatus.CANCELLED.value,
        "cancellation_reason": reason,
        "cancelled_by": {"role": role, "actor_id": actor_id},
        "updated_at": now,
    }
    return set_fields, TERMINAL_CLEARED_FIELDS + ("received_by_date",)


def is_write_conflict(exc: Exception) -> bool:
    return isinstance(exc, PyMongoError) and exc.has_error_label("TransientTransactionError")


def stale_status_error(current: Optional[dict]) -> Exception:
    if current is None:
        return NotFound("Order not found.")
    return InvalidState(f"Order status is '{current['status']}'; it can no longer be changed.")


class OrderLifecycle:
    def __init__(self, store, notifier: Notifier, clock: Clock = datetime.utcnow):
        self.store = store
        self.notifier = notifier
        self.clock = clock

    async def load(self, order_id: str) -> OrderDB:
        doc = await self.store.get_order(order_id)
        if doc is None:
            raise NotFound("Order not found.")
        return OrderDB(**doc)

    async def cancel(self, order: OrderDB, lines_to_restore: Iterable[OrderItemDB],
                     reason: str, role: str, actor_id: str) -> OrderDB:
        """pending -> cancelled. The status swap and every restoration commit
        together or not at all; the swap goes first so a second cancellation
        finds nothing to claim and restores nothing."""
        ensure_transition(order.status, OrderStatus.CANCELLED)
        lines = list(lines_to_restore)
        set_fields, unset_fields = cancelled_update(self.clock(), reason, role, actor_id)

        try:
            async with self.store.transaction() as tx:
                doc = await tx.transition_order(order.id, OrderStatus.PENDING.value, set_fields, unset_fields)
                if doc is None:
                    raise stale_status_error(await tx.get_order(order.id))
                restored = await StockLedger(tx).restore_lines(lines)
        except PyMongoError as exc:
            if is_write_conflict(exc):
                raise InvalidState("Order is being updated by another request. Please refresh.")
            raise

        cancelled = OrderDB(**doc)
        logger.info(
            f"Order cancelled, restored {len(restored)}/{len(lines)} line(s)",
            extra={"order_id": cancelled.id, "actor_id": actor_id, "actor_role": role},
        )
        await send_safely(
            self.notifier, cancelled.user_email,
            order_cancelled_message(cancelled, role, reason), order_id=cancelled.id,
        )
        return cancelled

    async def mark_delivered(self, order_id: str, code: str, role: str, actor_id: str) -> Optional[OrderDB]:
        """pending -> delivered, gated on the outstanding OTP. Returns None when
        the claim did not match (wrong code, expired, or no longer pending)."""
        now = self.clock()
        set_fields, unset_fields = delivered_update(now)
        doc = await self.store.claim_delivery_otp(
            order_id, OrderStatus.PENDING.value, code, now, set_fields, unset_fields,
        )
        if doc is None:
            return None

        delivered = OrderDB(**doc)
        logger.info(
            "Order delivered",
            extra={"order_id": delivered.id, "actor_id": actor_id, "actor_role": role},
        )
        await send_safely(
            self.notifier, delivered.user_email,
            order_delivered_message(delivered, CONFIRMER_LABELS.get(role, role)), order_id=delivered.id,
        )
        return delivered

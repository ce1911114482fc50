"""Stock ledger: the only writer of product ``stock`` and ``order_count``.

``reserve`` is a conditional decrement ("decrement IF stock >= qty") executed
by the store in one atomic update, so stock can never go negative even when
several checkouts race for the same product. ``restore`` is unconditional;
callers guarantee it runs exactly once per line item per cancellation.
"""
import logging
from enum import Enum
from typing import Iterable, List

from app.exceptions import ConcurrentStockChange, ProductUnavailable
from app.models import OrderItemDB

logger = logging.getLogger("orders-service.ledger")


class Reservation(str, Enum):
    RESERVED = "reserved"
    INSUFFICIENT = "insufficient"
    NOT_FOUND = "not_found"


class StockLedger:
    def __init__(self, store):
        self.store = store

    async def reserve(self, product_id: str, quantity: int) -> Reservation:
        if await self.store.reserve_stock(product_id, quantity):
            return Reservation.RESERVED
        # The conditional update matched nothing: tell a lost race apart from a deleted product
        if await self.store.get_product(product_id) is None:
            return Reservation.NOT_FOUND
        return Reservation.INSUFFICIENT

    async def restore(self, product_id: str, quantity: int) -> bool:
        restored = await self.store.restore_stock(product_id, quantity)
        if not restored:
            logger.warning(
                "Stock restore skipped, product no longer exists",
                extra={"product_id": product_id, "quantity": quantity},
            )
        return restored

    async def reserve_lines(self, lines: Iterable[OrderItemDB]) -> List[OrderItemDB]:
        """Reserve every line or raise; meant to run inside a transaction so a
        failure part-way leaves no decrement behind."""
        reserved = []
        for line in lines:
            outcome = await self.reserve(line.product_id, line.quantity)
            if outcome == Reservation.NOT_FOUND:
                raise ProductUnavailable(
                    f'Product "{line.name}" is no longer available. Please review your cart.'
                )
            if outcome == Reservation.INSUFFICIENT:
                logger.info(
                    "Reservation lost to a concurrent checkout",
                    extra={"product_id": line.product_id, "quantity": line.quantity},
                )
                raise ConcurrentStockChange(
                    f'Stock for "{line.name}" changed during checkout. Please try again.'
                )
            reserved.append(line)
        return reserved

    async def restore_lines(self, lines: Iterable[OrderItemDB]) -> List[OrderItemDB]:
        """Restore each line; deleted products are skipped, never fatal."""
        restored = []
        for line in lines:
            if await self.restore(line.product_id, line.quantity):
                restored.append(line)
        return restored

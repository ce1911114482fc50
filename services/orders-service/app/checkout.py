"""Checkout validation and atomic order placement.

Prices and stock are re-read from the product documents on every call; the
cart only contributes product ids and quantities. Placement reserves every
line, inserts the order and empties the cart in one transaction.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from pymongo.errors import PyMongoError

from app.cart import CartSummaryCache, ensure_purchasable, ensure_quantity
from app.exceptions import ConcurrentStockChange, OrderFlowError, ProductUnavailable, ValidationError
from app.ledger import StockLedger
from app.lifecycle import Clock, is_write_conflict
from app.models import Actor, AddressDB, CartItemDB, OrderDB, OrderItemDB, OrderStatus, ProductDB, UserDB, to_money
from app.notifier import Notifier, order_placed_message, send_safely
from shared.utils import settings

logger = logging.getLogger("orders-service.checkout")


class CheckoutService:
    def __init__(self, store, notifier: Notifier, cache: CartSummaryCache,
                 clock: Clock = datetime.utcnow,
                 cancellation_window_minutes: int = settings.ORDER_CANCELLATION_WINDOW_MINUTES):
        self.store = store
        self.notifier = notifier
        self.cache = cache
        self.clock = clock
        self.cancellation_window = timedelta(minutes=cancellation_window_minutes)

    async def _load_user(self, user_id: str) -> UserDB:
        doc = await self.store.get_user(user_id)
        return UserDB(**doc) if doc is not None else UserDB(user_id=user_id)

    async def _evaluate(self, user: UserDB) -> Tuple[List[OrderItemDB], List[Tuple[OrderFlowError, bool, CartItemDB]]]:
        """Price every cart line from its live product.

        Returns the priced lines and the violations found, each flagged with
        whether the line can never succeed and should be pruned."""
        products = await self.store.get_products(item.product_id for item in user.cart)
        lines, violations = [], []
        for item in user.cart:
            doc = products.get(item.product_id)
            product = ProductDB(**doc) if doc is not None else None
            try:
                ensure_quantity(item.quantity)
            except ValidationError as exc:
                violations.append((exc, True, item))
                continue
            try:
                ensure_purchasable(product, item.quantity, name_hint="A product in your cart")
            except ProductUnavailable as exc:
                violations.append((exc, True, item))
                continue
            except OrderFlowError as exc:
                violations.append((exc, False, item))
                continue
            lines.append(OrderItemDB(
                product_id=item.product_id,
                seller_id=product.seller_id,
                name=product.name,
                price_at_order=product.price,
                quantity=item.quantity,
                image_url=product.image_url,
            ))
        return lines, violations

    @staticmethod
    def _ensure_address(user: UserDB) -> AddressDB:
        if user.address is None or not user.address.is_complete():
            raise ValidationError("Please complete your shipping address before placing the order.")
        return user.address

    async def validate_checkout(self, actor: Actor) -> dict:
        """Read-only preview of what ``place_order`` would submit."""
        user = await self._load_user(actor.id)
        if not user.cart:
            raise ValidationError("Your cart is empty.")
        lines, violations = await self._evaluate(user)
        if violations:
            raise violations[0][0]
        address = self._ensure_address(user)
        total = sum((line.subtotal for line in lines), Decimal(0))
        return {"items": lines, "total_amount": to_money(total), "shipping_address": address}

    async def _prune(self, user: UserDB, doomed: List[CartItemDB]):
        doomed_ids = {item.product_id for item in doomed}
        await self.store.remove_cart_items(user.user_id, doomed_ids)
        remaining = [item for item in user.cart if item.product_id not in doomed_ids]
        self.cache.refresh(user.user_id, remaining)
        logger.info(
            f"Pruned {len(doomed_ids)} unavailable line(s) from cart",
            extra={"user_id": user.user_id},
        )

    async def place_order(self, actor: Actor, request_id: Optional[str] = None) -> OrderDB:
        user = await self._load_user(actor.id)
        if not user.cart:
            raise ValidationError("Your cart is empty.")

        lines, violations = await self._evaluate(user)
        if violations:
            doomed = [item for _, prunable, item in violations if prunable]
            if doomed:
                await self._prune(user, doomed)
            raise violations[0][0]
        address = self._ensure_address(user)

        now = self.clock()
        order = OrderDB(
            user_id=actor.id,
            user_email=actor.email or user.email or "",
            items=lines,
            total_amount=to_money(sum((line.subtotal for line in lines), Decimal(0))),
            shipping_address=address,
            status=OrderStatus.PENDING,
            order_date=now,
            cancellation_allowed_until=now + self.cancellation_window,
            updated_at=now,
        )

        try:
            async with self.store.transaction() as tx:
                await StockLedger(tx).reserve_lines(order.items)
                order.id = await tx.insert_order(order.to_document())
                await tx.clear_cart(actor.id)
        except PyMongoError as exc:
            if is_write_conflict(exc):
                raise ConcurrentStockChange("Stock changed during checkout. Please try again.")
            raise

        self.cache.refresh(actor.id, [])
        logger.info(
            f"Order placed with {len(order.items)} line(s), total {order.total_amount}",
            extra={"order_id": order.id, "user_id": actor.id, "request_id": request_id},
        )
        await send_safely(self.notifier, order.user_email, order_placed_message(order), order_id=order.id)
        return order

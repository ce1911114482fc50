"""Per-user shopping cart.

The canonical cart is the ``cart`` list on the user document and holds only
``(product_id, quantity)``; prices and stock are always read from the live
product. ``CartSummaryCache`` keeps the badge counts shown in the navbar and
is rewritten after every mutation.

Each mutation writes a single line conditionally on the quantity it read, so
an add that overlaps a checkout commit cannot resurrect cleared lines.
"""
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional

from app.exceptions import (
    ConcurrentCartChange, InsufficientStock, NotFound, ProductUnavailable, ValidationError,
)
from app.models import Actor, AddressDB, CartItemDB, ProductDB, UserDB, to_money, to_mongo
from app.store import canonical_id
from shared.utils import settings

logger = logging.getLogger("orders-service.cart")

CART_WRITE_ATTEMPTS = 3


def summarize(items: List[CartItemDB]) -> Dict[str, int]:
    return {
        "item_count": len(items),
        "total_quantity": sum(item.quantity for item in items),
    }


class CartSummaryCache:
    """Derived read cache of ``{item_count, total_quantity}`` per user.

    Bounded LRU: once ``max_size`` users are cached the least recently used
    entry is evicted. A miss is recomputed from the user document.
    """

    def __init__(self, max_size: int = settings.CART_SUMMARY_CACHE_SIZE):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: "OrderedDict[str, Dict[str, int]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, user_id: str) -> Optional[Dict[str, int]]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        self._entries.move_to_end(user_id)
        return dict(entry)

    def refresh(self, user_id: str, items: List[CartItemDB]) -> Dict[str, int]:
        entry = summarize(items)
        self._entries[user_id] = entry
        self._entries.move_to_end(user_id)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
        return dict(entry)

    def invalidate(self, user_id: str):
        self._entries.pop(user_id, None)


def ensure_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Quantity must be a whole number of at least 1.")
    return quantity


def ensure_purchasable(product: Optional[ProductDB], quantity: int, name_hint: str = "This product"):
    if product is None or not product.is_approved:
        raise ProductUnavailable(f"{name_hint} is not available.")
    if product.stock <= 0:
        raise InsufficientStock(f'"{product.name}" is out of stock.')
    if quantity > product.stock:
        raise InsufficientStock(
            f'Only {product.stock} of "{product.name}" available; you requested {quantity}.'
        )


class CartService:
    def __init__(self, store, cache: CartSummaryCache):
        self.store = store
        self.cache = cache

    async def _load_user(self, user_id: str) -> UserDB:
        doc = await self.store.get_user(user_id)
        if doc is None:
            return UserDB(user_id=user_id)
        return UserDB(**doc)

    async def _load_product(self, product_id: str) -> Optional[ProductDB]:
        doc = await self.store.get_product(product_id)
        return ProductDB(**doc) if doc is not None else None

    async def _refresh(self, user_id: str) -> Dict[str, int]:
        user = await self._load_user(user_id)
        return self.cache.refresh(user_id, user.cart)

    @staticmethod
    def _line(user: UserDB, product_id: str) -> Optional[CartItemDB]:
        return next((item for item in user.cart if item.product_id == product_id), None)

    async def get_cart(self, actor: Actor) -> dict:
        user = await self._load_user(actor.id)
        products = await self.store.get_products(item.product_id for item in user.cart)
        lines = []
        total = Decimal(0)
        for item in user.cart:
            doc = products.get(item.product_id)
            if doc is None:
                continue
            product = ProductDB(**doc)
            subtotal = to_money(product.price * item.quantity)
            total += subtotal
            lines.append({
                "product_id": item.product_id,
                "name": product.name,
                "price": product.price,
                "quantity": item.quantity,
                "subtotal": subtotal,
                "stock": product.stock,
                "available": product.is_approved and product.stock >= item.quantity,
                "image_url": product.image_url,
            })
        return {"items": lines, "total_amount": to_money(total)}

    async def summary(self, actor: Actor) -> Dict[str, int]:
        cached = self.cache.get(actor.id)
        if cached is not None:
            return cached
        return await self._refresh(actor.id)

    async def add_to_cart(self, actor: Actor, product_id: str, quantity: int) -> Dict[str, int]:
        ensure_quantity(quantity)
        product = await self._load_product(product_id)
        ensure_purchasable(product, quantity)
        # the cart keys lines by the stored id, not by the caller's spelling of it
        product_id = product.id

        for _ in range(CART_WRITE_ATTEMPTS):
            user = await self._load_user(actor.id)
            existing = self._line(user, product_id)
            current = existing.quantity if existing else None
            merged = quantity + (current or 0)
            ensure_purchasable(product, merged)
            if await self.store.put_cart_item(actor.id, product_id, merged, expected=current):
                logger.info("Added to cart", extra={"user_id": actor.id, "product_id": product_id, "quantity": quantity})
                return await self._refresh(actor.id)
        raise ConcurrentCartChange()

    async def update_quantity(self, actor: Actor, product_id: str, quantity: int) -> Dict[str, int]:
        product_id = canonical_id(product_id)
        if quantity != 0:
            ensure_quantity(quantity)

        for _ in range(CART_WRITE_ATTEMPTS):
            user = await self._load_user(actor.id)
            existing = self._line(user, product_id)
            if existing is None:
                raise NotFound("Item not found in cart.")
            if quantity == 0:
                await self.store.remove_cart_items(actor.id, [product_id])
                return await self._refresh(actor.id)
            ensure_purchasable(await self._load_product(product_id), quantity)
            if await self.store.put_cart_item(actor.id, product_id, quantity, expected=existing.quantity):
                return await self._refresh(actor.id)
        raise ConcurrentCartChange()

    async def remove_from_cart(self, actor: Actor, product_id: str) -> Dict[str, int]:
        await self.store.remove_cart_items(actor.id, [canonical_id(product_id)])
        return await self._refresh(actor.id)

    async def save_address(self, actor: Actor, address: AddressDB) -> AddressDB:
        if not address.is_complete():
            raise ValidationError("Name, phone, pincode and city/village are required.")
        await self.store.save_address(actor.id, actor.email, to_mongo(address.dict()))
        logger.info("Shipping address saved", extra={"user_id": actor.id})
        return address

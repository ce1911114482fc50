"""Pytest fixtures for orders-service tests.

``InMemoryStore`` implements the same interface as ``app.store.MongoStore``
with the same conditional-update semantics. Every method yields to the event
loop once so that concurrently gathered operations interleave, and
``transaction()`` keeps an undo journal that is replayed when the block
raises.
"""
import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from app.cancellation import CancellationPolicy
from app.cart import CartService, CartSummaryCache
from app.checkout import CheckoutService
from app.models import Actor
from app.store import canonical_id
from app.otp import DeliveryConfirmation

COMPLETE_ADDRESS = {
    "name": "Asha Rao",
    "phone": "9876543210",
    "pincode": "560001",
    "city_village": "Bengaluru",
    "locality": "MG Road",
    "landmark_nearby": None,
}


class InMemoryStore:
    def __init__(self):
        self.products = {}
        self.users = {}
        self.orders = {}
        # Product ids whose next conditional decrement loses to a phantom competitor
        self.reserve_failures = set()
        self.healthy = True
        self.transactions_aborted = 0
        self._journal = None

    # --- Seeding (sync, for fixtures) ---
    def add_product(self, name="Widget", price=10.0, stock=5, seller_id="seller-1",
                    review_status="approved", image_url=None):
        product_id = str(ObjectId())
        self.products[product_id] = {
            "_id": product_id,
            "seller_id": seller_id,
            "name": name,
            "category": "General",
            "price": price,
            "stock": stock,
            "order_count": 0,
            "review_status": review_status,
            "image_url": image_url,
        }
        return product_id

    def add_user(self, user_id, cart=(), address=COMPLETE_ADDRESS, email=None):
        self.users[user_id] = {
            "_id": str(ObjectId()),
            "user_id": user_id,
            "email": email or f"{user_id}@example.com",
            "address": copy.deepcopy(address) if address else None,
            "cart": [{"product_id": pid, "quantity": qty} for pid, qty in cart],
            "updated_at": datetime(2024, 1, 1),
        }

    def stock_of(self, product_id):
        return self.products[product_id]["stock"]

    def cart_of(self, user_id):
        return [(item["product_id"], item["quantity"]) for item in self.users[user_id]["cart"]]

    # --- Journal ---
    def _undo(self, fn):
        if self._journal is not None:
            self._journal.append(fn)

    def _remember(self, collection, key):
        before = copy.deepcopy(collection.get(key))

        def undo():
            if before is None:
                collection.pop(key, None)
            else:
                collection[key] = before
        self._undo(undo)

    def _bump(self, product_id, stock, order_count):
        product = self.products.get(product_id)
        if product is not None:
            product["stock"] += stock
            product["order_count"] += order_count

    @asynccontextmanager
    async def transaction(self):
        tx = copy.copy(self)
        tx._journal = []
        try:
            yield tx
        except BaseException:
            for undo in reversed(tx._journal):
                undo()
            self.transactions_aborted += 1
            raise

    async def ping(self):
        await asyncio.sleep(0)
        if not self.healthy:
            raise ConnectionError("database unreachable")
        return True

    async def ensure_indexes(self):
        return None

    # --- Products ---
    async def get_product(self, product_id):
        await asyncio.sleep(0)
        product_id = canonical_id(product_id)
        return copy.deepcopy(self.products.get(product_id))

    async def get_products(self, product_ids):
        await asyncio.sleep(0)
        ids = [canonical_id(pid) for pid in product_ids]
        return {pid: copy.deepcopy(self.products[pid]) for pid in ids if pid in self.products}

    async def reserve_stock(self, product_id, quantity):
        await asyncio.sleep(0)
        product_id = canonical_id(product_id)
        product = self.products.get(product_id)
        if product is None:
            return False
        if product_id in self.reserve_failures:
            self.reserve_failures.discard(product_id)
            return False
        if product["stock"] < quantity:
            return False
        self._bump(product_id, -quantity, 1)
        self._undo(lambda: self._bump(product_id, quantity, -1))
        return True

    async def restore_stock(self, product_id, quantity):
        await asyncio.sleep(0)
        product_id = canonical_id(product_id)
        product = self.products.get(product_id)
        if product is None:
            return False
        self._bump(product_id, quantity, -1)
        self._undo(lambda: self._bump(product_id, -quantity, 1))
        return True

    # --- Users ---
    async def get_user(self, user_id):
        await asyncio.sleep(0)
        return copy.deepcopy(self.users.get(user_id))

    def _user(self, user_id):
        if user_id not in self.users:
            self.users[user_id] = {"_id": str(ObjectId()), "user_id": user_id, "cart": []}
        return self.users[user_id]

    async def save_address(self, user_id, email, address):
        await asyncio.sleep(0)
        self._remember(self.users, user_id)
        user = self._user(user_id)
        user["address"] = copy.deepcopy(address)
        if email:
            user["email"] = email

    async def save_cart(self, user_id, items):
        await asyncio.sleep(0)
        self._remember(self.users, user_id)
        self._user(user_id)["cart"] = copy.deepcopy(items)

    async def put_cart_item(self, user_id, product_id, quantity, expected=None):
        await asyncio.sleep(0)
        cart = self.users.get(user_id, {}).get("cart", [])
        line = next((item for item in cart if item["product_id"] == product_id), None)
        if (line["quantity"] if line else None) != expected:
            return False
        self._remember(self.users, user_id)
        if line is None:
            self._user(user_id)["cart"].append({"product_id": product_id, "quantity": quantity})
        else:
            line["quantity"] = quantity
        return True

    async def remove_cart_items(self, user_id, product_ids):
        await asyncio.sleep(0)
        if user_id not in self.users:
            return
        self._remember(self.users, user_id)
        doomed = set(product_ids)
        user = self.users[user_id]
        user["cart"] = [item for item in user["cart"] if item["product_id"] not in doomed]

    async def clear_cart(self, user_id):
        await self.save_cart(user_id, [])

    # --- Orders ---
    async def insert_order(self, order):
        await asyncio.sleep(0)
        order_id = str(ObjectId())
        self._remember(self.orders, order_id)
        self.orders[order_id] = dict(copy.deepcopy(order), _id=order_id)
        return order_id

    async def get_order(self, order_id):
        await asyncio.sleep(0)
        return copy.deepcopy(self.orders.get(order_id))

    async def find_orders(self, user_id=None, seller_id=None, status=None, skip=0, limit=10):
        await asyncio.sleep(0)
        docs = [
            doc for doc in self.orders.values()
            if (not user_id or doc["user_id"] == user_id)
            and (not seller_id or any(item["seller_id"] == seller_id for item in doc["items"]))
            and (not status or doc["status"] == status)
        ]
        docs.sort(key=lambda doc: doc["order_date"], reverse=True)
        return copy.deepcopy(docs[skip:skip + limit])

    def _apply(self, order_id, set_fields, unset_fields):
        self._remember(self.orders, order_id)
        doc = self.orders[order_id]
        doc.update(copy.deepcopy(set_fields))
        for field in unset_fields:
            doc.pop(field, None)
        return copy.deepcopy(doc)

    async def transition_order(self, order_id, from_status, set_fields, unset_fields=()):
        await asyncio.sleep(0)
        doc = self.orders.get(order_id)
        if doc is None or doc["status"] != from_status:
            return None
        return self._apply(order_id, set_fields, unset_fields)

    async def set_delivery_otp(self, order_id, from_status, otp):
        await asyncio.sleep(0)
        doc = self.orders.get(order_id)
        if doc is None or doc["status"] != from_status:
            return None
        return self._apply(order_id, {"delivery_otp": otp, "updated_at": datetime.utcnow()}, ())

    async def claim_delivery_otp(self, order_id, from_status, code, now, set_fields, unset_fields=()):
        await asyncio.sleep(0)
        doc = self.orders.get(order_id)
        if doc is None or doc["status"] != from_status:
            return None
        otp = doc.get("delivery_otp")
        if not otp or otp["code"] != code or not otp["expires_at"] > now:
            return None
        return self._apply(order_id, set_fields, unset_fields)


class FrozenClock:
    def __init__(self, now=datetime(2024, 6, 1, 12, 0, 0)):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def notify(self, address, subject, text_body, html_body):
        if self.fail:
            raise RuntimeError("mail relay down")
        self.sent.append({"to": address, "subject": subject, "text": text_body, "html": html_body})
        return True

    def subjects(self):
        return [message["subject"] for message in self.sent]


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def cache():
    return CartSummaryCache()


@pytest.fixture
def customer():
    return Actor(id="cust-1", role="user", email="cust-1@example.com")


@pytest.fixture
def other_customer():
    return Actor(id="cust-2", role="user", email="cust-2@example.com")


@pytest.fixture
def seller():
    return Actor(id="seller-1", role="seller")


@pytest.fixture
def other_seller():
    return Actor(id="seller-2", role="seller")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role="admin")


@pytest.fixture
def delivery():
    return Actor(id="agent-1", role="delivery")


@pytest.fixture
def carts(store, cache):
    return CartService(store, cache)


@pytest.fixture
def checkout(store, notifier, cache, clock):
    return CheckoutService(store, notifier, cache, clock)


@pytest.fixture
def confirmation(store, notifier, clock):
    return DeliveryConfirmation(store, notifier, clock)


@pytest.fixture
def policy(store, notifier, clock):
    return CancellationPolicy(store, notifier, clock)


@pytest.fixture
def place(store, checkout):
    """Place an order for `actor` from the given (product_id, quantity) lines."""
    async def _place(actor, lines):
        store.add_user(actor.id, cart=lines, email=actor.email)
        return await checkout.place_order(actor)
    return _place

"""Tests for checkout validation and order placement (app/checkout.py)."""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from app.checkout import CheckoutService
from app.exceptions import (
    ConcurrentStockChange, InsufficientStock, ProductUnavailable, ValidationError,
)
from app.models import Actor

from conftest import RecordingNotifier


class TestValidateCheckout:
    @pytest.mark.asyncio
    async def test_summary_is_priced_from_live_products(self, store, checkout, customer):
        a = store.add_product(name="Lamp", price=250.5, stock=4)
        b = store.add_product(name="Mug", price=99.99, stock=10, seller_id="seller-2")
        store.add_user(customer.id, cart=[(a, 2), (b, 1)])

        summary = await checkout.validate_checkout(customer)

        assert [item.name for item in summary["items"]] == ["Lamp", "Mug"]
        assert summary["total_amount"] == Decimal("600.99")
        assert summary["shipping_address"].city_village == "Bengaluru"

    @pytest.mark.asyncio
    async def test_validation_is_read_only_and_idempotent(self, store, checkout, customer):
        pid = store.add_product(stock=3)
        store.add_user(customer.id, cart=[(pid, 2)])

        first = await checkout.validate_checkout(customer)
        second = await checkout.validate_checkout(customer)

        assert first == second
        assert store.stock_of(pid) == 3
        assert store.cart_of(customer.id) == [(pid, 2)]
        assert store.orders == {}

    @pytest.mark.asyncio
    async def test_empty_cart(self, store, checkout, customer):
        store.add_user(customer.id)
        with pytest.raises(ValidationError, match="empty"):
            await checkout.validate_checkout(customer)

    @pytest.mark.asyncio
    async def test_unknown_user_has_empty_cart(self, checkout, customer):
        with pytest.raises(ValidationError):
            await checkout.validate_checkout(customer)

    @pytest.mark.asyncio
    async def test_incomplete_address(self, store, checkout, customer):
        pid = store.add_product()
        store.add_user(customer.id, cart=[(pid, 1)], address={"name": "Asha", "phone": ""})
        with pytest.raises(ValidationError, match="address"):
            await checkout.validate_checkout(customer)

    @pytest.mark.asyncio
    async def test_invalid_quantity(self, store, checkout, customer):
        pid = store.add_product()
        store.add_user(customer.id, cart=[(pid, 0)])
        with pytest.raises(ValidationError, match="Quantity"):
            await checkout.validate_checkout(customer)

    @pytest.mark.asyncio
    async def test_insufficient_stock(self, store, checkout, customer):
        pid = store.add_product(stock=1)
        store.add_user(customer.id, cart=[(pid, 2)])
        with pytest.raises(InsufficientStock):
            await checkout.validate_checkout(customer)

    @pytest.mark.asyncio
    async def test_unapproved_product(self, store, checkout, customer):
        pid = store.add_product(review_status="pending")
        store.add_user(customer.id, cart=[(pid, 1)])
        with pytest.raises(ProductUnavailable):
            await checkout.validate_checkout(customer)


class TestPlaceOrder:
    @pytest.mark.asyncio
    async def test_places_order_reserves_stock_and_clears_cart(self, store, checkout, cache, notifier, clock, customer):
        a = store.add_product(name="Lamp", price=250.5, stock=4)
        b = store.add_product(name="Mug", price=99.99, stock=10, seller_id="seller-2")
        store.add_user(customer.id, cart=[(a, 2), (b, 1)])

        order = await checkout.place_order(customer)

        assert order.status == "pending"
        assert order.total_amount == Decimal("600.99")
        assert order.cancellation_allowed_until == clock.now + timedelta(minutes=60)
        assert order.payment_method == "COD"
        assert store.stock_of(a) == 2 and store.stock_of(b) == 9
        assert store.products[a]["order_count"] == 1
        assert store.cart_of(customer.id) == []
        assert cache.get(customer.id) == {"item_count": 0, "total_quantity": 0}

        stored = store.orders[order.id]
        assert stored["status"] == "pending"
        assert stored["total_amount"] == 600.99
        assert "delivery_otp" not in stored
        assert notifier.subjects() == ["Your Order Has Been Placed!"]
        assert notifier.sent[0]["to"] == customer.email

    @pytest.mark.asyncio
    async def test_price_snapshot_ignores_later_price_changes(self, store, checkout, customer):
        pid = store.add_product(price=10.0, stock=5)
        store.add_user(customer.id, cart=[(pid, 1)])
        store.products[pid]["price"] = 12.0

        order = await checkout.place_order(customer)
        store.products[pid]["price"] = 99.0

        assert order.items[0].price_at_order == Decimal("12.00")
        assert store.orders[order.id]["items"][0]["price_at_order"] == 12.0

    @pytest.mark.asyncio
    async def test_concurrent_checkouts_do_not_oversell(self, store, notifier, cache, clock):
        pid = store.add_product(stock=5)
        buyers = [Actor(id=f"buyer-{n}", role="user", email=f"b{n}@example.com") for n in range(2)]
        for buyer in buyers:
            store.add_user(buyer.id, cart=[(pid, 3)])

        service = CheckoutService(store, notifier, cache, clock)
        results = await asyncio.gather(
            *(service.place_order(buyer) for buyer in buyers), return_exceptions=True
        )

        placed = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(placed) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], (ConcurrentStockChange, InsufficientStock))
        assert store.stock_of(pid) == 2
        assert store.products[pid]["order_count"] == 1
        assert len(store.orders) == 1

    @pytest.mark.asyncio
    async def test_lost_reservation_rolls_back_everything(self, store, checkout, customer):
        a = store.add_product(stock=5)
        b = store.add_product(stock=5)
        store.add_user(customer.id, cart=[(a, 1), (b, 1)])
        store.reserve_failures.add(b)

        with pytest.raises(ConcurrentStockChange):
            await checkout.place_order(customer)

        assert store.stock_of(a) == 5
        assert store.products[a]["order_count"] == 0
        assert store.orders == {}
        assert store.cart_of(customer.id) == [(a, 1), (b, 1)]

    @pytest.mark.asyncio
    async def test_unavailable_lines_are_pruned(self, store, checkout, cache, customer):
        good = store.add_product(stock=5)
        rejected = store.add_product(review_status="rejected")
        store.add_user(customer.id, cart=[(good, 2), (rejected, 1), ("5f0000000000000000000000", 1)])

        with pytest.raises(ProductUnavailable):
            await checkout.place_order(customer)

        assert store.cart_of(customer.id) == [(good, 2)]
        assert cache.get(customer.id) == {"item_count": 1, "total_quantity": 2}
        assert store.orders == {}

    @pytest.mark.asyncio
    async def test_insufficient_stock_is_not_pruned(self, store, checkout, customer):
        pid = store.add_product(stock=1)
        store.add_user(customer.id, cart=[(pid, 3)])

        with pytest.raises(InsufficientStock):
            await checkout.place_order(customer)

        assert store.cart_of(customer.id) == [(pid, 3)]

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_order(self, store, cache, clock, customer):
        pid = store.add_product(stock=5)
        store.add_user(customer.id, cart=[(pid, 1)])
        service = CheckoutService(store, RecordingNotifier(fail=True), cache, clock)

        order = await service.place_order(customer)

        assert store.orders[order.id]["status"] == "pending"
        assert store.stock_of(pid) == 4

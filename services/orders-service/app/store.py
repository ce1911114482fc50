"""MongoDB access for the orders service.

Every write that guards an invariant is a single conditional update
(``update_one``/``find_one_and_update`` with the precondition in the filter),
so concurrent requests are arbitrated by the database rather than by
read-modify-write in application memory. Multi-document operations run
inside ``transaction()``, which yields a store bound to a client session.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

logger = logging.getLogger("orders-service.store")


def _oid(value: str) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    return ObjectId(value) if ObjectId.is_valid(value) else None


def canonical_id(value: str) -> str:
    """Lowercase hex form of a product id; non-ObjectId strings pass through."""
    oid = _oid(value)
    return str(oid) if oid is not None else value


def _out(doc: Optional[dict]) -> Optional[dict]:
    if doc is not None and "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


class MongoStore:
    def __init__(self, client: AsyncIOMotorClient, db_name: str, session=None):
        self.client = client
        self.db = client[db_name]
        self.db_name = db_name
        self.session = session

    @asynccontextmanager
    async def transaction(self):
        """Run the block in a multi-document transaction; any exception aborts it."""
        async with await self.client.start_session() as session:
            async with session.start_transaction(
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority"),
            ):
                yield MongoStore(self.client, self.db_name, session=session)

    async def ping(self) -> bool:
        await self.client.admin.command("ping")
        return True

    async def ensure_indexes(self):
        await self.db.users.create_index("user_id", unique=True)
        await self.db.orders.create_index([("user_id", 1), ("order_date", -1)])
        await self.db.orders.create_index("items.seller_id")
        await self.db.orders.create_index("status")
        await self.db.products.create_index("seller_id")

    # --- Products ---
    async def get_product(self, product_id: str) -> Optional[dict]:
        oid = _oid(product_id)
        if oid is None:
            return None
        return _out(await self.db.products.find_one({"_id": oid}, session=self.session))

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, dict]:
        oids = [oid for oid in (_oid(pid) for pid in product_ids) if oid is not None]
        if not oids:
            return {}
        cursor = self.db.products.find({"_id": {"$in": oids}}, session=self.session)
        return {doc["_id"]: doc async for doc in _aout(cursor)}

    async def reserve_stock(self, product_id: str, quantity: int) -> bool:
        """Decrement stock only if at least `quantity` is available."""
        oid = _oid(product_id)
        if oid is None:
            return False
        result = await self.db.products.update_one(
            {"_id": oid, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity, "order_count": 1}},
            session=self.session,
        )
        return result.modified_count == 1

    async def restore_stock(self, product_id: str, quantity: int) -> bool:
        oid = _oid(product_id)
        if oid is None:
            return False
        result = await self.db.products.update_one(
            {"_id": oid},
            {"$inc": {"stock": quantity, "order_count": -1}},
            session=self.session,
        )
        return result.modified_count == 1

    # --- Users ---
    async def get_user(self, user_id: str) -> Optional[dict]:
        return _out(await self.db.users.find_one({"user_id": user_id}, session=self.session))

    async def save_address(self, user_id: str, email: Optional[str], address: dict) -> None:
        fields = {"address": address, "updated_at": datetime.utcnow()}
        if email:
            fields["email"] = email
        await self.db.users.update_one(
            {"user_id": user_id},
            {"$set": fields, "$setOnInsert": {"cart": []}},
            upsert=True,
            session=self.session,
        )

    async def save_cart(self, user_id: str, items: List[dict]) -> None:
        await self.db.users.update_one(
            {"user_id": user_id},
            {"$set": {"cart": items, "updated_at": datetime.utcnow()}},
            upsert=True,
            session=self.session,
        )

    async def put_cart_item(
        self, user_id: str, product_id: str, quantity: int, expected: Optional[int] = None,
    ) -> bool:
        """Write one cart line only if it still holds `expected` units
        (``None``: the line must be absent). False means the cart moved on."""
        now = datetime.utcnow()
        if expected is None:
            try:
                result = await self.db.users.update_one(
                    {"user_id": user_id, "cart.product_id": {"$ne": product_id}},
                    {
                        "$push": {"cart": {"product_id": product_id, "quantity": quantity}},
                        "$set": {"updated_at": now},
                    },
                    upsert=True,
                    session=self.session,
                )
            except DuplicateKeyError:
                # user exists and already holds the line
                return False
            return result.matched_count == 1 or result.upserted_id is not None
        result = await self.db.users.update_one(
            {"user_id": user_id, "cart": {"$elemMatch": {"product_id": product_id, "quantity": expected}}},
            {"$set": {"cart.$.quantity": quantity, "updated_at": now}},
            session=self.session,
        )
        return result.matched_count == 1

    async def remove_cart_items(self, user_id: str, product_ids: Iterable[str]) -> None:
        await self.db.users.update_one(
            {"user_id": user_id},
            {
                "$pull": {"cart": {"product_id": {"$in": list(product_ids)}}},
                "$set": {"updated_at": datetime.utcnow()},
            },
            session=self.session,
        )

    async def clear_cart(self, user_id: str) -> None:
        await self.save_cart(user_id, [])

    # --- Orders ---
    async def insert_order(self, order: dict) -> str:
        result = await self.db.orders.insert_one(order, session=self.session)
        return str(result.inserted_id)

    async def get_order(self, order_id: str) -> Optional[dict]:
        oid = _oid(order_id)
        if oid is None:
            return None
        return _out(await self.db.orders.find_one({"_id": oid}, session=self.session))

    async def find_orders(
        self,
        user_id: Optional[str] = None,
        seller_id: Optional[str] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> List[dict]:
        query = {}
        if user_id:
            query["user_id"] = user_id
        if seller_id:
            query["items.seller_id"] = seller_id
        if status:
            query["status"] = status
        cursor = (
            self.db.orders.find(query, session=self.session)
            .sort("order_date", -1)
            .skip(skip)
            .limit(limit)
        )
        return [doc async for doc in _aout(cursor)]

    async def transition_order(
        self,
        order_id: str,
        from_status: str,
        set_fields: dict,
        unset_fields: Iterable[str] = (),
    ) -> Optional[dict]:
        """Compare-and-swap on status. Returns the updated order, or None if the
        order is missing or no longer in `from_status`."""
        oid = _oid(order_id)
        if oid is None:
            return None
        update = {"$set": set_fields}
        unset_fields = list(unset_fields)
        if unset_fields:
            update["$unset"] = {field: "" for field in unset_fields}
        return _out(await self.db.orders.find_one_and_update(
            {"_id": oid, "status": from_status},
            update,
            return_document=ReturnDocument.AFTER,
            session=self.session,
        ))

    async def set_delivery_otp(self, order_id: str, from_status: str, otp: dict) -> Optional[dict]:
        oid = _oid(order_id)
        if oid is None:
            return None
        return _out(await self.db.orders.find_one_and_update(
            {"_id": oid, "status": from_status},
            {"$set": {"delivery_otp": otp, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=self.session,
        ))

    async def claim_delivery_otp(
        self,
        order_id: str,
        from_status: str,
        code: str,
        now: datetime,
        set_fields: dict,
        unset_fields: Iterable[str] = (),
    ) -> Optional[dict]:
        """Atomically consume an unexpired OTP and apply the transition."""
        oid = _oid(order_id)
        if oid is None:
            return None
        update = {"$set": set_fields}
        unset_fields = list(unset_fields)
        if unset_fields:
            update["$unset"] = {field: "" for field in unset_fields}
        return _out(await self.db.orders.find_one_and_update(
            {
                "_id": oid,
                "status": from_status,
                "delivery_otp.code": code,
                "delivery_otp.expires_at": {"$gt": now},
            },
            update,
            return_document=ReturnDocument.AFTER,
            session=self.session,
        ))


async def _aout(cursor):
    async for doc in cursor:
        yield _out(doc)

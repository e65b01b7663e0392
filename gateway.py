"""
Data access gateway

All reads and writes against the marketplace collections go through
MarketGateway. Raw Mongo rows are turned into the typed records from
schemas.py here and nowhere else.
"""
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import Binary, ObjectId
from pymongo import ASCENDING, DESCENDING

from database import create_document, get_documents, to_obj_id, utcnow
from schemas import (
    ConsumerProfile,
    Consumers,
    FarmerProfile,
    Farmers,
    Message,
    Messages,
    Order,
    OrderItem,
    OrderItems,
    Orders,
    Payment,
    Payments,
    Product,
    Products,
    User,
    Users,
)


def _obj_ids(ids: Iterable[str]) -> List[ObjectId]:
    out = []
    for i in ids:
        if ObjectId.is_valid(i):
            out.append(ObjectId(i))
    return out


class MarketGateway:
    def __init__(self, database):
        self.db = database

    # -----------------------------
    # Users
    # -----------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        if not ObjectId.is_valid(user_id):
            return None
        row = self.db.users.find_one({"_id": ObjectId(user_id)})
        return User.from_row(row) if row else None

    def get_user_row_by_email(self, email: str) -> Optional[dict]:
        return self.db.users.find_one({"email": email.lower()})

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, User]:
        rows = self.db.users.find({"_id": {"$in": _obj_ids(user_ids)}})
        return {str(r["_id"]): User.from_row(r) for r in rows}

    def insert_user(self, user: Users) -> str:
        data = user.model_dump()
        data["email"] = data["email"].lower()
        return create_document(self.db, "users", data)

    def update_user(self, user_id: str, changes: dict) -> None:
        if not changes:
            return
        self.db.users.update_one({"_id": to_obj_id(user_id)}, {"$set": {**changes, "updated_at": utcnow()}})

    def search_users(self, q: str, role: str, limit: int = 20) -> List[User]:
        filt = {"user_role": role}
        if q:
            filt["username"] = {"$regex": re.escape(q), "$options": "i"}
        return [User.from_row(r) for r in self.db.users.find(filt).limit(limit)]

    # -----------------------------
    # Sessions
    # -----------------------------

    def insert_session(self, token: str, user_id: str) -> None:
        create_document(self.db, "sessions", {"token": token, "user_id": user_id})

    def get_session_user_id(self, token: str) -> Optional[str]:
        row = self.db.sessions.find_one({"token": token})
        return row["user_id"] if row else None

    def delete_session(self, token: str) -> bool:
        return self.db.sessions.delete_one({"token": token}).deleted_count > 0

    # -----------------------------
    # Farmers / Consumers
    # -----------------------------

    def get_farmer_by_user(self, user_id: str) -> Optional[FarmerProfile]:
        row = self.db.farmers.find_one({"user_id": user_id})
        return FarmerProfile.from_row(row) if row else None

    def get_farmer(self, farmer_id: str) -> Optional[FarmerProfile]:
        if not ObjectId.is_valid(farmer_id):
            return None
        row = self.db.farmers.find_one({"_id": ObjectId(farmer_id)})
        return FarmerProfile.from_row(row) if row else None

    def get_farmers(self, farmer_ids: Iterable[str]) -> Dict[str, FarmerProfile]:
        rows = self.db.farmers.find({"_id": {"$in": _obj_ids(farmer_ids)}})
        return {str(r["_id"]): FarmerProfile.from_row(r) for r in rows}

    def get_farmers_by_users(self, user_ids: Iterable[str]) -> Dict[str, FarmerProfile]:
        rows = self.db.farmers.find({"user_id": {"$in": list(user_ids)}})
        return {r["user_id"]: FarmerProfile.from_row(r) for r in rows}

    def search_farmers(self, q: str, limit: int = 20) -> List[FarmerProfile]:
        filt = {"farm_name": {"$regex": re.escape(q), "$options": "i"}} if q else {}
        return [FarmerProfile.from_row(r) for r in self.db.farmers.find(filt).limit(limit)]

    def insert_farmer(self, farmer: Farmers) -> str:
        return create_document(self.db, "farmers", farmer)

    def update_farmer(self, farmer_id: str, changes: dict) -> None:
        if changes:
            self.db.farmers.update_one({"_id": to_obj_id(farmer_id)}, {"$set": {**changes, "updated_at": utcnow()}})

    def get_consumer_by_user(self, user_id: str) -> Optional[ConsumerProfile]:
        row = self.db.consumers.find_one({"user_id": user_id})
        return ConsumerProfile.from_row(row) if row else None

    def get_consumers_by_users(self, user_ids: Iterable[str]) -> Dict[str, ConsumerProfile]:
        rows = self.db.consumers.find({"user_id": {"$in": list(user_ids)}})
        return {r["user_id"]: ConsumerProfile.from_row(r) for r in rows}

    def insert_consumer(self, consumer: Consumers) -> str:
        return create_document(self.db, "consumers", consumer)

    def update_consumer(self, consumer_id: str, changes: dict) -> None:
        if changes:
            self.db.consumers.update_one({"_id": to_obj_id(consumer_id)}, {"$set": {**changes, "updated_at": utcnow()}})

    # -----------------------------
    # Products
    # -----------------------------

    def list_in_stock_products(self) -> List[dict]:
        return list(self.db.products.find({"stock_level": {"$gt": 0}}).sort("created_at", DESCENDING))

    def list_farmer_products(self, farmer_id: str) -> List[Product]:
        rows = self.db.products.find({"farmer_id": farmer_id}).sort("created_at", DESCENDING)
        return [Product.from_row(r) for r in rows]

    def get_product(self, product_id: str) -> Optional[Product]:
        row = self.db.products.find_one({"_id": to_obj_id(product_id)})
        if not row:
            return None
        farmer = self.get_farmer(row.get("farmer_id", ""))
        owner = self.get_user(farmer.user_id) if farmer else None
        return Product.from_row(
            row,
            farm_name=farmer.farm_name if farmer else None,
            farmer_name=owner.username if owner else None,
        )

    def insert_product(self, product: Products) -> Product:
        pid = create_document(self.db, "products", product)
        return Product.from_row(self.db.products.find_one({"_id": ObjectId(pid)}))

    def insert_products(self, products: List[Products]) -> List[Product]:
        now = utcnow()
        docs = [{**p.model_dump(), "created_at": now, "updated_at": now} for p in products]
        result = self.db.products.insert_many(docs)
        rows = self.db.products.find({"_id": {"$in": result.inserted_ids}})
        by_id = {r["_id"]: r for r in rows}
        return [Product.from_row(by_id[i]) for i in result.inserted_ids]

    def delete_product(self, product_id: str) -> bool:
        return self.db.products.delete_one({"_id": to_obj_id(product_id)}).deleted_count > 0

    # -----------------------------
    # Orders
    # -----------------------------

    def insert_order(self, order: Orders) -> str:
        return create_document(self.db, "orders", order)

    def get_order(self, order_id: str) -> Optional[Order]:
        row = self.db.orders.find_one({"_id": to_obj_id(order_id)})
        if not row:
            return None
        return Order.from_row(row, items=self.list_order_items(order_id))

    def update_order_status(self, order_id: str, status: str) -> bool:
        res = self.db.orders.update_one(
            {"_id": to_obj_id(order_id)},
            {"$set": {"status": status, "updated_at": utcnow()}},
        )
        return res.matched_count > 0

    def list_consumer_orders(self, consumer_id: str) -> List[Order]:
        rows = self.db.orders.find({"consumer_id": consumer_id}).sort("order_date", DESCENDING)
        return [Order.from_row(r) for r in rows]

    def list_unpaid_pending_orders(self, cutoff: datetime) -> List[Order]:
        orders = [Order.from_row(r) for r in get_documents(self.db, "orders", {"status": "pending"})]
        stale = [o for o in orders if o.order_date < cutoff]
        if not stale:
            return []
        paid = set(self.db.payments.distinct("order_id", {"order_id": {"$in": [o.id for o in stale]}}))
        return [o for o in stale if o.id not in paid]

    def insert_order_items(self, items: List[OrderItems]) -> List[str]:
        now = utcnow()
        docs = [{**i.model_dump(), "created_at": now, "updated_at": now} for i in items]
        result = self.db.order_items.insert_many(docs)
        return [str(i) for i in result.inserted_ids]

    def list_order_items(self, order_id: str) -> List[OrderItem]:
        rows = list(self.db.order_items.find({"order_id": order_id}).sort("_id", ASCENDING))
        products = self.db.products.find(
            {"_id": {"$in": _obj_ids(r["product_id"] for r in rows)}},
            {"name": 1},
        )
        names = {str(p["_id"]): p.get("name") for p in products}
        return [OrderItem.from_row(r, product_name=names.get(r["product_id"])) for r in rows]

    # -----------------------------
    # Payments
    # -----------------------------

    def insert_payment(self, payment: Payments) -> str:
        return create_document(self.db, "payments", payment)

    def get_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        row = self.db.payments.find_one({"transaction_id": transaction_id})
        return Payment.from_row(row) if row else None

    # -----------------------------
    # Messages
    # -----------------------------

    def insert_message(self, message: Messages) -> Message:
        mid = create_document(self.db, "messages", message)
        return Message.from_row(self.db.messages.find_one({"_id": ObjectId(mid)}))

    def list_messages_for(self, user_id: str) -> List[Message]:
        rows = self.db.messages.find(
            {"$or": [{"sender_id": user_id}, {"receiver_id": user_id}]}
        ).sort([("timestamp", DESCENDING), ("_id", DESCENDING)])
        return [Message.from_row(r) for r in rows]

    def list_thread(self, user_id: str, other_id: str) -> List[Message]:
        rows = self.db.messages.find({
            "$or": [
                {"sender_id": user_id, "receiver_id": other_id},
                {"sender_id": other_id, "receiver_id": user_id},
            ]
        }).sort([("timestamp", ASCENDING), ("_id", ASCENDING)])
        return [Message.from_row(r) for r in rows]

    def mark_thread_read(self, reader_id: str, sender_id: str) -> int:
        res = self.db.messages.update_many(
            {"sender_id": sender_id, "receiver_id": reader_id, "is_read": False},
            {"$set": {"is_read": True, "updated_at": utcnow()}},
        )
        return res.modified_count

    # -----------------------------
    # Client storage / object storage
    # -----------------------------

    def get_client_value(self, client_id: str, key: str) -> Optional[str]:
        row = self.db.client_storage.find_one({"client_id": client_id, "key": key})
        return row.get("value") if row else None

    def set_client_value(self, client_id: str, key: str, value: str) -> None:
        self.db.client_storage.update_one(
            {"client_id": client_id, "key": key},
            {"$set": {"value": value, "updated_at": utcnow()}},
            upsert=True,
        )

    def put_object(self, bucket: str, path: str, content: bytes, content_type: str) -> None:
        self.db.storage_objects.update_one(
            {"bucket": bucket, "path": path},
            {"$set": {"content": Binary(content), "content_type": content_type, "size": len(content), "updated_at": utcnow()}},
            upsert=True,
        )

    def get_object(self, bucket: str, path: str) -> Optional[dict]:
        return self.db.storage_objects.find_one({"bucket": bucket, "path": path})

"""
Database access

MongoDB connection plus the storage interface the services are written
against. `MongoStore` is the production implementation; every multi-document
write that must be all-or-nothing goes through `Store.run_transaction`, which
maps onto `ClientSession.with_transaction` (replica set or Atlas required).
"""
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ReturnDocument
from pymongo.database import Database

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

client: Optional[MongoClient] = MongoClient(DATABASE_URL, tz_aware=True) if DATABASE_URL else None
db: Optional[Database] = client[DATABASE_NAME] if client is not None else None

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


# --------------------- Storage interface ---------------------

class Transaction(ABC):
    """Reads and writes scoped to one atomic unit."""

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def insert_order(self, doc: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def set_product_stock(self, product_id: str, stock: int) -> None:
        pass


class Store(ABC):
    """Persistence the order, webhook and notification code depends on."""

    @abstractmethod
    def run_transaction(self, callback: Callable[[Transaction], T]) -> T:
        """Run callback atomically. The callback may be invoked again on a
        transient conflict, so it must not have side effects outside the
        transaction."""

    # Products
    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_products(self, q: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def insert_product(self, doc: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def update_product(self, product_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pass

    # Orders
    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_orders(self, status: Optional[str] = None, customer_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def compare_and_set_order(
        self, order_id: str, expected: Dict[str, Iterable[str]], fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Apply `fields` only if, for every key in `expected`, the stored value
        is one of the listed values. Returns the document as it was before the
        update, or None when nothing matched."""

    # Users
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def insert_user(self, doc: Dict[str, Any]) -> str:
        pass

    # Settings
    @abstractmethod
    def get_setting(self, name: str) -> Optional[Dict[str, Any]]:
        pass


# --------------------- MongoDB ---------------------

class MongoTransaction(Transaction):
    def __init__(self, database: Database, session):
        self.db = database
        self.session = session

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        return self.db["product"].find_one({"_id": oid}, session=self.session)

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.db["user"].find_one({"email": email, "role": "customer"}, session=self.session)

    def insert_order(self, doc: Dict[str, Any]) -> str:
        result = self.db["order"].insert_one(doc, session=self.session)
        return str(result.inserted_id)

    def set_product_stock(self, product_id: str, stock: int) -> None:
        self.db["product"].update_one(
            {"_id": ObjectId(product_id)},
            {"$set": {"stock": stock, "updated_at": _now()}},
            session=self.session,
        )


class MongoStore(Store):
    def __init__(self, mongo_client: MongoClient, database: Database):
        self.client = mongo_client
        self.db = database

    def run_transaction(self, callback: Callable[[Transaction], T]) -> T:
        with self.client.start_session() as session:
            return session.with_transaction(lambda s: callback(MongoTransaction(self.db, s)))

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(product_id)
        return self.db["product"].find_one({"_id": oid}) if oid else None

    def list_products(self, q: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if q:
            query["$or"] = [
                {"title": {"$regex": q, "$options": "i"}},
                {"description": {"$regex": q, "$options": "i"}},
            ]
        return list(self.db["product"].find(query).limit(limit))

    def insert_product(self, doc: Dict[str, Any]) -> str:
        return str(self.db["product"].insert_one(doc).inserted_id)

    def update_product(self, product_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        return self.db["product"].find_one_and_update(
            {"_id": oid}, {"$set": fields}, return_document=ReturnDocument.AFTER
        )

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(order_id)
        return self.db["order"].find_one({"_id": oid}) if oid else None

    def list_orders(self, status: Optional[str] = None, customer_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if customer_id:
            query["customer_id"] = customer_id
        return list(self.db["order"].find(query).sort("created_at", -1).limit(limit))

    def compare_and_set_order(
        self, order_id: str, expected: Dict[str, Iterable[str]], fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        oid = to_object_id(order_id)
        if oid is None:
            return None
        query: Dict[str, Any] = {"_id": oid}
        for key, values in expected.items():
            query[key] = {"$in": list(values)}
        return self.db["order"].find_one_and_update(
            query, {"$set": fields}, return_document=ReturnDocument.BEFORE
        )

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(user_id)
        return self.db["user"].find_one({"_id": oid}) if oid else None

    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.db["user"].find_one({"email": email})

    def insert_user(self, doc: Dict[str, Any]) -> str:
        return str(self.db["user"].insert_one(doc).inserted_id)

    def get_setting(self, name: str) -> Optional[Dict[str, Any]]:
        return self.db["store_settings"].find_one({"_id": name})


def get_store() -> Store:
    if db is None:
        raise RuntimeError("Database not configured")
    return MongoStore(client, db)

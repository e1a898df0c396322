"""
Cart and wishlist aggregation.

Line items live in MongoDB for signed-in shoppers and in a string key/value
store for guests. Cart and Wishlist only see a LineStore, so neither has to know
who is signed in. Remote writes happen before the in-memory collection changes;
a permission rejection from MongoDB is logged and the in-memory change still
applies, any other store error propagates.
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple, Type

from bson import ObjectId
from pydantic import BaseModel, TypeAdapter
from pymongo.errors import OperationFailure

from errors import InvalidInput, NotFound, is_permission_denied
from pricing import active_sales, money, pick_sale, quote, resolve_price
from schemas import CartLine, WishlistLine

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64
_locks: List[threading.RLock] = [threading.RLock() for _ in range(LOCK_STRIPES)]


def session_lock(key: str) -> threading.RLock:
    """Serializes load/mutate/write for one shopper session.

    Sessions share a fixed pool of locks, so the pool does not grow with the
    number of guests.
    """
    return _locks[hash(key) % LOCK_STRIPES]


def owner_key(user_id: Optional[str] = None, guest_id: Optional[str] = None) -> str:
    if user_id:
        return f"user:{user_id}"
    if guest_id:
        return f"guest:{guest_id}"
    raise InvalidInput("A user or guest id is required")


# Guest storage

class KeyValueStore(ABC):
    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...


class MemoryStorage(KeyValueStore):
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get_item(self, key):
        return self._data.get(key)

    def set_item(self, key, value):
        self._data[key] = value

    def remove_item(self, key):
        self._data.pop(key, None)


class MongoStorage(KeyValueStore):
    """Key/value pairs in the guest_storage collection, one document per key."""

    def __init__(self, db, collection: str = "guest_storage"):
        self.collection = db[collection]

    def get_item(self, key):
        doc = self.collection.find_one({"_id": key})
        return doc["value"] if doc else None

    def set_item(self, key, value):
        self.collection.update_one(
            {"_id": key},
            {"$set": {"value": value, "updated_at": datetime.now(timezone.utc)}},
            upsert=True,
        )

    def remove_item(self, key):
        self.collection.delete_one({"_id": key})


# Line stores

class LineStore(ABC):
    model: Type[BaseModel]

    @abstractmethod
    def load(self) -> List[BaseModel]:
        ...

    @abstractmethod
    def insert(self, line: BaseModel) -> None:
        ...

    @abstractmethod
    def update(self, line: BaseModel) -> None:
        ...

    @abstractmethod
    def delete(self, line_id: str) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class RemoteLineStore(LineStore):
    def __init__(self, collection, user_id: str, model: Type[BaseModel]):
        self.collection = collection
        self.user_id = user_id
        self.model = model

    def load(self):
        lines = []
        for doc in self.collection.find({"user_id": self.user_id}).sort("created_at", 1):
            doc["id"] = str(doc.pop("_id"))
            lines.append(self.model(**doc))
        return lines

    def insert(self, line):
        doc = line.model_dump(mode="json", exclude={"id"})
        doc.update({
            "_id": ObjectId(line.id),
            "user_id": self.user_id,
            "created_at": datetime.now(timezone.utc),
        })
        self.collection.insert_one(doc)

    def update(self, line):
        fields = line.model_dump(mode="json", exclude={"id"})
        self.collection.update_one({"_id": ObjectId(line.id), "user_id": self.user_id}, {"$set": fields})

    def delete(self, line_id):
        self.collection.delete_one({"_id": ObjectId(line_id), "user_id": self.user_id})

    def clear(self):
        self.collection.delete_many({"user_id": self.user_id})


class LocalLineStore(LineStore):
    """Whole collection serialized to JSON under one key, rewritten on every change."""

    def __init__(self, storage: KeyValueStore, key: str, model: Type[BaseModel]):
        self.storage = storage
        self.key = key
        self.model = model
        self.adapter = TypeAdapter(List[model])

    def load(self):
        raw = self.storage.get_item(self.key)
        return self.adapter.validate_json(raw) if raw else []

    def _save(self, lines):
        if lines:
            self.storage.set_item(self.key, self.adapter.dump_json(lines).decode())
        else:
            self.storage.remove_item(self.key)

    def insert(self, line):
        self._save(self.load() + [line])

    def update(self, line):
        self._save([line if it.id == line.id else it for it in self.load()])

    def delete(self, line_id):
        self._save([it for it in self.load() if it.id != line_id])

    def clear(self):
        self.storage.remove_item(self.key)


def line_store(kind: str, db, storage: KeyValueStore, user_id: Optional[str] = None,
               guest_id: Optional[str] = None) -> LineStore:
    model = CartLine if kind == "cart" else WishlistLine
    if user_id:
        return RemoteLineStore(db[f"{kind}_items"], user_id, model)
    return LocalLineStore(storage, f"{kind}:{guest_id}", model)


class _Aggregate:
    def __init__(self, store: LineStore, db, as_of: Optional[date] = None):
        self.store = store
        self.db = db
        self.as_of = as_of
        self.items = store.load()

    def _write(self, op, *args) -> None:
        try:
            op(*args)
        except OperationFailure as exc:
            if not is_permission_denied(exc):
                raise
            logger.warning(f"Store rejected {op.__name__} as unauthorized, keeping local change: {exc}")

    def _get(self, item_id: str):
        for item in self.items:
            if item.id == item_id:
                return item
        raise NotFound("Item not found")

    def remove_item(self, item_id: str) -> None:
        self._get(item_id)
        self._write(self.store.delete, item_id)
        self.items = [it for it in self.items if it.id != item_id]

    def clear(self) -> None:
        self._write(self.store.clear)
        self.items = []


class Cart(_Aggregate):
    @property
    def total_item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def subtotal(self) -> float:
        return sum(item.price * item.quantity for item in self.items)

    def find(self, product_id: str, variation_id: Optional[str] = None) -> Optional[CartLine]:
        variation_id = variation_id or None
        for item in self.items:
            if item.product_id == product_id and item.variation_id == variation_id:
                return item
        return None

    def add_item(self, product_id: str, quantity: int = 1, variation_id: Optional[str] = None) -> CartLine:
        """Add a line, or grow the existing line with the same product and variation."""
        if quantity < 1:
            raise InvalidInput("Quantity must be at least 1")
        priced = quote(self.db, product_id, variation_id, self.as_of)
        existing = self.find(product_id, variation_id)
        wanted = quantity + (existing.quantity if existing else 0)
        if priced.stock is not None and wanted > priced.stock:
            if priced.stock <= 0:
                raise InvalidInput("Out of stock")
            raise InvalidInput(f"Only {priced.stock} left in stock")

        if existing:
            merged = existing.model_copy(update={
                "quantity": existing.quantity + quantity,
                "price": priced.unit_price,
                "original_price": priced.original_price,
            })
            self._write(self.store.update, merged)
            self.items = [merged if it.id == existing.id else it for it in self.items]
            return merged

        line = CartLine(
            id=str(ObjectId()),
            product_id=product_id,
            variation_id=priced.variation_id,
            quantity=quantity,
            name=priced.name,
            price=priced.unit_price,
            original_price=priced.original_price,
            image=priced.image,
            variation_name=priced.variation_name,
        )
        self._write(self.store.insert, line)
        self.items.append(line)
        return line

    def update_quantity(self, item_id: str, quantity: int) -> None:
        if quantity < 1:
            return self.remove_item(item_id)
        item = self._get(item_id)
        updated = item.model_copy(update={"quantity": quantity})
        self._write(self.store.update, updated)
        self.items = [updated if it.id == item_id else it for it in self.items]

    def snapshot(self) -> dict:
        return {
            "items": [item.model_dump() for item in self.items],
            "total_item_count": self.total_item_count,
            "subtotal": money(self.subtotal),
        }


class Wishlist(_Aggregate):
    def __init__(self, store: LineStore, db, as_of: Optional[date] = None):
        super().__init__(store, db, as_of)
        if self.items:
            self._reprice()

    def _reprice(self) -> None:
        ids = [item.product_id for item in self.items]
        oids = [ObjectId(pid) for pid in ids if ObjectId.is_valid(pid)]
        products = {str(p["_id"]): p for p in self.db["products"].find({"_id": {"$in": oids}})}
        sales = active_sales(self.db, ids, self.as_of)
        repriced = []
        for item in self.items:
            product = products.get(item.product_id)
            if not product:
                repriced.append(item)
                continue
            sale = pick_sale(sales, item.product_id, None, self.as_of)
            base = float(product.get("base_price", 0.0))
            repriced.append(item.model_copy(update={
                "name": product.get("name", item.name),
                "price": money(resolve_price(base, 0.0, sale, self.as_of)),
                "original_price": money(base) if sale else None,
                "image": (product.get("images") or [item.image])[0],
            }))
        self.items = repriced

    def contains(self, product_id: str) -> bool:
        return any(item.product_id == product_id for item in self.items)

    def add_item(self, product_id: str) -> Tuple[WishlistLine, bool]:
        for item in self.items:
            if item.product_id == product_id:
                return item, False
        priced = quote(self.db, product_id, None, self.as_of)
        line = WishlistLine(
            id=str(ObjectId()),
            product_id=product_id,
            name=priced.name,
            price=priced.unit_price,
            original_price=priced.original_price,
            image=priced.image,
        )
        self._write(self.store.insert, line)
        self.items.append(line)
        return line, True

    def snapshot(self) -> dict:
        return {"items": [item.model_dump() for item in self.items], "count": len(self.items)}

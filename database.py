"""
MongoDB access for the settlement service.

Each schema in schemas.py corresponds to a collection named after the
lowercase class name. Foreign references are stored as string ids; the
document key itself is an ObjectId unless the caller supplies a string key
(ledger entries and outbox tasks use their idempotency key as _id).
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from errors import ValidationError

DocId = Union[str, ObjectId]


def connect(database_url: Optional[str], database_name: Optional[str]) -> Optional[Database]:
    if not database_url or not database_name:
        return None
    client = MongoClient(database_url)
    return client[database_name]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: DocId) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id format", id=str(id_str))


def _key(doc_id: DocId) -> DocId:
    # ObjectId-shaped strings address ObjectId keys, anything else is a literal key
    if isinstance(doc_id, str) and ObjectId.is_valid(doc_id):
        return ObjectId(doc_id)
    return doc_id


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Render a stored document for the API: `_id` becomes a string `id`."""
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    for k, v in out.items():
        if isinstance(v, ObjectId):
            out[k] = str(v)
    return out


class Storage:
    """Thin document store over a pymongo Database.

    Balance and stock changes go through the conditional `$inc` primitives
    below so concurrent requests can never drive a counter negative.
    """

    def __init__(self, db: Database):
        self.db = db

    def ensure_indexes(self) -> None:
        self.db["cart_item"].create_index([("user_id", ASCENDING)])
        self.db["sub_order"].create_index([("order_id", ASCENDING)])
        self.db["order_item"].create_index([("order_id", ASCENDING)])
        self.db["order"].create_index([("buyer_id", ASCENDING)])
        # one order per settled online payment; COD orders carry no reference
        self.db["order"].create_index(
            [("payment_reference", ASCENDING)],
            unique=True,
            partialFilterExpression={"payment_reference": {"$type": "string"}},
        )
        self.db["wallet_account"].create_index([("user_id", ASCENDING)], unique=True)
        self.db["wallet_transaction"].create_index([("user_id", ASCENDING)])
        self.db["outbox_task"].create_index([("status", ASCENDING)])

    # ----- CRUD -----

    def create_document(self, collection_name: str, data: Dict[str, Any], key: Optional[str] = None) -> str:
        doc = dict(data)
        doc["created_at"] = doc["updated_at"] = now_utc()
        if key is not None:
            doc["_id"] = key
        result = self.db[collection_name].insert_one(doc)
        return str(result.inserted_id)

    def create_documents(self, collection_name: str, data: Sequence[Dict[str, Any]]) -> List[str]:
        if not data:
            return []
        stamp = now_utc()
        docs = [dict(d, created_at=stamp, updated_at=stamp) for d in data]
        result = self.db[collection_name].insert_many(docs)
        return [str(i) for i in result.inserted_ids]

    def create_once(self, collection_name: str, key: str, data: Dict[str, Any]) -> bool:
        """Insert under a fixed key; False if that key was already taken."""
        try:
            self.create_document(collection_name, data, key=key)
        except DuplicateKeyError:
            return False
        return True

    def get_document(self, collection_name: str, doc_id: DocId) -> Optional[Dict[str, Any]]:
        return self.db[collection_name].find_one({"_id": _key(doc_id)})

    def find_document(self, collection_name: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.db[collection_name].find_one(filter_dict)

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def count_documents(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        return self.db[collection_name].count_documents(filter_dict or {})

    def update_document(
        self,
        collection_name: str,
        doc_id: DocId,
        data: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """`$set` fields on one document and return it as written.

        `expected` adds conditions to the match; None comes back when they
        no longer hold.
        """
        query = {"_id": _key(doc_id)}
        if expected:
            query.update(expected)
        return self.db[collection_name].find_one_and_update(
            query,
            {"$set": dict(data, updated_at=now_utc())},
            return_document=ReturnDocument.AFTER,
        )

    def update_documents(self, collection_name: str, filter_dict: Dict[str, Any], data: Dict[str, Any]) -> int:
        res = self.db[collection_name].update_many(filter_dict, {"$set": dict(data, updated_at=now_utc())})
        return res.modified_count

    def delete_document(self, collection_name: str, doc_id: DocId) -> bool:
        res = self.db[collection_name].delete_one({"_id": _key(doc_id)})
        return res.deleted_count > 0

    def delete_documents(self, collection_name: str, filter_dict: Dict[str, Any]) -> int:
        res = self.db[collection_name].delete_many(filter_dict)
        return res.deleted_count

    # ----- Atomic counters -----

    def take(
        self,
        collection_name: str,
        filter_dict: Dict[str, Any],
        field: str,
        amount: Union[int, float],
        also_inc: Optional[Dict[str, Union[int, float]]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Decrement `field` by `amount` only where it is at least `amount`.

        Returns the updated document, or None when nothing matched.
        """
        query = dict(filter_dict)
        query[field] = {"$gte": amount}
        inc = {field: -amount}
        if also_inc:
            inc.update(also_inc)
        return self.db[collection_name].find_one_and_update(
            query,
            {"$inc": inc, "$set": {"updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )

    def give(
        self,
        collection_name: str,
        filter_dict: Dict[str, Any],
        inc: Dict[str, Union[int, float]],
        set_on_insert: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Increment counters, creating the document first when `set_on_insert` is given."""
        update: Dict[str, Any] = {"$inc": inc, "$set": {"updated_at": now_utc()}}
        if set_on_insert is not None:
            update["$setOnInsert"] = dict(set_on_insert, created_at=now_utc())
        return self.db[collection_name].find_one_and_update(
            filter_dict,
            update,
            upsert=set_on_insert is not None,
            return_document=ReturnDocument.AFTER,
        )

    def decrement_stock(self, collection_name: str, doc_id: DocId, quantity: int) -> bool:
        return self.take(collection_name, {"_id": _key(doc_id)}, "stock", quantity) is not None

    def increment_stock(self, collection_name: str, doc_id: DocId, quantity: int) -> None:
        self.give(collection_name, {"_id": _key(doc_id)}, {"stock": quantity})

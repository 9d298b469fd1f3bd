"""
Document store adapter

A thin wrapper over a pymongo ``Database`` exposing the handful of
per-collection operations the services need. One ``Store`` is built at process
start and handed to every component; nothing here is a module-level global.

Collection names are the lowercased schema class names (``Product`` ->
"product", ``BazaarCategory`` -> "bazaarcategory").
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

import config
from errors import ValidationError

logger = logging.getLogger(__name__)

Sort = Sequence[Tuple[str, int]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def oid(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except Exception:
        raise ValidationError("Invalid id")


def serialize_doc(doc: Any) -> Any:
    """Make a stored document JSON friendly: ``_id`` becomes ``id`` and every
    nested ObjectId becomes a string."""
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if not isinstance(doc, dict):
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v) if isinstance(v, ObjectId) else v
        else:
            out[k] = serialize_doc(v)
    return out


def _walk(docs: Iterable[Any], keys: List[str]):
    # yields (container, key) for every slot addressed by a dotted path
    for doc in docs:
        if not isinstance(doc, dict):
            continue
        if len(keys) == 1:
            yield doc, keys[0]
            continue
        child = doc.get(keys[0])
        children = child if isinstance(child, list) else [child]
        yield from _walk(children, keys[1:])


class Store:
    def __init__(self, db: Database):
        self.db = db

    @property
    def name(self) -> str:
        return self.db.name

    def collection(self, name: str):
        return self.db[name]

    def ensure_indexes(self) -> None:
        self.db["user"].create_index([("email", ASCENDING)], unique=True)
        self.db["category"].create_index([("name", ASCENDING)], unique=True)
        self.db["cart"].create_index([("user_id", ASCENDING)], unique=True)
        self.db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["product"].create_index([("seller", ASCENDING)])

    # CRUD

    def create(self, collection: str, data: Union[BaseModel, Dict[str, Any]], _id: Optional[ObjectId] = None) -> ObjectId:
        doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        now = utcnow()
        doc.setdefault("created_at", now)
        doc.setdefault("updated_at", now)
        if _id is not None:
            doc["_id"] = _id
        result = self.db[collection].insert_one(doc)
        return result.inserted_id

    def find_by_id(self, collection: str, id: Any, fields: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
        projection = list(fields) if fields else None
        return self.db[collection].find_one({"_id": oid(id)}, projection)

    def find_one(self, collection: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.db[collection].find_one(filter)

    def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        skip: int = 0,
        limit: int = 0,
        sort: Optional[Sort] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filter or {})
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def update_by_id(self, collection: str, id: Any, update: Dict[str, Any]) -> bool:
        """Apply ``update`` to one document. A plain field dict is treated as
        ``$set``. Returns whether a document matched."""
        if not any(k.startswith("$") for k in update):
            update = {"$set": update}
        res = self.db[collection].update_one({"_id": oid(id)}, update)
        return res.matched_count > 0

    def update_one(self, collection: str, filter: Dict[str, Any], update: Dict[str, Any]) -> bool:
        res = self.db[collection].update_one(filter, update)
        return res.matched_count > 0

    def upsert_one(self, collection: str, filter: Dict[str, Any], on_insert: Dict[str, Any]) -> Dict[str, Any]:
        """Return the document matching ``filter``, inserting ``on_insert`` when
        there is none."""
        return self.db[collection].find_one_and_update(
            filter,
            {"$setOnInsert": on_insert},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def delete_by_id(self, collection: str, id: Any) -> bool:
        res = self.db[collection].delete_one({"_id": oid(id)})
        return res.deleted_count > 0

    def delete_many(self, collection: str, filter: Dict[str, Any]) -> int:
        return self.db[collection].delete_many(filter).deleted_count

    def count_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        return self.db[collection].count_documents(filter or {})

    # References

    def populate(
        self,
        docs: List[Dict[str, Any]],
        path: str,
        collection: str,
        fields: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Replace the ids stored at ``path`` (dotted, may cross lists such as
        ``items.product``) with the referenced documents, in place.

        A single reference to a missing document becomes None; missing members
        of a reference list are dropped.
        """
        slots = list(_walk(docs, path.split(".")))
        ids = set()
        for container, key in slots:
            value = container.get(key)
            if isinstance(value, list):
                ids.update(v for v in value if isinstance(v, ObjectId))
            elif isinstance(value, ObjectId):
                ids.add(value)
        found: Dict[ObjectId, Dict[str, Any]] = {}
        if ids:
            projection = list(fields) if fields else None
            found = {d["_id"]: d for d in self.db[collection].find({"_id": {"$in": list(ids)}}, projection)}
        for container, key in slots:
            value = container.get(key)
            if isinstance(value, list):
                container[key] = [found[v] for v in value if v in found]
            elif isinstance(value, ObjectId):
                container[key] = found.get(value)
        return docs


def connect(url: str = config.DATABASE_URL, name: str = config.DATABASE_NAME) -> Store:
    client = MongoClient(url)
    logger.info("Connected to MongoDB database %s", name)
    return Store(client[name])

"""
Document storage for requests, collectors and collections.

MongoDB is the production backend. Every state change the dispatch core makes
goes through update_document_if, a single-document conditional write: the
update only applies when the stored document still matches `expected`, which
is how collector and request status flips stay race-free without locks.
"""
import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from wastebolt.retry import retry_io

logger = logging.getLogger(__name__)

Sort = Sequence[Tuple[str, int]]

_MISSING = object()


def _to_str_id(doc):
    if isinstance(doc, dict) and doc.get("_id") is not None:
        doc["id"] = str(doc.pop("_id"))
    return doc


def _as_dict(data: Any) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


class Datastore:
    """Interface shared by the Mongo and in-process stores."""

    def create_document(self, collection_name: str, data: Any) -> str:
        raise NotImplementedError

    def get_document(self, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def update_document_if(
        self,
        collection_name: str,
        doc_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
        inc: Optional[Dict[str, float]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Apply changes only if the document matches expected; return it or None."""
        raise NotImplementedError

    def count_documents(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        raise NotImplementedError

    def count_by(
        self, collection_name: str, field: str, filter_dict: Optional[Dict[str, Any]] = None
    ) -> Dict[Any, int]:
        raise NotImplementedError

    def list_collection_names(self) -> List[str]:
        raise NotImplementedError

    def update_document(
        self,
        collection_name: str,
        doc_id: str,
        changes: Dict[str, Any],
        inc: Optional[Dict[str, float]] = None,
    ) -> Optional[Dict[str, Any]]:
        return self.update_document_if(collection_name, doc_id, {}, changes, inc=inc)

    def close(self) -> None:
        pass


# ------------------ MongoDB ------------------
class MongoDatastore(Datastore):
    def __init__(
        self,
        database_url: str,
        database_name: str,
        retry_attempts: int = 3,
        retry_base_s: float = 0.2,
        client: Optional[MongoClient] = None,
    ):
        self.client = client if client is not None else MongoClient(database_url, tz_aware=True)
        self.db = self.client[database_name]
        self._retry_attempts = retry_attempts
        self._retry_base_s = retry_base_s

    def _io(self, label: str, fn):
        return retry_io(
            fn,
            attempts=self._retry_attempts,
            base_sleep_s=self._retry_base_s,
            retry_on=(ConnectionFailure,),
            label=f"mongo {label}",
        )

    @staticmethod
    def _oid(doc_id: str) -> Optional[ObjectId]:
        try:
            return ObjectId(doc_id)
        except (InvalidId, TypeError):
            return None

    def create_document(self, collection_name: str, data: Any) -> str:
        data_dict = _as_dict(data)
        now = datetime.now(timezone.utc)
        data_dict.setdefault("created_at", now)
        data_dict.setdefault("updated_at", now)
        data_dict.pop("id", None)
        tries = []

        def insert():
            tries.append(1)
            try:
                return str(self.db[collection_name].insert_one(data_dict).inserted_id)
            except DuplicateKeyError:
                # insert_one set _id on the first try; a lost reply means it was already written
                if len(tries) > 1 and self.db[collection_name].find_one({"_id": data_dict["_id"]}) is not None:
                    logger.info("Insert into %s was applied before the retry; keeping %s", collection_name, data_dict["_id"])
                    return str(data_dict["_id"])
                raise

        return self._io("insert", insert)

    def get_document(self, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
        oid = self._oid(doc_id)
        if oid is None:
            return None
        doc = self._io("find_one", lambda: self.db[collection_name].find_one({"_id": oid}))
        return _to_str_id(doc)

    def get_documents(self, collection_name, filter_dict=None, sort=None, limit=None):
        def run():
            cursor = self.db[collection_name].find(filter_dict or {})
            if sort:
                cursor = cursor.sort([(k, ASCENDING if d >= 0 else DESCENDING) for k, d in sort])
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

        return [_to_str_id(d) for d in self._io("find", run)]

    def update_document_if(self, collection_name, doc_id, expected, changes, inc=None):
        oid = self._oid(doc_id)
        if oid is None:
            return None
        update: Dict[str, Any] = {"$set": dict(changes)}
        if inc:
            update["$inc"] = dict(inc)
        query = {"_id": oid}
        query.update(expected)
        doc = self._io(
            "find_one_and_update",
            lambda: self.db[collection_name].find_one_and_update(
                query, update, return_document=ReturnDocument.AFTER
            ),
        )
        return _to_str_id(doc)

    def count_documents(self, collection_name, filter_dict=None):
        return self._io("count", lambda: self.db[collection_name].count_documents(filter_dict or {}))

    def count_by(self, collection_name, field, filter_dict=None):
        pipeline = [
            {"$match": filter_dict or {}},
            {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        ]
        rows = self._io("aggregate", lambda: list(self.db[collection_name].aggregate(pipeline)))
        return {r["_id"]: r["count"] for r in rows}

    def list_collection_names(self):
        return self._io("list_collections", self.db.list_collection_names)

    def close(self):
        self.client.close()


# ------------------ In-process store ------------------
def _get_path(doc: Any, path: str) -> Any:
    head, _, rest = path.partition(".")
    if isinstance(doc, list):
        # Like Mongo, a dotted path into an array of sub-documents yields every match
        values = []
        for item in doc:
            value = _get_path(item, path)
            if value is _MISSING:
                continue
            values.extend(value if isinstance(value, list) else [value])
        return values if values else _MISSING
    if not isinstance(doc, dict) or head not in doc:
        return _MISSING
    return _get_path(doc[head], rest) if rest else doc[head]


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def _compare(value: Any, op: str, arg: Any) -> bool:
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op == "$in":
        return any(_equals(value, a) for a in arg)
    if op == "$nin":
        return not any(_equals(value, a) for a in arg)
    if value is _MISSING or value is None:
        return False
    if op == "$lt":
        return value < arg
    if op == "$lte":
        return value <= arg
    if op == "$gt":
        return value > arg
    if op == "$gte":
        return value >= arg
    raise ValueError(f"Unsupported query operator: {op}")


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def matches(doc: Dict[str, Any], filter_dict: Dict[str, Any]) -> bool:
    """Evaluate the subset of Mongo query syntax the service uses."""
    for key, cond in filter_dict.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
            continue
        value = _get_path(doc, key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            if not all(_compare(value, op, arg) for op, arg in cond.items()):
                return False
        elif not _equals(value, cond):
            return False
    return True


def _sort_key(value: Any):
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


class MemoryDatastore(Datastore):
    """
    Thread-safe in-process store used when no DATABASE_URL is configured and in
    tests. A single lock makes each call, including the conditional write,
    atomic with respect to every other call.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _table(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    @staticmethod
    def _out(doc: Dict[str, Any]) -> Dict[str, Any]:
        return _to_str_id(copy.deepcopy(doc))

    def create_document(self, collection_name, data):
        data_dict = copy.deepcopy(_as_dict(data))
        now = datetime.now(timezone.utc)
        data_dict.setdefault("created_at", now)
        data_dict.setdefault("updated_at", now)
        data_dict.pop("id", None)
        doc_id = str(ObjectId())
        data_dict["_id"] = doc_id
        with self._lock:
            self._table(collection_name)[doc_id] = data_dict
        return doc_id

    def get_document(self, collection_name, doc_id):
        with self._lock:
            doc = self._table(collection_name).get(doc_id)
            return self._out(doc) if doc is not None else None

    def get_documents(self, collection_name, filter_dict=None, sort=None, limit=None):
        with self._lock:
            docs = [d for d in self._table(collection_name).values() if matches(d, filter_dict or {})]
            docs = [copy.deepcopy(d) for d in docs]
        for key, direction in reversed(list(sort or [])):
            docs.sort(key=lambda d: _sort_key(_get_path(d, key)), reverse=direction < 0)
        if limit:
            docs = docs[:limit]
        return [_to_str_id(d) for d in docs]

    def update_document_if(self, collection_name, doc_id, expected, changes, inc=None):
        with self._lock:
            doc = self._table(collection_name).get(doc_id)
            if doc is None or not matches(doc, expected):
                return None
            for path, value in changes.items():
                _set_path(doc, path, copy.deepcopy(value))
            for path, amount in (inc or {}).items():
                current = _get_path(doc, path)
                base = 0 if current is _MISSING or current is None else current
                _set_path(doc, path, base + amount)
            return self._out(doc)

    def count_documents(self, collection_name, filter_dict=None):
        with self._lock:
            return sum(1 for d in self._table(collection_name).values() if matches(d, filter_dict or {}))

    def count_by(self, collection_name, field, filter_dict=None):
        counts: Dict[Any, int] = {}
        with self._lock:
            for d in self._table(collection_name).values():
                if not matches(d, filter_dict or {}):
                    continue
                value = _get_path(d, field)
                key = None if value is _MISSING else value
                counts[key] = counts.get(key, 0) + 1
        return counts

    def list_collection_names(self):
        with self._lock:
            return sorted(self._collections)


def connect(database_url: str, database_name: str, retry_attempts: int = 3, retry_base_s: float = 0.2) -> Datastore:
    if database_url:
        logger.info("Using MongoDB database %s", database_name)
        return MongoDatastore(database_url, database_name, retry_attempts, retry_base_s)
    logger.warning("DATABASE_URL not set; using in-process memory store")
    return MemoryDatastore()

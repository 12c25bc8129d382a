from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect, DuplicateKeyError

from database import MemoryDatastore, connect, matches

from conftest import STORE_BACKENDS, make_store


@pytest.fixture(params=STORE_BACKENDS)
def store(request):
    return make_store(request.param)


def test_create_and_get(store):
    doc_id = store.create_document("collector", {"name": "Juma", "status": "offline"})

    doc = store.get_document("collector", doc_id)
    assert doc["id"] == doc_id
    assert doc["name"] == "Juma"
    assert "_id" not in doc
    assert doc["created_at"].tzinfo is not None
    assert store.get_document("collector", "missing") is None


def test_returned_documents_are_copies(store):
    doc_id = store.create_document("collector", {"tags": ["a"]})
    doc = store.get_document("collector", doc_id)
    doc["tags"].append("b")
    assert store.get_document("collector", doc_id)["tags"] == ["a"]


def test_conditional_update(store):
    doc_id = store.create_document("collector", {"status": "available", "jobs": 1})

    assert store.update_document_if("collector", doc_id, {"status": "busy"}, {"status": "offline"}) is None
    assert store.get_document("collector", doc_id)["status"] == "available"

    updated = store.update_document_if(
        "collector", doc_id, {"status": "available"}, {"status": "busy"}, inc={"jobs": 2, "earned": 10.5}
    )
    assert updated["status"] == "busy"
    assert updated["jobs"] == 3
    assert updated["earned"] == 10.5


def test_update_dotted_paths(store):
    doc_id = store.create_document("collection", {"payment": {"amount": 100, "status": "pending"}})
    updated = store.update_document("collection", doc_id, {"payment.status": "paid", "timeline.completed_at": 1})
    assert updated["payment"] == {"amount": 100, "status": "paid"}
    assert updated["timeline"] == {"completed_at": 1}


def test_update_missing_document(store):
    assert store.update_document("collection", "nope", {"status": "x"}) is None


@pytest.mark.parametrize(
    "query,expected",
    [
        ({"status": "available"}, True),
        ({"status": "busy"}, False),
        ({"rating": None}, True),
        ({"specializations": "plastic"}, True),
        ({"specializations": "hazardous"}, False),
        ({"status": {"$in": ["busy", "available"]}}, True),
        ({"status": {"$nin": ["busy", "available"]}}, False),
        ({"status": {"$ne": "busy"}}, True),
        ({"capacity_kg": {"$gte": 100, "$lt": 500}}, True),
        ({"capacity_kg": {"$gt": 100}}, True),
        ({"capacity_kg": {"$lte": 99}}, False),
        ({"rating_avg": {"$gt": 1}}, False),
        ({"location.lat": -1.3}, True),
        ({"location": {"$exists": True}}, True),
        ({"cell": {"$exists": True}}, False),
        ({"$or": [{"status": "busy"}, {"capacity_kg": 250}]}, True),
        ({"photos.phash": "abc"}, True),
        ({"photos.phash": "zzz"}, False),
    ],
)
def test_matches(query, expected):
    doc = {
        "status": "available",
        "specializations": ["organic", "plastic"],
        "capacity_kg": 250,
        "location": {"lat": -1.3, "lng": 36.8},
        "photos": [{"phash": "abc"}, {"phash": "def"}],
    }
    assert matches(doc, query) is expected


def test_sort_and_limit(store):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for i in (2, 0, 1):
        store.create_document("wasterequest", {"n": i, "created_at": base + timedelta(minutes=i)})

    newest = store.get_documents("wasterequest", sort=[("created_at", -1)], limit=2)
    assert [d["n"] for d in newest] == [2, 1]
    oldest = store.get_documents("wasterequest", {"n": {"$gte": 1}}, sort=[("created_at", 1)])
    assert [d["n"] for d in oldest] == [1, 2]


def test_count_by(store):
    store.create_document("wasterequest", {"status": "pending", "location": {"cell": "a"}})
    store.create_document("wasterequest", {"status": "pending", "location": {"cell": "a"}})
    store.create_document("wasterequest", {"status": "pending", "location": {"cell": "b"}})
    store.create_document("wasterequest", {"status": "pending", "location": {}})
    store.create_document("wasterequest", {"status": "completed", "location": {"cell": "a"}})

    counts = store.count_by("wasterequest", "location.cell", {"status": "pending"})

    assert counts == {"a": 2, "b": 1, None: 1}
    assert store.count_documents("wasterequest", {"status": "pending"}) == 4
    assert store.list_collection_names() == ["wasterequest"]


def test_connect_without_url_uses_memory():
    assert isinstance(connect("", "wastebolt"), MemoryDatastore)


class _LosesFirstReply:
    """Applies the first insert, then drops the connection before replying."""

    def __init__(self, collection):
        self._collection = collection
        self.inserts = 0

    def insert_one(self, document):
        self.inserts += 1
        result = self._collection.insert_one(document)
        if self.inserts == 1:
            raise AutoReconnect("connection reset by peer")
        return result

    def __getattr__(self, name):
        return getattr(self._collection, name)


def test_insert_retried_after_lost_reply_is_kept_once(monkeypatch):
    store = make_store("mongo")
    real = store.db["collector"]
    flaky = _LosesFirstReply(real)
    monkeypatch.setattr(store, "db", {"collector": flaky})

    doc_id = store.create_document("collector", {"name": "Juma"})

    assert flaky.inserts == 2
    assert real.count_documents({}) == 1
    assert str(real.find_one()["_id"]) == doc_id


def test_duplicate_id_on_first_insert_is_raised():
    store = make_store("mongo")
    doc_id = store.create_document("collector", {"name": "Juma"})

    with pytest.raises(DuplicateKeyError):
        store.create_document("collector", {"_id": ObjectId(doc_id), "name": "Kip"})

import asyncio

import pytest
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

import database
from config import Settings
from database import JsonFileMedium, KeyValueMedium, MediumError, MemoryMedium, MongoMedium, open_medium
from store import EntityStore, StoreStatus


def test_memory_medium_quota():
    medium = MemoryMedium(quota_bytes=20)
    medium.set("a", "1234")
    with pytest.raises(MediumError):
        medium.set("b", "x" * 30)
    assert medium.get("b") is None
    # replacing a value only counts the new size
    medium.set("a", "12345678")
    assert medium.get("a") == "12345678"


def test_memory_medium_rejects_non_strings():
    with pytest.raises(MediumError):
        MemoryMedium().set("a", 1)


def test_json_file_medium_survives_reopen(tmp_path):
    path = tmp_path / "store.json"
    medium = JsonFileMedium(str(path))
    medium.set("schub_students", "[]")
    medium.set("schub_portal", "admin")
    medium.delete("schub_portal")

    reopened = JsonFileMedium(str(path))
    assert reopened.get("schub_students") == "[]"
    assert reopened.get("schub_portal") is None


def test_json_file_medium_writes_on_flush_only_without_autoflush(tmp_path):
    path = tmp_path / "store.json"
    medium = JsonFileMedium(str(path), autoflush=False)
    medium.set("k", "v")
    assert not path.exists()
    medium.close()
    assert JsonFileMedium(str(path)).get("k") == "v"


def test_json_file_medium_ignores_unreadable_file(tmp_path, caplog):
    path = tmp_path / "store.json"
    path.write_text("not json", encoding="utf-8")
    medium = JsonFileMedium(str(path))
    assert medium.keys() == []
    assert "unreadable" in caplog.text


def test_open_medium_picks_backend(tmp_path):
    assert isinstance(open_medium(Settings()), MemoryMedium)
    medium = open_medium(Settings(storage_path=str(tmp_path / "s.json")))
    assert isinstance(medium, JsonFileMedium)


def test_key_value_medium_is_abstract():
    with pytest.raises(TypeError):
        KeyValueMedium()


class FakeMongoCollection:
    """Just enough of a pymongo collection for MongoMedium"""

    def __init__(self, error=None):
        self.docs = {}
        self.error = error

    def _check(self):
        if self.error is not None:
            raise self.error

    def find_one(self, query):
        self._check()
        doc = self.docs.get(query["_id"])
        return dict(doc) if doc else None

    def update_one(self, query, update, upsert=False):
        self._check()
        if query["_id"] not in self.docs:
            assert upsert
            self.docs[query["_id"]] = {"_id": query["_id"]}
        self.docs[query["_id"]].update(update["$set"])

    def delete_one(self, query):
        self._check()
        self.docs.pop(query["_id"], None)

    def find(self, query, projection):
        self._check()
        return [{"_id": key} for key in self.docs]


class FakeMongoClient:
    def __init__(self, url=None):
        self.url = url
        self.closed = False
        self.databases = {}

    def __getitem__(self, name):
        if name not in self.databases:
            self.databases[name] = FakeMongoDatabase(self)
        return self.databases[name]

    def close(self):
        self.closed = True


class FakeMongoDatabase:
    def __init__(self, client, collection=None):
        self.client = client
        self.collections = {}
        if collection is not None:
            self.collections["kv_store"] = collection

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeMongoCollection())


def test_mongo_medium_stores_one_document_per_key():
    collection = FakeMongoCollection()
    medium = MongoMedium(FakeMongoDatabase(FakeMongoClient(), collection))

    assert medium.get("schub_students") is None
    medium.set("schub_students", "[]")
    medium.set("schub_portal", "admin")
    medium.set("schub_portal", "student")

    assert medium.get("schub_portal") == "student"
    assert sorted(medium.keys()) == ["schub_portal", "schub_students"]
    assert collection.docs["schub_portal"]["updated_at"] is not None

    medium.delete("schub_portal")
    medium.delete("schub_portal")
    assert medium.keys() == ["schub_students"]


def test_mongo_medium_close_closes_client():
    client = FakeMongoClient()
    MongoMedium(client["schub"]).close()
    assert client.closed is True


@pytest.mark.parametrize("error", [PyMongoError("boom"), ServerSelectionTimeoutError("no servers")])
def test_mongo_errors_become_medium_errors(error):
    medium = MongoMedium(FakeMongoDatabase(FakeMongoClient(), FakeMongoCollection(error=error)))
    with pytest.raises(MediumError):
        medium.get("k")
    with pytest.raises(MediumError):
        medium.set("k", "v")
    with pytest.raises(MediumError):
        medium.delete("k")
    with pytest.raises(MediumError):
        medium.keys()


def test_store_over_mongo_medium():
    store = EntityStore(MongoMedium(FakeMongoDatabase(FakeMongoClient()))).open()
    created = asyncio.run(store.create("subjects", {"name": "Art", "code": "ART1"}))
    assert created.status == StoreStatus.CREATED
    assert [s.code for s in asyncio.run(store.list("subjects"))] == ["ART1"]

    broken = EntityStore(MongoMedium(FakeMongoDatabase(FakeMongoClient(), FakeMongoCollection(PyMongoError("down")))))
    result = asyncio.run(broken.create("subjects", {"name": "Art", "code": "ART1"}))
    assert result.status == StoreStatus.STORAGE_ERROR


def test_open_medium_uses_mongo_when_configured(monkeypatch):
    monkeypatch.setattr(database, "MongoClient", FakeMongoClient)
    medium = open_medium(Settings(database_url="mongodb://db:27017", database_name="schub"))
    assert isinstance(medium, MongoMedium)
    assert medium.db.client.url == "mongodb://db:27017"

    # a URL without a database name falls through to the next backend
    assert isinstance(open_medium(Settings(database_url="mongodb://db:27017")), MemoryMedium)

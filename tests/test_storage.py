import json

import mongomock
import pytest

from faceaccess import storage_mongo
from faceaccess.errors import NotFoundError, StorageError, ValidationError
from faceaccess.schemas import AttributeObservation, PhotoRef
from faceaccess.storage import JsonUserStore, create_store
from faceaccess.storage_sqlite import SqliteUserStore

from .conftest import embedding_for


def vec(label):
    return embedding_for(label).tolist()


def test_upsert_new_then_get(store):
    record = store.upsert(
        "alice",
        [vec("alice"), vec("alice-2")],
        [PhotoRef(url="/uploads/a1.jpg"), PhotoRef(url="/uploads/a2.jpg")],
        [AttributeObservation(expression="happy", confidence=0.9, age=30, gender="female")],
    )
    assert record.name == "alice"

    fetched = store.get("alice")
    assert fetched is not None
    assert len(fetched.embeddings) == 2
    assert fetched.embeddings[0] == pytest.approx(vec("alice"))
    assert fetched.photo_urls == ["/uploads/a1.jpg", "/uploads/a2.jpg"]
    assert fetched.attribute_history[0].expression == "happy"


def test_upsert_appends_and_never_overwrites(store):
    store.upsert("alice", [vec("a1")], [PhotoRef(url="/uploads/1.jpg")])
    record = store.upsert("alice", [vec("a2")], [PhotoRef(url="/uploads/2.jpg")])
    assert len(record.embeddings) == 2
    assert store.get("alice").embeddings[0] == pytest.approx(vec("a1"))
    assert store.get("alice").photo_urls == ["/uploads/1.jpg", "/uploads/2.jpg"]


def test_upsert_without_embeddings_creates_nothing(store):
    with pytest.raises(ValidationError):
        store.upsert("ghost", [], [PhotoRef(url="/uploads/g.jpg")])
    assert store.get("ghost") is None
    assert store.list_users() == []


def test_get_unknown_is_none(store):
    assert store.get("nobody") is None


def test_list_is_ordered_by_name(store):
    for name in ("carol", "alice", "bob"):
        store.upsert(name, [vec(name)])
    assert [u.name for u in store.list_users()] == ["alice", "bob", "carol"]
    assert [label for label, _ in store.labeled_descriptors()] == ["alice", "bob", "carol"]


def test_delete_returns_photo_refs(store):
    store.upsert("alice", [vec("alice")], [PhotoRef(url="/uploads/a.jpg"), PhotoRef(url="/uploads/b.jpg")])
    store.upsert("bob", [vec("bob")], [PhotoRef(url="/uploads/c.jpg")])
    assert store.delete("alice") == ["/uploads/a.jpg", "/uploads/b.jpg"]
    assert store.get("alice") is None
    assert store.get("bob") is not None


def test_delete_unknown_raises(store):
    with pytest.raises(NotFoundError):
        store.delete("nobody")


def test_clear_all_returns_every_ref(store):
    store.upsert("alice", [vec("alice")], [PhotoRef(url="/uploads/a.jpg")])
    store.upsert("bob", [vec("bob")], [PhotoRef(url="/uploads/b.jpg"), PhotoRef(url="/uploads/c.jpg")])
    assert sorted(store.clear_all()) == ["/uploads/a.jpg", "/uploads/b.jpg", "/uploads/c.jpg"]
    assert store.list_users() == []


def test_history_is_capped_oldest_first(store):
    # store fixture caps history at 3
    store.upsert("alice", [vec("alice")], observations=[AttributeObservation(expression="e0")])
    before = store.get("alice").last_seen
    for i in range(1, 5):
        store.append_observation("alice", AttributeObservation(expression=f"e{i}"))
    record = store.get("alice")
    assert [o.expression for o in record.attribute_history] == ["e2", "e3", "e4"]
    assert record.last_seen >= before


def test_upsert_history_is_capped(store):
    observations = [AttributeObservation(expression=f"e{i}") for i in range(5)]
    record = store.upsert("alice", [vec("alice")], observations=observations)
    assert [o.expression for o in record.attribute_history] == ["e2", "e3", "e4"]


def test_append_observation_unknown_raises(store):
    with pytest.raises(NotFoundError):
        store.append_observation("nobody", AttributeObservation())


def test_revision_moves_on_mutation(store):
    start = store.revision
    store.upsert("alice", [vec("alice")])
    after_upsert = store.revision
    assert after_upsert > start
    store.append_observation("alice", AttributeObservation())
    assert store.revision > after_upsert
    store.get("alice")
    store.list_users()
    assert store.revision == after_upsert + 1


def test_json_store_resets_corrupt_file(tmp_path):
    path = tmp_path / "users.json"
    path.write_text("{not json")
    s = JsonUserStore(path=str(path))
    assert s.list_users() == []
    assert json.loads(path.read_text())["users"] == {}


def test_json_store_survives_reopen(tmp_path):
    path = str(tmp_path / "users.json")
    JsonUserStore(path=path).upsert("alice", [vec("alice")])
    assert JsonUserStore(path=path).get("alice") is not None


def test_sqlite_store_shares_state_across_instances(tmp_path):
    path = str(tmp_path / "users.db")
    writer = SqliteUserStore(path=path)
    reader = SqliteUserStore(path=path)
    seen = reader.revision
    writer.upsert("alice", [vec("alice")])
    assert reader.revision != seen
    assert reader.get("alice") is not None


def test_create_store_backends(tmp_path):
    assert isinstance(create_store("json", path=str(tmp_path / "u.json")), JsonUserStore)
    assert isinstance(create_store("sqlite", path=str(tmp_path / "u.db")), SqliteUserStore)
    with pytest.raises(ValueError):
        create_store("nedb")


def test_create_store_falls_back_to_json_when_mongo_unreachable(tmp_path, monkeypatch):
    def refuse(self, *args, **kwargs):
        raise StorageError("MongoDB connection failed: refused")

    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(storage_mongo.MongoUserStore, "__init__", refuse)
    s = create_store("mongodb")
    assert isinstance(s, JsonUserStore)
    assert s.describe() == "json-file"


@pytest.fixture
def mongo_store():
    s = storage_mongo.MongoUserStore(db_name="faceaccess-test", client=mongomock.MongoClient())
    yield s
    s.close()


def test_mongo_concurrent_first_enrollment_appends(mongo_store, monkeypatch):
    mongo_store.upsert("alice", [vec("alice")], [PhotoRef(url="/uploads/a.jpg")])
    append = mongo_store.collection.find_one_and_update
    calls = []

    # the first lookup runs before the other writer's insert lands
    def stale_then_real(*args, **kwargs):
        calls.append(args)
        return None if len(calls) == 1 else append(*args, **kwargs)

    monkeypatch.setattr(mongo_store.collection, "find_one_and_update", stale_then_real)
    record = mongo_store.upsert("alice", [vec("alice")], [PhotoRef(url="/uploads/b.jpg")])
    assert len(record.embeddings) == 2
    assert record.photo_urls == ["/uploads/a.jpg", "/uploads/b.jpg"]


def test_mongo_clear_all_returns_refs_of_users_added_meanwhile(mongo_store, monkeypatch):
    mongo_store.upsert("alice", [vec("alice")], [PhotoRef(url="/uploads/a.jpg")])
    delete_one = mongo_store.collection.find_one_and_delete
    calls = []

    def insert_during_clear(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            mongo_store.upsert("bob", [vec("bob")], [PhotoRef(url="/uploads/b.jpg")])
        return delete_one(*args, **kwargs)

    monkeypatch.setattr(mongo_store.collection, "find_one_and_delete", insert_during_clear)
    assert sorted(mongo_store.clear_all()) == ["/uploads/a.jpg", "/uploads/b.jpg"]
    assert mongo_store.list_users() == []

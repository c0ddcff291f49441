import pytest

from database import ASCENDING, DESCENDING, MemoryStore, transact_with_retry
from errors import ConflictError, NotFoundError, TransientStoreError


@pytest.fixture
def mem():
    store = MemoryStore()
    for i, (name, at) in enumerate([("a", "2024-01-01T08:00:00Z"), ("b", "2024-01-02T08:00:00Z"),
                                    ("c", "2024-01-03T08:00:00Z"), ("d", None)]):
        store.put("items", name, {"group": "x" if i < 3 else "y", "at": at, "rank": i % 2})
    return store


def ids(docs):
    return [d["id"] for d in docs]


def test_query_operators(mem):
    assert ids(mem.query("items", {"at": {"$gte": "2024-01-02T00:00:00Z", "$lt": "2024-01-03T08:00:00Z"}})) == ["b"]
    assert ids(mem.query("items", {"at": {"$gt": "2024-01-02T08:00:00Z"}})) == ["c"]
    assert sorted(ids(mem.query("items", {"group": {"$in": ["y"]}}))) == ["d"]
    assert sorted(ids(mem.query("items", {"group": {"$ne": "y"}}))) == ["a", "b", "c"]
    assert sorted(ids(mem.query("items", {"group": "x", "rank": 0}))) == ["a", "c"]


def test_unknown_operator(mem):
    with pytest.raises(ValueError):
        mem.query("items", {"at": {"$regex": "2024"}})


def test_ordering_and_limit(mem):
    assert ids(mem.query("items", order_by=[("at", ASCENDING)])) == ["d", "a", "b", "c"]
    assert ids(mem.query("items", {"group": "x"}, order_by=[("at", DESCENDING)], limit=2)) == ["c", "b"]
    assert ids(mem.query("items", order_by=[("rank", ASCENDING), ("at", DESCENDING)])) == ["c", "a", "b", "d"]


def test_documents_are_copies(mem):
    doc = mem.get("items", "a")
    doc["group"] = "changed"
    assert mem.get("items", "a")["group"] == "x"
    assert mem.get("items", "missing") is None


def test_transact_applies_writes_and_deletes(mem):
    def mutate(snapshot):
        a = snapshot[("items", "a")]
        return {("items", "a"): dict(a, rank=9), ("items", "b"): None, ("items", "new"): {"group": "z"}}, "done"

    assert mem.transact([("items", "a"), ("items", "b")], mutate) == "done"
    assert mem.get("items", "a")["rank"] == 9
    assert mem.get("items", "b") is None
    assert mem.get("items", "new") == {"group": "z", "id": "new"}
    assert "items" in mem.describe()["collections"]


def test_transact_aborts_when_mutator_raises(mem):
    def mutate(snapshot):
        raise NotFoundError("gone")

    with pytest.raises(NotFoundError):
        mem.transact([("items", "a")], mutate)
    assert mem.get("items", "a")["rank"] == 0


class FlakyStore(MemoryStore):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def transact(self, read_keys, mutator):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientStoreError("write conflict")
        return super().transact(read_keys, mutator)


def test_retry_recovers_from_transient_failures():
    store = FlakyStore(failures=2)
    value = transact_with_retry(store, [("items", "a")], lambda snap: ({("items", "a"): {"n": 1}}, "ok"), attempts=3)
    assert value == "ok"
    assert store.calls == 3
    assert store.get("items", "a")["n"] == 1


def test_retry_gives_up_with_conflict():
    store = FlakyStore(failures=5)
    with pytest.raises(ConflictError):
        transact_with_retry(store, [("items", "a")], lambda snap: ({}, None), attempts=3)
    assert store.calls == 3

"""
Keyed document store used by the reminder core.

Two backends share one interface: ``MongoStore`` talks to MongoDB through
pymongo when DATABASE_URL and DATABASE_NAME are configured, ``MemoryStore``
keeps documents in process memory otherwise (and in tests).
"""
import copy
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, OperationFailure

from config import Settings, get_settings
from errors import ConflictError, TransientStoreError

logger = logging.getLogger(__name__)

Key = Tuple[str, str]
Snapshot = Dict[Key, Optional[dict]]
Writes = Dict[Key, Optional[dict]]
Mutator = Callable[[Snapshot], Tuple[Writes, Any]]
OrderBy = Sequence[Tuple[str, int]]

ASCENDING = 1
DESCENDING = -1


class DocumentStore:
    """get / put / query / delete plus an all-or-nothing ``transact``.

    ``transact(read_keys, mutator)`` reads every key, hands the snapshot to the
    mutator and applies the writes it returns as one unit. The mutator returns
    ``(writes, value)``; a ``None`` document in ``writes`` deletes that key and
    ``value`` is passed back to the caller. Raising inside the mutator aborts
    without writing anything.
    """

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    def put(self, collection: str, doc_id: str, doc: dict) -> None:
        raise NotImplementedError

    def query(self, collection: str, filter_dict: Optional[dict] = None,
              order_by: Optional[OrderBy] = None, limit: Optional[int] = None) -> List[dict]:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> bool:
        raise NotImplementedError

    def transact(self, read_keys: Iterable[Key], mutator: Mutator) -> Any:
        raise NotImplementedError

    def describe(self) -> dict:
        raise NotImplementedError


def _compare(value, op: str, operand) -> bool:
    if op == "$in":
        return value in operand
    if op == "$ne":
        return value != operand
    if value is None:
        return False
    if op == "$gte":
        return value >= operand
    if op == "$gt":
        return value > operand
    if op == "$lte":
        return value <= operand
    if op == "$lt":
        return value < operand
    raise ValueError(f"Unsupported query operator: {op}")


def matches(doc: dict, filter_dict: Optional[dict]) -> bool:
    for field, cond in (filter_dict or {}).items():
        value = doc.get(field)
        if isinstance(cond, dict):
            if not all(_compare(value, op, operand) for op, operand in cond.items()):
                return False
        elif value != cond:
            return False
    return True


def _sort(docs: List[dict], order_by: OrderBy) -> List[dict]:
    # stable sorts applied last key first; missing values sort lowest, as in MongoDB
    for field, direction in reversed(list(order_by)):
        docs.sort(key=lambda d: (d.get(field) is not None, d.get(field)), reverse=direction == DESCENDING)
    return docs


class MemoryStore(DocumentStore):
    """Process-local store. One lock serializes writes and transactions."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, dict]:
        return self._collections.setdefault(name, {})

    def get(self, collection, doc_id):
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def put(self, collection, doc_id, doc):
        with self._lock:
            self._collection(collection)[doc_id] = copy.deepcopy(dict(doc, id=doc_id))

    def query(self, collection, filter_dict=None, order_by=None, limit=None):
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._collection(collection).values() if matches(d, filter_dict)]
        if order_by:
            docs = _sort(docs, order_by)
        if limit:
            docs = docs[:limit]
        return docs

    def delete(self, collection, doc_id):
        with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    def transact(self, read_keys, mutator):
        with self._lock:
            snapshot = {key: self.get(*key) for key in read_keys}
            writes, value = mutator(snapshot)
            for (collection, doc_id), doc in writes.items():
                if doc is None:
                    self.delete(collection, doc_id)
                else:
                    self.put(collection, doc_id, doc)
            return value

    def describe(self):
        with self._lock:
            names = sorted(self._collections)
        return {"backend": "memory", "name": "memory", "collections": names}


def _strip(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    doc_id = doc.pop("_id", None)
    doc.setdefault("id", doc_id)
    return doc


class MongoStore(DocumentStore):
    """pymongo-backed store. Transactions need a replica set or sharded cluster."""

    def __init__(self, database):
        self.db = database
        self.client = database.client

    @classmethod
    def connect(cls, url: str, name: str) -> "MongoStore":
        client = MongoClient(url, tz_aware=True)
        return cls(client[name])

    def get(self, collection, doc_id):
        return _strip(self.db[collection].find_one({"_id": doc_id}))

    def put(self, collection, doc_id, doc):
        self.db[collection].replace_one({"_id": doc_id}, dict(doc, _id=doc_id, id=doc_id), upsert=True)

    def query(self, collection, filter_dict=None, order_by=None, limit=None):
        cursor = self.db[collection].find(filter_dict or {})
        if order_by:
            cursor = cursor.sort(list(order_by))
        if limit:
            cursor = cursor.limit(limit)
        return [_strip(d) for d in cursor]

    def delete(self, collection, doc_id):
        return self.db[collection].delete_one({"_id": doc_id}).deleted_count > 0

    def transact(self, read_keys, mutator):
        try:
            with self.client.start_session() as session:
                with session.start_transaction():
                    snapshot = {
                        (c, i): _strip(self.db[c].find_one({"_id": i}, session=session))
                        for c, i in read_keys
                    }
                    writes, value = mutator(snapshot)
                    for (c, i), doc in writes.items():
                        if doc is None:
                            self.db[c].delete_one({"_id": i}, session=session)
                        else:
                            self.db[c].replace_one({"_id": i}, dict(doc, _id=i, id=i),
                                                   upsert=True, session=session)
        except ConnectionFailure as e:
            raise TransientStoreError(str(e)) from e
        except OperationFailure as e:
            if e.has_error_label("TransientTransactionError") or e.has_error_label("UnknownTransactionCommitResult"):
                raise TransientStoreError(str(e)) from e
            raise
        return value

    def describe(self):
        return {
            "backend": "mongodb",
            "name": self.db.name,
            "collections": self.db.list_collection_names()[:10],
        }


_store: Optional[DocumentStore] = None


def create_store(settings: Settings) -> DocumentStore:
    if settings.database_url and settings.database_name:
        logger.info("Using MongoDB database %s", settings.database_name)
        return MongoStore.connect(settings.database_url, settings.database_name)
    logger.warning("DATABASE_URL/DATABASE_NAME not set, using in-memory store")
    return MemoryStore()


def get_store() -> DocumentStore:
    global _store
    if _store is None:
        _store = create_store(get_settings())
    return _store


def transact_with_retry(store: DocumentStore, read_keys: Iterable[Key], mutator: Mutator, attempts: int = 3) -> Any:
    """Run ``store.transact``, retrying transient contention up to ``attempts`` times."""
    read_keys = list(read_keys)
    for attempt in range(1, attempts + 1):
        try:
            return store.transact(read_keys, mutator)
        except TransientStoreError as e:
            logger.warning("Transaction on %s failed (attempt %d/%d): %s", read_keys, attempt, attempts, e)
    raise ConflictError(f"Gave up on {read_keys} after {attempts} attempts")

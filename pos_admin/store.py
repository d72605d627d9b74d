"""
Path-addressable document store on top of MongoDB.

Paths look like ``collection``, ``collection/doc_id`` or
``collection/doc_id/field/sub_field``. Documents are keyed by string ids
generated on push, so the sales log and the catalog read back in creation
order.
"""
from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from . import config


logger = logging.getLogger(__name__)

_MISSING = object()
_client: Optional[MongoClient] = None


@dataclass(frozen=True)
class TransactionResult:
    committed: bool
    value: Any


def _split(path: str) -> Tuple[str, Optional[str], Optional[str]]:
    parts = [p for p in str(path or "").strip("/").split("/") if p]
    if not parts:
        raise ValueError("Path is required.")
    coll = parts[0]
    doc_id = parts[1] if len(parts) > 1 else None
    field = ".".join(parts[2:]) if len(parts) > 2 else None
    return coll, doc_id, field


def _dig(doc: Optional[Dict[str, Any]], field: str) -> Any:
    value: Any = doc
    for part in field.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    out.pop("_id", None)
    return out


def with_ids(rows: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"id": key, **value} for key, value in (rows or {}).items()]


class DocumentStore:
    def __init__(self, db: Database):
        self._db = db

    def collection(self, name: str):
        return self._db[name]

    # -------------------------------
    # Reads
    # -------------------------------
    def get(self, path: str) -> Any:
        coll_name, doc_id, field = _split(path)
        coll = self.collection(coll_name)
        if doc_id is None:
            return {str(row["_id"]): _strip_id(row) for row in coll.find({}).sort("_id", ASCENDING)}
        doc = coll.find_one({"_id": doc_id})
        if doc is None:
            return None
        if field is None:
            return _strip_id(doc)
        return _dig(doc, field)

    def query(
        self,
        path: str,
        order_by: str,
        equal_to: Any = _MISSING,
        start_at: Any = None,
        end_at: Any = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        coll_name, doc_id, _ = _split(path)
        if doc_id is not None:
            raise ValueError("Queries run against a collection path.")
        spec: Dict[str, Any] = {}
        if equal_to is not _MISSING:
            spec[order_by] = equal_to
        else:
            bounds = {}
            if start_at is not None:
                bounds["$gte"] = start_at
            if end_at is not None:
                bounds["$lte"] = end_at
            if bounds:
                spec[order_by] = bounds
        cursor = self.collection(coll_name).find(spec).sort([(order_by, ASCENDING), ("_id", ASCENDING)])
        if limit:
            cursor = cursor.limit(int(limit))
        return [{"id": str(row["_id"]), **_strip_id(row)} for row in cursor]

    def query_prefix(self, path: str, field: str, prefix: str, case_insensitive: bool = True) -> List[Dict[str, Any]]:
        coll_name, _, _ = _split(path)
        spec = {field: {"$regex": "^" + re.escape(prefix or ""), "$options": "i" if case_insensitive else ""}}
        cursor = self.collection(coll_name).find(spec).sort([(field, ASCENDING), ("_id", ASCENDING)])
        return [{"id": str(row["_id"]), **_strip_id(row)} for row in cursor]

    # -------------------------------
    # Writes
    # -------------------------------
    def push(self, path: str, value: Dict[str, Any]) -> str:
        coll_name, doc_id, _ = _split(path)
        if doc_id is not None:
            raise ValueError("Push targets a collection path.")
        key = str(ObjectId())
        self.collection(coll_name).insert_one({"_id": key, **dict(value)})
        return key

    def set(self, path: str, value: Any) -> None:
        coll_name, doc_id, field = _split(path)
        if doc_id is None:
            raise ValueError("Set targets a document or field path.")
        coll = self.collection(coll_name)
        if field is None:
            coll.replace_one({"_id": doc_id}, {"_id": doc_id, **dict(value)}, upsert=True)
        else:
            coll.update_one({"_id": doc_id}, {"$set": {field: value}}, upsert=True)

    def update(self, path: str, fields: Dict[str, Any]) -> bool:
        coll_name, doc_id, field = _split(path)
        if doc_id is None or field is not None:
            raise ValueError("Update targets a document path.")
        if not fields:
            return self.collection(coll_name).find_one({"_id": doc_id}) is not None
        res = self.collection(coll_name).update_one({"_id": doc_id}, {"$set": dict(fields)})
        return res.matched_count > 0

    def remove(self, path: str) -> bool:
        coll_name, doc_id, field = _split(path)
        if doc_id is None:
            raise ValueError("Remove targets a document or field path.")
        coll = self.collection(coll_name)
        if field is None:
            return coll.delete_one({"_id": doc_id}).deleted_count > 0
        return coll.update_one({"_id": doc_id}, {"$unset": {field: ""}}).matched_count > 0

    def transaction(
        self,
        path: str,
        update_fn: Callable[[Any], Any],
        max_retries: int = 25,
    ) -> TransactionResult:
        """
        Atomic read-modify-write of a single field.

        ``update_fn`` receives the persisted value (None when absent) and returns
        the new value, or None to abort. The write only lands if the field still
        holds the value that was read; otherwise the read is repeated.
        """
        coll_name, doc_id, field = _split(path)
        if doc_id is None or field is None:
            raise ValueError("Transactions run against a field path.")
        coll = self.collection(coll_name)
        current = None
        for _ in range(max(1, max_retries)):
            doc = coll.find_one({"_id": doc_id})
            current = _dig(doc, field)
            new_value = update_fn(current)
            if new_value is None:
                return TransactionResult(committed=False, value=current)
            try:
                row = coll.find_one_and_update(
                    {"_id": doc_id, field: current},
                    {"$set": {field: new_value}},
                    upsert=doc is None,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                # Someone created the document between our read and write.
                continue
            if row is not None:
                return TransactionResult(committed=True, value=_dig(row, field))
        logger.warning("Transaction on %s gave up after %s attempts", path, max_retries)
        return TransactionResult(committed=False, value=current)

    # -------------------------------
    # Subscriptions
    # -------------------------------
    def listen(
        self,
        path: str,
        callback: Callable[[Any], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        poll_interval: float = 0.5,
    ) -> "Listener":
        return Listener(self, path, callback, on_error=on_error, poll_interval=poll_interval).start()


class Listener:
    """
    Pushes the value at ``path`` to ``callback`` once on start and again after
    every change to the underlying collection. Call ``unsubscribe()`` (or the
    listener itself) to stop.
    """

    def __init__(self, store: DocumentStore, path: str, callback, on_error=None, poll_interval: float = 0.5):
        self._store = store
        self._path = path
        self._callback = callback
        self._on_error = on_error
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"listen:{path}", daemon=True)

    @property
    def active(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> "Listener":
        self._thread.start()
        return self

    def _deliver(self) -> None:
        self._callback(self._store.get(self._path))

    def _run(self) -> None:
        coll_name, doc_id, _ = _split(self._path)
        pipeline = [{"$match": {"documentKey._id": doc_id}}] if doc_id else None
        try:
            # Open the stream first so writes racing the initial read are still seen.
            with self._store.collection(coll_name).watch(pipeline) as stream:
                self._deliver()
                while not self._stop.is_set() and stream.alive:
                    change = stream.try_next()
                    if change is None:
                        self._stop.wait(self._poll_interval)
                        continue
                    self._deliver()
        except PyMongoError as exc:
            if self._stop.is_set():
                return
            logger.warning("Listener on %s stopped: %s", self._path, exc)
            if self._on_error:
                self._on_error(exc)

    def unsubscribe(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    __call__ = unsubscribe


def get_client() -> MongoClient:
    global _client
    if _client is None:
        uri = config.mongo_uri()
        if not uri:
            raise RuntimeError("MONGODB_URI is not configured.")
        _client = MongoClient(uri)
    return _client


def get_store() -> DocumentStore:
    return DocumentStore(get_client()[config.db_name()])

import copy
import re
from collections import deque
from types import SimpleNamespace

import pytest
from gridfs.errors import NoFile
from pymongo.errors import DuplicateKeyError, PyMongoError

from pos_admin.blob_store import BlobStore
from pos_admin.store import DocumentStore
from pos_admin.whatsapp import WhatsAppClient


# -------------------------------
# In-memory MongoDB
# -------------------------------
def _dig(doc, field):
    value = doc
    for part in field.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _assign(doc, field, value):
    parts = field.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _unset(doc, field):
    parts = field.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


def _matches(doc, spec):
    for field, cond in (spec or {}).items():
        value = _dig(doc, field)
        if isinstance(cond, dict) and any(str(k).startswith("$") for k in cond):
            if "$gte" in cond and (value is None or value < cond["$gte"]):
                return False
            if "$lte" in cond and (value is None or value > cond["$lte"]):
                return False
            if "$regex" in cond:
                flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
                if value is None or not re.search(cond["$regex"], str(value), flags):
                    return False
        elif value != cond:
            return False
    return True


def _apply(doc, update):
    for field, value in update.get("$set", {}).items():
        _assign(doc, field, copy.deepcopy(value))
    for field in update.get("$unset", {}):
        _unset(doc, field)


def _sort_key(field):
    def key(doc):
        value = _dig(doc, field)
        return (value is not None, value if value is not None else 0)
    return key


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows

    def sort(self, key_or_list, direction=None):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction or 1)]
        for field, order in reversed(keys):
            self._rows.sort(key=_sort_key(field), reverse=order == -1)
        return self

    def limit(self, n):
        self._rows = self._rows[:n]
        return self

    def __iter__(self):
        return iter(self._rows)


class FakeChangeStream:
    def __init__(self, coll):
        self._coll = coll
        self.events = deque()
        self.alive = True

    def __enter__(self):
        self._coll.streams.append(self)
        return self

    def __exit__(self, *exc):
        self.alive = False
        self._coll.streams.remove(self)
        return False

    def try_next(self):
        if self.events:
            return self.events.popleft()
        return None


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = {}
        self.indexes = []
        self.streams = []
        self.fail_on = set()

    def _check(self, op):
        if op in self.fail_on:
            raise PyMongoError(f"simulated {op} failure on {self.name}")

    def _emit(self, op, doc_id):
        for stream in list(self.streams):
            stream.events.append({"operationType": op, "documentKey": {"_id": doc_id}})

    def _first(self, spec):
        for doc in list(self.docs.values()):
            if _matches(doc, spec):
                return doc
        return None

    def _replace_applied(self, doc, update):
        # Swap in an updated copy so readers on other threads never see a half-applied write.
        doc = copy.deepcopy(doc)
        _apply(doc, update)
        self.docs[doc["_id"]] = doc
        return doc

    def create_index(self, keys, **kwargs):
        self._check("create_index")
        self.indexes.append(keys)
        return "_".join(f"{k}_{d}" for k, d in keys)

    def find(self, spec=None):
        self._check("find")
        return FakeCursor([copy.deepcopy(d) for d in list(self.docs.values()) if _matches(d, spec)])

    def find_one(self, spec=None):
        self._check("find_one")
        doc = self._first(spec)
        return copy.deepcopy(doc) if doc is not None else None

    def insert_one(self, doc):
        self._check("insert_one")
        doc = copy.deepcopy(doc)
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("duplicate _id")
        self.docs[doc["_id"]] = doc
        self._emit("insert", doc["_id"])
        return SimpleNamespace(inserted_id=doc["_id"])

    def replace_one(self, spec, doc, upsert=False):
        self._check("replace_one")
        found = self._first(spec)
        if found is None and not upsert:
            return SimpleNamespace(matched_count=0)
        doc = copy.deepcopy(doc)
        doc_id = found["_id"] if found is not None else doc.get("_id", spec.get("_id"))
        doc["_id"] = doc_id
        self.docs[doc_id] = doc
        self._emit("replace", doc_id)
        return SimpleNamespace(matched_count=1 if found is not None else 0)

    def update_one(self, spec, update, upsert=False):
        self._check("update_one")
        found = self._first(spec)
        if found is None:
            if not upsert:
                return SimpleNamespace(matched_count=0)
            found = self._replace_applied({"_id": spec["_id"]}, update)
            self._emit("insert", found["_id"])
            return SimpleNamespace(matched_count=0)
        found = self._replace_applied(found, update)
        self._emit("update", found["_id"])
        return SimpleNamespace(matched_count=1)

    def delete_one(self, spec):
        self._check("delete_one")
        found = self._first(spec)
        if found is None:
            return SimpleNamespace(deleted_count=0)
        del self.docs[found["_id"]]
        self._emit("delete", found["_id"])
        return SimpleNamespace(deleted_count=1)

    def find_one_and_update(self, spec, update, upsert=False, return_document=None):
        self._check("find_one_and_update")
        found = self._first(spec)
        if found is None:
            if not upsert:
                return None
            if spec["_id"] in self.docs:
                raise DuplicateKeyError("duplicate _id")
            found = {"_id": spec["_id"]}
        found = self._replace_applied(found, update)
        self._emit("update", found["_id"])
        return copy.deepcopy(found)

    def watch(self, pipeline=None):
        self._check("watch")
        return FakeChangeStream(self)


class FakeDatabase:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


# -------------------------------
# In-memory GridFS bucket
# -------------------------------
class FakeBucket:
    def __init__(self):
        self.files = {}
        self.fail = False

    def upload_from_stream(self, filename, source, metadata=None):
        if self.fail:
            raise PyMongoError("simulated upload failure")
        self.files[filename] = (bytes(source), dict(metadata or {}))
        return filename

    def open_download_stream_by_name(self, filename):
        if filename not in self.files:
            raise NoFile(f"no file named {filename}")
        data, metadata = self.files[filename]
        return SimpleNamespace(read=lambda: data, metadata=metadata)


# -------------------------------
# Recorded HTTP session
# -------------------------------
class FakeResponse:
    def __init__(self, status_code=200, data=None):
        self.status_code = status_code
        self._data = data

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._data is None:
            raise ValueError("No JSON body")
        return self._data


class FakeSession:
    def __init__(self):
        self.posts = []
        self.gets = []
        self.post_response = FakeResponse(200, {"success": True})
        self.get_responses = {}
        self.error = None

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.post_response

    def get(self, url, timeout=None):
        self.gets.append(url)
        if self.error is not None:
            raise self.error
        for suffix, res in self.get_responses.items():
            if url.endswith(suffix):
                return res
        return FakeResponse(404, {"message": "Not found"})


# -------------------------------
# Fixtures
# -------------------------------
@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("MONGODB_URI", "REPORT_TIMEZONE", "LETTERHEAD_SOURCE", "LOW_STOCK_THRESHOLD",
                 "WHATSAPP_TIMEOUT", "WHATSAPP_COUNTRY_CODE", "WHATSAPP_TOKEN_PATH"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def store(db):
    return DocumentStore(db)


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def blobs(bucket):
    return BlobStore(bucket, base_url="http://pos.test")


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def gateway(session):
    return WhatsAppClient(base_url="https://wa.test", country_code="91", timeout=5, session=session)


def seed_product(store, name, price, quantity, average_quantity=0):
    return store.push("products", {
        "name": name,
        "price": price,
        "quantity": quantity,
        "averageQuantity": average_quantity,
    })


@pytest.fixture
def seed(store):
    def _seed(name, price, quantity, average_quantity=0):
        return seed_product(store, name, price, quantity, average_quantity)
    return _seed

"""
Pytest Configuration and Shared Fixtures
"""
import copy
import itertools
import threading
from datetime import datetime, timezone

import pytest
import sys
import os

from google.api_core.exceptions import AlreadyExists, NotFound
from google.cloud.firestore_v1 import SERVER_TIMESTAMP

# Add functions directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


FIXED_NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


# ============================================================
# IN-MEMORY FIRESTORE
# ============================================================

def _compare(op, left, right):
    try:
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        if op == "in":
            return left in right
        if left is None:
            return False
        if op == ">=":
            return left >= right
        if op == ">":
            return left > right
        if op == "<=":
            return left <= right
        if op == "<":
            return left < right
    except TypeError:
        return False
    raise ValueError(f"Unsupported operator {op}")


class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocumentRef:
    def __init__(self, db, path):
        self._db = db
        self.path = path
        self.id = path.rsplit("/", 1)[-1]

    def get(self):
        return FakeSnapshot(self, self._db._read(self.path))

    def set(self, data, merge=False):
        self._db._write("set", self.path, data, merge)

    def create(self, data):
        self._db._write("create", self.path, data)

    def update(self, data):
        self._db._write("update", self.path, data)

    def delete(self):
        self._db._write("delete", self.path)

    def collection(self, name):
        return FakeCollection(self._db, f"{self.path}/{name}")


class FakeQuery:
    def __init__(self, db, path, filters=None, limit=None):
        self._db = db
        self._path = path
        self._filters = filters or []
        self._limit = limit

    def where(self, field, op, value):
        return FakeQuery(self._db, self._path, self._filters + [(field, op, value)], self._limit)

    def limit(self, count):
        return FakeQuery(self._db, self._path, self._filters, count)

    def get(self):
        self._db.queries.append((self._path, list(self._filters)))
        results = []
        for doc_id, data in self._db._children(self._path):
            if all(_compare(op, data.get(field), value) for field, op, value in self._filters):
                ref = FakeDocumentRef(self._db, f"{self._path}/{doc_id}")
                results.append(FakeSnapshot(ref, copy.deepcopy(data)))
                if self._limit is not None and len(results) >= self._limit:
                    break
        return results

    def stream(self):
        return iter(self.get())


class FakeCollection(FakeQuery):
    def document(self, doc_id=None):
        if doc_id is None:
            doc_id = self._db._auto_id()
        return FakeDocumentRef(self._db, f"{self._path}/{doc_id}")

    def add(self, data):
        ref = self.document()
        ref.set(data)
        return self._db.now, ref


class FakeBatch:
    def __init__(self, db):
        self._db = db
        self._ops = []

    def set(self, ref, data, merge=False):
        self._ops.append(("set", ref.path, data, merge))

    def update(self, ref, data):
        self._ops.append(("update", ref.path, data, False))

    def delete(self, ref):
        self._ops.append(("delete", ref.path, None, False))

    def __len__(self):
        return len(self._ops)

    def commit(self):
        self._db._commit_batch(self._ops)
        return []


class FakeFirestore:
    """
    Dict-backed stand-in for ``firestore.Client`` covering what the
    pilotage package calls: collection/document paths, subcollections,
    where/limit/get/stream, add, create, set(merge), update, delete and batches.

    SERVER_TIMESTAMP is stored as ``now``. ``fail_next_commits`` makes the
    next N batch commits raise.
    """

    def __init__(self, now=FIXED_NOW):
        self.now = now
        self.store = {}
        self.queries = []
        self.committed_batches = []
        self.write_count = 0
        self.fail_next_commits = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # -- public surface --

    def collection(self, name):
        return FakeCollection(self, name)

    def batch(self):
        return FakeBatch(self)

    # -- test helpers --

    def seed(self, collection, doc_id, data):
        self.store[f"{collection}/{doc_id}"] = copy.deepcopy(data)

    def doc(self, path):
        return copy.deepcopy(self.store.get(path))

    def docs(self, collection):
        return {doc_id: copy.deepcopy(data) for doc_id, data in self._children(collection)}

    # -- internals --

    def _auto_id(self):
        return f"auto{next(self._ids):05d}"

    def _children(self, path):
        depth = path.count("/") + 1
        prefix = path + "/"
        with self._lock:
            items = [
                (key[len(prefix):], data)
                for key, data in self.store.items()
                if key.startswith(prefix) and key.count("/") == depth
            ]
        return items

    def _read(self, path):
        with self._lock:
            data = self.store.get(path)
        return copy.deepcopy(data) if data is not None else None

    def _resolve(self, value):
        if value is SERVER_TIMESTAMP:
            return self.now
        if isinstance(value, dict):
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v) for v in value]
        return copy.deepcopy(value)

    def _apply(self, op, path, data=None, merge=False):
        if op == "delete":
            self.store.pop(path, None)
        elif op == "create":
            if path in self.store:
                raise AlreadyExists(f"Document already exists: {path}")
            self.store[path] = self._resolve(data)
        elif op == "update":
            if path not in self.store:
                raise NotFound(f"No document to update: {path}")
            self.store[path].update(self._resolve(data))
        elif merge and path in self.store:
            self.store[path].update(self._resolve(data))
        else:
            self.store[path] = self._resolve(data)
        self.write_count += 1

    def _write(self, op, path, data=None, merge=False):
        with self._lock:
            self._apply(op, path, data, merge)

    def _commit_batch(self, ops):
        with self._lock:
            if self.fail_next_commits > 0:
                self.fail_next_commits -= 1
                raise RuntimeError("simulated commit failure")
            for op, path, data, merge in ops:
                if op == "update" and path not in self.store:
                    raise NotFound(f"No document to update: {path}")
            for op, path, data, merge in ops:
                self._apply(op, path, data, merge)
            self.committed_batches.append(len(ops))


@pytest.fixture
def fake_db():
    """In-memory Firestore with a fixed clock"""
    return FakeFirestore()


@pytest.fixture
def now():
    return FIXED_NOW


# ============================================================
# SAMPLE RECORDS
# ============================================================

@pytest.fixture
def sample_charge():
    """Legacy charge as the old billing screen writes it"""
    return {
        "ship": "Atlantic Star",
        "typeTrip": "Inward",
        "boarding": datetime(2025, 6, 14, 10, 0, tzinfo=timezone.utc),
        "gt": 28500,
        "createdBy": "Paddy",
        "createdById": "uid-paddy",
        "updateTime": datetime(2025, 6, 14, 11, 0, tzinfo=timezone.utc),
    }


@pytest.fixture
def sample_ship():
    return {
        "shipName": "Atlantic Star",
        "shipName_lowercase": "atlantic star",
        "grossTonnage": 28500,
        "imoNumber": None,
        "marineTrafficLink": None,
        "shipNotes": None,
    }


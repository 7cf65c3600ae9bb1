"""
Shared fixtures: an in-memory document store with failure injection hooks.
"""

import copy

import pytest

from docsweep.core.errors import StoreReadError, StoreWriteError
from docsweep.core.schema import get_path


class FakeStore:
    """Dict-of-lists stand-in for MongoDocumentStore."""

    def __init__(self, collections=None):
        self.collections = {name: [dict(doc) for doc in docs] for name, docs in (collections or {}).items()}
        self.fail_scan = set()
        self.fail_delete_ids = set()
        self.fail_insert = False
        self.delete_calls = []
        self.scan_calls = []
        self.before_delete = None  # callable(store, doc_id) run before each delete

    def ids(self, collection, id_field="_id"):
        return [doc.get(id_field) for doc in self.collections.get(collection, [])]

    def scan(self, collection, fields=None):
        self.scan_calls.append(collection)
        if collection in self.fail_scan:
            raise StoreReadError(f"Scan of '{collection}' failed: injected", collection=collection)
        for doc in list(self.collections.get(collection, [])):
            yield copy.deepcopy(doc)

    def find_by_ids(self, collection, id_field, ids):
        wanted = set(ids)
        return [copy.deepcopy(doc) for doc in self.collections.get(collection, []) if get_path(doc, id_field) in wanted]

    def delete_by_id(self, collection, id_field, doc_id):
        if self.before_delete is not None:
            self.before_delete(self, doc_id)
        self.delete_calls.append((collection, doc_id))
        if doc_id in self.fail_delete_ids:
            raise StoreWriteError(f"Delete of {id_field}={doc_id!r} in '{collection}' failed: injected")
        docs = self.collections.get(collection, [])
        for index, doc in enumerate(docs):
            if get_path(doc, id_field) == doc_id:
                del docs[index]
                return 1
        return 0

    def insert(self, collection, document):
        if self.fail_insert:
            raise StoreWriteError(f"Insert into '{collection}' failed: injected")
        self.collections.setdefault(collection, []).append(dict(document))
        return len(self.collections[collection])


@pytest.fixture
def make_store():
    """Factory building a FakeStore from {collection: [documents]}."""
    return FakeStore


@pytest.fixture
def vendor_store():
    """Product-vendor links where one link points at a deleted vendor."""
    return FakeStore({
        "productvendors": [
            {"_id": "A", "vendorId": "V1"},
            {"_id": "B", "vendorId": "V99"},
            {"_id": "C", "vendorId": None},
            {"_id": "D"},
        ],
        "vendors": [
            {"_id": "v-1", "id": "V1"},
            {"_id": "v-2", "id": "V2"},
        ],
    })

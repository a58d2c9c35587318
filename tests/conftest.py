"""
Pytest configuration and shared fixtures for the course platform.

InMemoryStore implements the DocumentStore operations over plain dicts so the
services and routes run without a MongoDB server. It understands the query
operators the code uses: equality (element match on arrays), $in and $gt.
"""
import copy
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import create_access_token
from database import get_store, to_object_id
from errors import NotFoundError
from main import app


def _matches(doc, filter_dict):
    for key, cond in (filter_dict or {}).items():
        value = doc.get(key)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$in" and value not in arg:
                    return False
                if op == "$gt" and (value is None or not value > arg):
                    return False
        elif isinstance(value, list) and not isinstance(cond, list):
            # an equality on an array field matches any element, as in MongoDB
            if cond not in value:
                return False
        elif value != cond:
            return False
    return True


class InMemoryStore:
    def __init__(self):
        self.collections = {}

    def _docs(self, collection):
        return self.collections.setdefault(collection, [])

    def get(self, collection, doc_id):
        obj_id = to_object_id(doc_id)
        if obj_id is None:
            return None
        return self.find_one(collection, {"_id": obj_id})

    def find_one(self, collection, filter_dict):
        for doc in self._docs(collection):
            if _matches(doc, filter_dict):
                return copy.deepcopy(doc)
        return None

    def find(self, collection, filter_dict=None, skip=0, limit=0, sort=None):
        docs = [copy.deepcopy(d) for d in self._docs(collection) if _matches(d, filter_dict)]
        for key, direction in reversed(list(sort or [])):
            docs.sort(key=lambda d: (d.get(key) is not None, d.get(key) or 0), reverse=direction < 0)
        docs = docs[skip:]
        if limit:
            docs = docs[:limit]
        return docs

    def count(self, collection, filter_dict=None):
        return len([d for d in self._docs(collection) if _matches(d, filter_dict)])

    def insert(self, collection, document):
        doc = copy.deepcopy(document)
        doc.setdefault("_id", ObjectId())
        self._docs(collection).append(doc)
        return doc["_id"]

    def update_fields(self, collection, doc_id, fields):
        obj_id = to_object_id(doc_id)
        for doc in self._docs(collection):
            if obj_id is not None and doc["_id"] == obj_id:
                doc.update(copy.deepcopy(fields))
                return
        raise NotFoundError(f"No {collection} document with id {doc_id}")

    def update_many(self, collection, filter_dict, fields):
        modified = 0
        for doc in self._docs(collection):
            if _matches(doc, filter_dict):
                doc.update(copy.deepcopy(fields))
                modified += 1
        return modified

    def pull(self, collection, filter_dict, field, value):
        modified = 0
        for doc in self._docs(collection):
            if _matches(doc, filter_dict) and value in (doc.get(field) or []):
                doc[field] = [v for v in doc[field] if v != value]
                modified += 1
        return modified

    def upsert_fields(self, collection, filter_dict, fields, on_insert=None):
        for doc in self._docs(collection):
            if _matches(doc, filter_dict):
                doc.update(copy.deepcopy(fields))
                return
        # like MongoDB, equality conditions of the filter seed the new document
        doc = {k: v for k, v in filter_dict.items() if not isinstance(v, dict)}
        doc.update(copy.deepcopy(on_insert or {}))
        doc.update(copy.deepcopy(fields))
        self.insert(collection, doc)

    def delete(self, collection, doc_id):
        obj_id = to_object_id(doc_id)
        docs = self._docs(collection)
        for i, doc in enumerate(docs):
            if obj_id is not None and doc["_id"] == obj_id:
                del docs[i]
                return True
        return False


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def user_id():
    return ObjectId()


@pytest.fixture
def admin_id():
    return ObjectId()


@pytest.fixture
def user_headers(user_id):
    token = create_access_token(user_id, "student@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_id):
    token = create_access_token(admin_id, "admin@example.com", role="admin")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def active_subscription(store, user_id):
    """Give the regular test user an entitling subscription."""
    store.insert(
        "subscription",
        {
            "user_id": user_id,
            "status": "active",
            "plan": "month",
            "current_period_end": datetime.now(timezone.utc) + timedelta(days=30),
            "cancel_at_period_end": False,
            "auto_renew": True,
        },
    )

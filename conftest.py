"""
Shared pytest fixtures.

The API tests run against an in-memory stand-in for the motor database so no
MongoDB server is needed. `MONGO_URL` must be set before `server` is imported;
the motor client it builds never connects unless a query is sent.
"""
import copy
import os
from datetime import datetime, timezone

import pytest
from pymongo.errors import ServerSelectionTimeoutError

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ["SCHOOL_TIMEZONE"] = "UTC"

FIXED_NOW = datetime(2024, 11, 6, 10, 0)  # Wednesday of week 10, fortnight 5 (2024-2025)


def _matches(document, query):
    for key, condition in query.items():
        value = document.get(key)
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$gte" in condition and (value is None or value < condition["$gte"]):
                return False
        elif value != condition:
            return False
    return True


class FakeCursor:
    def __init__(self, documents):
        self._documents = documents

    def sort(self, key, direction=1):
        self._documents.sort(key=lambda d: str(d.get(key) or ""), reverse=direction == -1)
        return self

    async def to_list(self, length):
        return [copy.deepcopy(d) for d in self._documents[:length]]


class FakeCollection:
    def __init__(self):
        self.documents = []

    def find(self, query=None, projection=None):
        return FakeCursor([d for d in self.documents if _matches(d, query or {})])

    async def find_one(self, query, projection=None):
        for document in self.documents:
            if _matches(document, query):
                return copy.deepcopy(document)
        return None

    async def insert_one(self, document):
        self.documents.append(copy.deepcopy(document))

    async def insert_many(self, documents):
        self.documents.extend(copy.deepcopy(d) for d in documents)

    async def update_one(self, query, update):
        for document in self.documents:
            if _matches(document, query):
                document.update(update.get("$set", {}))
                return

    async def find_one_and_update(self, query, update, return_document=False):
        for document in self.documents:
            if _matches(document, query):
                document.update(update.get("$set", {}))
                return copy.deepcopy(document)
        return None

    async def delete_one(self, query):
        for index, document in enumerate(self.documents):
            if _matches(document, query):
                del self.documents[index]
                return

    async def count_documents(self, query):
        return len([d for d in self.documents if _matches(d, query)])

    async def create_index(self, keys):
        return "_".join(name for name, _ in keys)


class FakeDatabase:
    def __init__(self):
        self.profiles = FakeCollection()
        self.teachers = FakeCollection()
        self.observations = FakeCollection()
        self.follow_ups = FakeCollection()


class FailingCollection(FakeCollection):
    def find(self, query=None, projection=None):
        raise ServerSelectionTimeoutError("no servers available")

    async def find_one(self, query, projection=None):
        raise ServerSelectionTimeoutError("no servers available")


class FailingDatabase:
    def __init__(self):
        self.profiles = FailingCollection()
        self.teachers = FailingCollection()
        self.observations = FailingCollection()
        self.follow_ups = FailingCollection()


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def seeded_db(fake_db):
    """One school, one coordinator and the three-teacher compliance scenario."""
    fake_db.profiles.documents.extend([
        {"id": "coord-1", "full_name": "María González", "email": "maria@school.mx", "role": "coordinator", "school_id": "north"},
        {"id": "coord-2", "full_name": "Juan Pérez", "email": "juan@school.mx", "role": "coordinator", "school_id": "south"},
    ])
    fake_db.teachers.documents.extend([
        {"id": "t-1", "full_name": "Ana López", "school_id": "north", "coordinator_id": "coord-1", "tenure_status": "new", "is_active": True},
        {"id": "t-2", "full_name": "Carlos Ruiz", "school_id": "north", "coordinator_id": "coord-1", "tenure_status": "new", "is_active": True},
        {"id": "t-3", "full_name": "Elena Torres", "school_id": "north", "coordinator_id": "coord-1", "tenure_status": "tenured", "is_active": True},
        {"id": "t-4", "full_name": "Luis Vega", "school_id": "south", "coordinator_id": "coord-2", "tenure_status": "tenured", "is_active": True},
        {"id": "t-5", "full_name": "Sofía Mora", "school_id": "north", "coordinator_id": None, "tenure_status": "new", "is_active": True},
    ])
    fake_db.observations.documents.extend([
        {"id": "o-1", "teacher_id": "t-1", "observer_id": "coord-1", "created_at": "2024-11-05T10:00:00+00:00", "template_data": {"1a": 4, "2a": 3}, "score": 3.5},
        {"id": "o-2", "teacher_id": "t-2", "observer_id": "coord-1", "created_at": "2024-10-30T09:00:00+00:00", "template_data": {"1a": 2}, "score": 2.0},
        {"id": "o-3", "teacher_id": "t-3", "observer_id": "coord-1", "created_at": "2024-10-29T12:00:00+00:00", "template_data": {"3a": {"score": 3}}, "score": 3.0},
    ])
    return fake_db


def _client_for(db):
    from fastapi.testclient import TestClient

    import server
    from store import ObservationStore

    server.app.dependency_overrides[server.get_store] = lambda: ObservationStore(db, tz=timezone.utc)
    server.app.dependency_overrides[server.get_now] = lambda: FIXED_NOW
    return TestClient(server.app)


@pytest.fixture
def api_client(seeded_db):
    import server

    yield _client_for(seeded_db)
    server.app.dependency_overrides.clear()


@pytest.fixture
def empty_api_client(fake_db):
    import server

    yield _client_for(fake_db)
    server.app.dependency_overrides.clear()


@pytest.fixture
def failing_api_client():
    import server

    yield _client_for(FailingDatabase())
    server.app.dependency_overrides.clear()

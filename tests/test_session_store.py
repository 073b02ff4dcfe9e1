# tests/test_session_store.py

import json

import pytest

from fairlens.exceptions import StorageQuotaExceeded
from fairlens.models import AnalysisState, CustomerKind, ManualFields, RunStatus
from fairlens.session_store import InMemoryBackend, MongoBackend, SessionStateStore, StreamlitBackend


class FakeCollection:
    """Just enough of a pymongo collection for the session backend."""

    def __init__(self):
        self.docs = {}

    def find_one(self, query):
        return self.docs.get(query["session_key"])

    def update_one(self, query, update, upsert=False):
        doc = self.docs.setdefault(query["session_key"], {"session_key": query["session_key"]})
        doc.update(update["$set"])

    def delete_one(self, query):
        self.docs.pop(query["session_key"], None)


def is_default(state):
    volatile = {"run": {"last_active"}}
    return state.model_dump(exclude=volatile) == AnalysisState().model_dump(exclude=volatile)


class BrokenBackend:
    def read(self, key):
        raise ConnectionError("backend offline")

    def write(self, key, payload):
        raise ConnectionError("backend offline")

    def delete(self, key):
        raise ConnectionError("backend offline")


def test_save_and_load_round_trip(store):
    state = AnalysisState(manual_fields=ManualFields(name="Jane Doe", customer_type=CustomerKind.SME))

    assert store.save(state) is True
    assert store.load() == state


def test_in_memory_backend_enforces_quota():
    backend = InMemoryBackend(max_bytes=5)

    with pytest.raises(StorageQuotaExceeded):
        backend.write("key", "too large")


def test_save_swallows_quota_errors():
    store = SessionStateStore(InMemoryBackend(max_bytes=5))

    assert store.save(AnalysisState()) is False
    assert is_default(store.load())


def test_broken_backend_never_raises():
    store = SessionStateStore(BrokenBackend())

    assert store.save(AnalysisState()) is False
    assert is_default(store.load())
    store.clear()


def test_missing_snapshot_loads_defaults(store):
    state = store.load()

    assert state.run.status == RunStatus.IDLE
    assert state.evaluations == []


def test_unreadable_snapshot_loads_defaults(store, backend):
    backend.data["test_session"] = "{not json"

    assert is_default(store.load())


def test_missing_fields_fall_back_to_defaults(store, backend):
    backend.data["test_session"] = json.dumps({"manual_fields": {"name": "Jane Doe"}})

    state = store.load()

    assert state.manual_fields.name == "Jane Doe"
    assert state.documents == []
    assert state.run.status == RunStatus.IDLE


def test_invalid_fields_are_dropped(store, backend):
    backend.data["test_session"] = json.dumps({
        "manual_fields": {"name": "Jane Doe", "citizenship": "UAE"},
        "evaluations": [{"productId": 7}],
        "run": {"status": "exploded"},
    })

    state = store.load()

    assert state.manual_fields.citizenship == "UAE"
    assert state.evaluations == []
    assert state.run.status == RunStatus.IDLE


def test_clear_removes_snapshot(store, backend):
    store.save(AnalysisState())

    store.clear()

    assert "test_session" not in backend.data


def test_streamlit_backend_uses_session_state_mapping():
    session_state = {}
    store = SessionStateStore(StreamlitBackend(session_state), key="fairlens")

    store.save(AnalysisState(manual_fields=ManualFields(name="Jane Doe")))

    assert "fairlens" in session_state
    assert store.load().manual_fields.name == "Jane Doe"
    store.clear()
    assert session_state == {}


def test_mongo_backend_upserts_by_session_key():
    collection = FakeCollection()
    store = SessionStateStore(MongoBackend(collection), key="session-1")

    store.save(AnalysisState(manual_fields=ManualFields(name="First")))
    store.save(AnalysisState(manual_fields=ManualFields(name="Second")))

    assert list(collection.docs) == ["session-1"]
    assert "updated_at" in collection.docs["session-1"]
    assert store.load().manual_fields.name == "Second"


def test_mongo_backend_without_connection_degrades(monkeypatch):
    monkeypatch.setattr("fairlens.database.get_sessions_collection", lambda: None)
    store = SessionStateStore(MongoBackend())

    assert store.save(AnalysisState()) is False
    assert is_default(store.load())

"""
Session state persistence.
Keeps the orchestrator's observable state across restarts of the presentation
layer. Writes are best-effort: a failing backend is logged, never raised.
"""

import json
import logging
from datetime import datetime
from typing import Dict, MutableMapping, Optional, Protocol

from pydantic import ValidationError

from fairlens import config
from fairlens.exceptions import StorageQuotaExceeded
from fairlens.models import AnalysisState

logger = logging.getLogger(__name__)


class SessionBackend(Protocol):
    def read(self, key: str) -> Optional[str]:
        ...

    def write(self, key: str, payload: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


# ======================
# Backends
# ======================

class InMemoryBackend:
    """Dictionary backend for tests and scripts, with an optional size quota."""

    def __init__(self, max_bytes: Optional[int] = None):
        self.max_bytes = max_bytes
        self.data: Dict[str, str] = {}

    def read(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def write(self, key: str, payload: str) -> None:
        size = len(payload.encode("utf-8"))
        if self.max_bytes is not None and size > self.max_bytes:
            raise StorageQuotaExceeded(f"Snapshot of {size} bytes exceeds quota of {self.max_bytes}")
        self.data[key] = payload

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class StreamlitBackend:
    """Stores the snapshot in Streamlit's per-browser-session state."""

    def __init__(self, state: Optional[MutableMapping] = None):
        if state is None:
            import streamlit as st
            state = st.session_state
        self.state = state

    def read(self, key: str) -> Optional[str]:
        return self.state.get(key)

    def write(self, key: str, payload: str) -> None:
        self.state[key] = payload

    def delete(self, key: str) -> None:
        if key in self.state:
            del self.state[key]


class MongoBackend:
    """Durable backend on the MongoDB sessions collection."""

    def __init__(self, collection=None):
        if collection is None:
            from fairlens.database import get_sessions_collection
            collection = get_sessions_collection()
        self.collection = collection

    def read(self, key: str) -> Optional[str]:
        if self.collection is None:
            return None
        doc = self.collection.find_one({"session_key": key})
        return doc.get("payload") if doc else None

    def write(self, key: str, payload: str) -> None:
        if self.collection is None:
            raise ConnectionError("MongoDB connection not available for session storage.")
        self.collection.update_one(
            {"session_key": key},
            {"$set": {"payload": payload, "updated_at": datetime.now()}},
            upsert=True,
        )

    def delete(self, key: str) -> None:
        if self.collection is not None:
            self.collection.delete_one({"session_key": key})


# ======================
# Store
# ======================

class SessionStateStore:
    """Write-through, best-effort persistence of AnalysisState snapshots.

    Attributes:
        backend: Where snapshots go (in-memory, Streamlit, MongoDB)
        key: Storage key of this session's snapshot
    """

    def __init__(self, backend: SessionBackend, key: Optional[str] = None):
        self.backend = backend
        self.key = key or config.SESSION_STORAGE_KEY

    def save(self, state: AnalysisState) -> bool:
        """Persist a snapshot. Returns False (and logs) when the write failed."""
        try:
            self.backend.write(self.key, state.model_dump_json())
        except Exception as exc:
            logger.warning("Session snapshot not saved (%s): %s", type(exc).__name__, exc)
            return False
        return True

    def load(self) -> AnalysisState:
        """Hydrate the last snapshot. Anything unreadable falls back to defaults."""
        try:
            payload = self.backend.read(self.key)
        except Exception as exc:
            logger.warning("Failed to read session snapshot: %s", exc)
            return AnalysisState()
        if not payload:
            return AnalysisState()

        try:
            return AnalysisState.model_validate_json(payload)
        except ValidationError:
            pass

        try:
            raw = json.loads(payload)
        except ValueError as exc:
            logger.warning("Discarding unreadable session snapshot: %s", exc)
            return AnalysisState()
        if not isinstance(raw, dict):
            return AnalysisState()
        return _salvage(raw)

    def clear(self) -> None:
        try:
            self.backend.delete(self.key)
        except Exception as exc:
            logger.warning("Failed to clear session snapshot: %s", exc)


def _salvage(raw: dict) -> AnalysisState:
    """Keep the top-level fields that still validate, reset the rest to defaults."""
    kept = {}
    for field_name in AnalysisState.model_fields:
        if field_name not in raw:
            continue
        try:
            AnalysisState.model_validate({field_name: raw[field_name]})
        except ValidationError:
            logger.warning("Dropping invalid session field %r", field_name)
            continue
        kept[field_name] = raw[field_name]
    return AnalysisState.model_validate(kept)

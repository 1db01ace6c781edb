from __future__ import annotations

import json
import os
from pathlib import Path
from threading import RLock
from typing import Dict, Optional, Protocol

from pydantic import ValidationError

from ..config import data_dir
from ..domain.errors import PersistenceError, SessionNotFound
from ..domain.models import Session


class SessionStore(Protocol):
    def save(self, session: Session) -> None: ...

    def load(self, session_id: str, owner_id: str) -> Session: ...

    def delete(self, session_id: str, owner_id: str) -> bool: ...


class InMemorySessionStore:
    """Snapshots keyed by session id; a foreign owner sees nothing."""

    def __init__(self) -> None:
        self._snapshots: Dict[str, str] = {}
        self._lock = RLock()

    def save(self, session: Session) -> None:
        with self._lock:
            self._snapshots[session.session_id] = session.model_dump_json()

    def load(self, session_id: str, owner_id: str) -> Session:
        with self._lock:
            raw = self._snapshots.get(session_id)
        if raw is None:
            raise SessionNotFound(session_id)
        session = Session.model_validate_json(raw)
        if session.owner_id != owner_id:
            raise SessionNotFound(session_id)
        return session

    def delete(self, session_id: str, owner_id: str) -> bool:
        with self._lock:
            raw = self._snapshots.get(session_id)
            if raw is None or Session.model_validate_json(raw).owner_id != owner_id:
                return False
            del self._snapshots[session_id]
            return True


class FileSessionStore:
    """One JSON file per session under ``<data dir>/sessions``."""

    def __init__(self, directory: Optional[str] = None) -> None:
        self._dir = Path(directory or os.path.join(data_dir(), "sessions"))
        self._lock = RLock()

    def _path(self, session_id: str) -> Path:
        safe = "".join(ch for ch in session_id if ch.isalnum() or ch in "-_")
        if not safe:
            raise SessionNotFound(session_id)
        return self._dir / f"{safe}.json"

    def save(self, session: Session) -> None:
        path = self._path(session.session_id)
        with self._lock:
            try:
                self._dir.mkdir(parents=True, exist_ok=True)
                tmp = path.with_suffix(".tmp")
                tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
                tmp.replace(path)
            except OSError as exc:
                raise PersistenceError(f"session {session.session_id} could not be saved: {exc}") from exc

    def load(self, session_id: str, owner_id: str) -> Session:
        path = self._path(session_id)
        with self._lock:
            if not path.exists():
                raise SessionNotFound(session_id)
            try:
                session = Session.model_validate(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, ValidationError) as exc:
                raise PersistenceError(f"session {session_id} could not be read: {exc}") from exc
        if session.owner_id != owner_id:
            raise SessionNotFound(session_id)
        return session

    def delete(self, session_id: str, owner_id: str) -> bool:
        try:
            self.load(session_id, owner_id)
        except SessionNotFound:
            return False
        path = self._path(session_id)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise PersistenceError(f"session {session_id} could not be deleted: {exc}") from exc
        return True


_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("QAPILOT_SESSION_STORE_IMPL", "memory").lower()
    _store = FileSessionStore() if impl == "file" else InMemorySessionStore()
    return _store


def reset_session_store() -> None:
    global _store
    _store = None

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import ValidationError

from ..config import EngineConfig, data_dir
from ..domain.errors import PersistenceError
from ..domain.models import HistoryEntry, WorkflowKind

logger = logging.getLogger("qapilot.history")


class HistoryStore(Protocol):
    def append(
        self, owner_id: str, kind: WorkflowKind, title: str, summary: str, metadata: Optional[Dict[str, Any]] = None
    ) -> HistoryEntry: ...

    def list(self, owner_id: str, kind: Optional[WorkflowKind] = None) -> List[HistoryEntry]: ...

    def delete(self, owner_id: str, entry_id: str) -> bool: ...

    def clear(self, owner_id: str, kind: Optional[WorkflowKind] = None) -> int: ...


class InMemoryHistoryStore:
    """Append-only history of completed artifacts, newest first per owner.

    Holds at most ``limit`` entries per owner; appending past the cap evicts
    the oldest entry. Entries are never updated in place.
    """

    def __init__(self, limit: int = 50, now: Optional[Callable[[], datetime]] = None) -> None:
        if limit <= 0:
            raise ValueError("history limit must be positive")
        self.limit = limit
        self._now = now or (lambda: datetime.now(UTC))
        self._entries: Dict[str, List[HistoryEntry]] = {}
        self._lock = RLock()

    def _persist(self) -> None:
        """Hook for durable subclasses."""

    def append(
        self, owner_id: str, kind: WorkflowKind, title: str, summary: str, metadata: Optional[Dict[str, Any]] = None
    ) -> HistoryEntry:
        entry = HistoryEntry(
            entry_id=uuid.uuid4().hex,
            kind=kind,
            title=title,
            summary=summary,
            created_at=self._now(),
            metadata=dict(metadata or {}),
        )
        with self._lock:
            entries = [entry] + self._entries.get(owner_id, [])
            evicted = entries[self.limit:]
            self._entries[owner_id] = entries[: self.limit]
            if evicted:
                logger.debug("history_evicted", extra={"owner_id": owner_id, "count": len(evicted)})
            self._persist()
        return entry

    def list(self, owner_id: str, kind: Optional[WorkflowKind] = None) -> List[HistoryEntry]:
        with self._lock:
            entries = list(self._entries.get(owner_id, []))
        if kind is not None:
            entries = [e for e in entries if e.kind == kind]
        return entries

    def delete(self, owner_id: str, entry_id: str) -> bool:
        with self._lock:
            entries = self._entries.get(owner_id, [])
            kept = [e for e in entries if e.entry_id != entry_id]
            if len(kept) == len(entries):
                return False
            self._entries[owner_id] = kept
            self._persist()
            return True

    def clear(self, owner_id: str, kind: Optional[WorkflowKind] = None) -> int:
        with self._lock:
            entries = self._entries.get(owner_id, [])
            kept = [] if kind is None else [e for e in entries if e.kind != kind]
            removed = len(entries) - len(kept)
            if removed:
                self._entries[owner_id] = kept
                self._persist()
            return removed


class FileHistoryStore(InMemoryHistoryStore):
    """JSON file-backed history: one object mapping owner id -> entry list."""

    def __init__(self, file_path: Optional[str] = None, limit: int = 50, now: Optional[Callable[[], datetime]] = None) -> None:
        super().__init__(limit=limit, now=now)
        self._path = Path(file_path or os.path.join(data_dir(), "history.json"))
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            self._entries = {
                owner: [HistoryEntry.model_validate(e) for e in entries][: self.limit]
                for owner, entries in (raw or {}).items()
            }
        except (OSError, ValueError, ValidationError) as exc:
            raise PersistenceError(f"history file {self._path} is unreadable: {exc}") from exc

    def _persist(self) -> None:
        obj = {owner: [e.model_dump(mode="json") for e in entries] for owner, entries in self._entries.items()}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(".tmp")
            tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as exc:
            raise PersistenceError(f"history file {self._path} could not be written: {exc}") from exc


_store: HistoryStore | None = None


def get_history_store() -> HistoryStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("QAPILOT_HISTORY_STORE_IMPL", "memory").lower()
    limit = EngineConfig.from_env().history_limit
    if impl == "file":
        _store = FileHistoryStore(limit=limit)
    else:
        _store = InMemoryHistoryStore(limit=limit)
    return _store


def reset_history_store() -> None:
    global _store
    _store = None

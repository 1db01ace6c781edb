# --- qapilot-stream ---
from __future__ import annotations

import logging
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional

from ..domain.errors import ConcurrentStreamError

logger = logging.getLogger("qapilot.stream")

Subscriber = Callable[[str], None]


class StreamAssembler:
    """Append-only text buffer for one in-flight response.

    Every accepted fragment publishes the cumulative text to subscribers.
    ``cancel`` keeps what was already received, marks the buffer aborted and
    stops further growth and publications.
    """

    def __init__(self, session_id: str, subscribers: Optional[Iterable[Subscriber]] = None) -> None:
        self.session_id = session_id
        self._lock = RLock()
        self._parts: List[str] = []
        self._subscribers: List[Subscriber] = list(subscribers or [])
        self._on_cancel: List[Callable[[], None]] = []
        self.aborted = False
        self.finished = False

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(self._parts)

    @property
    def active(self) -> bool:
        return not (self.aborted or self.finished)

    def subscribe(self, fn: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(fn)

    def add_cancel_hook(self, fn: Callable[[], None]) -> None:
        """Run ``fn`` when the buffer is cancelled, e.g. to close the connection."""
        with self._lock:
            self._on_cancel.append(fn)

    def feed(self, fragment: str) -> bool:
        """Append ``fragment``; returns False once the buffer is closed."""
        with self._lock:
            if not self.active:
                return False
            if not fragment:
                return True
            self._parts.append(fragment)
            snapshot = "".join(self._parts)
            subscribers = list(self._subscribers)
        for fn in subscribers:
            fn(snapshot)
        return True

    def cancel(self) -> str:
        hooks: List[Callable[[], None]] = []
        with self._lock:
            if self.active:
                self.aborted = True
                hooks = list(self._on_cancel)
                logger.info("stream_aborted", extra={"session_id": self.session_id, "chars": sum(map(len, self._parts))})
            text = "".join(self._parts)
        for fn in hooks:
            fn()
        return text

    def finish(self) -> str:
        with self._lock:
            if self.active:
                self.finished = True
            return "".join(self._parts)


class StreamRegistry:
    """At most one active assembler per session."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._active: Dict[str, StreamAssembler] = {}

    def start(self, session_id: str, subscribers: Optional[Iterable[Subscriber]] = None) -> StreamAssembler:
        with self._lock:
            current = self._active.get(session_id)
            if current is not None and current.active:
                raise ConcurrentStreamError(f"stream already active for session {session_id}")
            assembler = StreamAssembler(session_id, subscribers)
            self._active[session_id] = assembler
            return assembler

    def get(self, session_id: str) -> Optional[StreamAssembler]:
        with self._lock:
            return self._active.get(session_id)

    def cancel(self, session_id: str) -> bool:
        with self._lock:
            assembler = self._active.get(session_id)
        if assembler is None or not assembler.active:
            return False
        assembler.cancel()
        return True

    def release(self, session_id: str, assembler: StreamAssembler) -> None:
        with self._lock:
            if self._active.get(session_id) is assembler:
                del self._active[session_id]

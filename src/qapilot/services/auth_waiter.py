from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Callable, Optional, Protocol

logger = logging.getLogger("qapilot.auth")

CONNECTED = "connected"
TIMEOUT = "timeout"
FAILED = "failed"


@dataclass(frozen=True)
class AuthOutcome:
    session_id: str
    status: str
    detail: Optional[str] = None


class OutcomeSink(Protocol):
    def put(self, item: AuthOutcome) -> None: ...


class AuthWaiter:
    """Waits for an external authorization popup to finish.

    ``check`` is polled every ``interval`` seconds until it returns True or
    ``timeout`` elapses. Exactly one ``AuthOutcome`` is put on ``sink``
    (connected, timeout, or failed when ``check`` raises). Any object with
    ``put`` works as the sink, a ``queue.Queue`` included. ``cancel`` stops
    the wait without emitting anything.
    """

    def __init__(
        self,
        session_id: str,
        check: Callable[[], bool],
        sink: OutcomeSink,
        interval: float = 1.0,
        timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        self.session_id = session_id
        self._check = check
        self._sink = sink
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._stop = Event()
        self._emit_lock = Lock()
        self._emitted = False
        self._thread: Optional[Thread] = None

    @property
    def done(self) -> bool:
        return self._emitted or self._stop.is_set()

    def start(self) -> "AuthWaiter":
        if self._thread is not None:
            raise RuntimeError("auth waiter already started")
        self._thread = Thread(target=self._run, name=f"auth-wait-{self.session_id}", daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        with self._emit_lock:
            self._stop.set()
        logger.debug("auth_wait_cancelled", extra={"session_id": self.session_id})

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _emit(self, status: str, detail: Optional[str] = None) -> None:
        with self._emit_lock:
            if self._emitted or self._stop.is_set():
                return
            self._emitted = True
            self._stop.set()
        logger.info("auth_wait_finished", extra={"session_id": self.session_id, "status": status})
        self._sink.put(AuthOutcome(self.session_id, status, detail))

    def _run(self) -> None:
        deadline = self._clock() + self.timeout
        while not self._stop.wait(self.interval):
            try:
                ready = self._check()
            except Exception as exc:
                logger.exception("auth_check_failed", extra={"session_id": self.session_id})
                self._emit(FAILED, str(exc))
                return
            if ready:
                self._emit(CONNECTED)
                return
            if self._clock() >= deadline:
                self._emit(TIMEOUT)
                return

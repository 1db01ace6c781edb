"""Executes engine commands and feeds their outcomes back as events.

The runner is the only place where workflow side effects happen: completion
calls, stream assembly, duplicate lookups, ticket submission, history
appends and snapshot saves. Each session is driven by one writer at a time
under its own lock.
"""

from __future__ import annotations

import logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock, RLock
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Set

from ..config import EngineConfig
from ..core.engine import WorkflowEngine
from ..core.events import (
    CancelStream,
    CheckDuplicates,
    Command,
    Event,
    EventType,
    NoOp,
    RecordHistory,
    RequestCompletion,
    SubmitArtifact,
)
from ..domain.errors import Malformed, PersistenceError, SubmissionFailed, TransportError, ValidationFailed, WorkflowError
from ..domain.models import HistoryEntry, Identity, Session, WorkflowKind
from ..infrastructure.history_store import HistoryStore, get_history_store
from ..infrastructure.session_store import SessionStore, get_session_store
from ..infrastructure.ticket_gateway import TicketGateway, get_ticket_gateway
from ..observability.metrics import record_transition, record_transport_failure
from ..security.auth import require_identity
from .auth_waiter import AuthOutcome, AuthWaiter
from .completion_transport import BUFFERED, STREAMING, CompletionTransport
from .duplicate_detector import DuplicateDetector
from .streaming import StreamAssembler, StreamRegistry

logger = logging.getLogger("qapilot.runner")

Subscriber = Callable[[str], None]

# Events a client may post; the rest are produced by the runner itself.
USER_EVENTS = frozenset(
    {
        EventType.START,
        EventType.USER_TEXT,
        EventType.OPTION_SELECTED,
        EventType.CONTEXT_ATTACHED,
        EventType.EDIT,
        EventType.RETRY,
        EventType.CANCEL,
        EventType.QUOTA_RESTORED,
    }
)


@dataclass
class AdvanceOutcome:
    session: Session
    commands: List[Command] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)


@dataclass
class _SessionLock:
    lock: RLock = field(default_factory=RLock)
    users: int = 0


class _AuthSink:
    """Feeds a finished authorization wait back into its session."""

    def __init__(self, runner: "WorkflowRunner", owner_id: str) -> None:
        self._runner = runner
        self._owner_id = owner_id

    def put(self, item: AuthOutcome) -> None:
        self._runner._apply_auth_outcome(self._owner_id, item)


class WorkflowRunner:
    def __init__(
        self,
        engine: Optional[WorkflowEngine] = None,
        transport: Optional[CompletionTransport] = None,
        sessions: Optional[SessionStore] = None,
        history: Optional[HistoryStore] = None,
        tickets: Optional[TicketGateway] = None,
        detector: Optional[DuplicateDetector] = None,
        streams: Optional[StreamRegistry] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = config or (engine.config if engine is not None else EngineConfig.from_env())
        self.engine = engine or WorkflowEngine(self.config)
        self.transport = transport or CompletionTransport()
        self.sessions = sessions or get_session_store()
        self.history = history or get_history_store()
        self.tickets = tickets or get_ticket_gateway()
        self.detector = detector or self.engine.detector
        self.streams = streams or StreamRegistry()
        self._locks: Dict[str, _SessionLock] = {}
        self._locks_guard = Lock()
        self._waiters: Dict[str, AuthWaiter] = {}
        self._authorized: Set[str] = set()
        self._auth_guard = Lock()
        # sessions whose latest snapshot could not be saved
        self._live: Dict[str, Session] = {}

    # ---- public API ---------------------------------------------------------

    def start(self, identity: Optional[Identity], kind: WorkflowKind) -> AdvanceOutcome:
        identity = require_identity(identity)
        session = self.engine.new_session(kind, identity.user_id)
        logger.info("session_created", extra={"session_id": session.session_id, "kind": session.kind.value})
        with self._session_lock(session.session_id):
            return self._drive(session, [Event(EventType.START, identity.user_id)], None)

    def get(self, identity: Optional[Identity], session_id: str) -> Session:
        identity = require_identity(identity)
        with self._session_lock(session_id):
            session = self._load(session_id, identity.user_id)
            if self._interrupted(session):
                session = self._drive(session, [Event(EventType.INTERRUPTED, identity.user_id)], None).session
            return session

    def handle(
        self,
        identity: Optional[Identity],
        session_id: str,
        event_type: EventType,
        text: Optional[str] = None,
        option: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        on_fragment: Optional[Subscriber] = None,
    ) -> AdvanceOutcome:
        identity = require_identity(identity)
        if event_type not in USER_EVENTS:
            raise ValidationFailed(f"{event_type.value} cannot be posted by a client")
        if event_type == EventType.CANCEL:
            # abort a running generation before waiting for the session lock
            self._cancel_if_owner(session_id, identity.user_id)
        event = Event(event_type, identity.user_id, text=text, option=option, payload=dict(payload or {}))
        with self._session_lock(session_id):
            session = self._load(session_id, identity.user_id)
            events = [event]
            if self._interrupted(session):
                events.insert(0, Event(EventType.INTERRUPTED, identity.user_id))
            return self._drive(session, events, on_fragment)

    def cancel_stream(self, identity: Optional[Identity], session_id: str) -> bool:
        """Abort the running generation of a session; the partial text is kept."""
        identity = require_identity(identity)
        return self._cancel_if_owner(session_id, identity.user_id)

    def list_history(self, identity: Optional[Identity], kind: Optional[WorkflowKind] = None) -> List[HistoryEntry]:
        identity = require_identity(identity)
        return self.history.list(identity.user_id, kind)

    def delete_history(self, identity: Optional[Identity], entry_id: str) -> bool:
        identity = require_identity(identity)
        return self.history.delete(identity.user_id, entry_id)

    def clear_history(self, identity: Optional[Identity], kind: Optional[WorkflowKind] = None) -> int:
        identity = require_identity(identity)
        return self.history.clear(identity.user_id, kind)

    # ---- external authorization ---------------------------------------------

    def begin_authorization(
        self,
        identity: Optional[Identity],
        session_id: str,
        interval: float = 1.0,
        timeout: float = 300.0,
    ) -> AuthWaiter:
        """Wait in the background for the authorization popup of a session.

        The outcome arrives as an ``auth_resolved`` event once
        :meth:`complete_authorization` is called, or when ``timeout`` elapses.
        A wait that is still running is returned as is.
        """
        identity = require_identity(identity)
        self.get(identity, session_id)
        with self._auth_guard:
            running = self._waiters.get(session_id)
            if running is not None and not running.done:
                return running
            self._authorized.discard(session_id)
            waiter = AuthWaiter(
                session_id,
                lambda: self._take_authorization(session_id),
                _AuthSink(self, identity.user_id),
                interval=interval,
                timeout=timeout,
            )
            self._waiters[session_id] = waiter
        logger.info("auth_wait_started", extra={"session_id": session_id, "timeout": timeout})
        return waiter.start()

    def complete_authorization(self, identity: Optional[Identity], session_id: str) -> bool:
        """Mark the popup of a session as finished; False when nobody waits for it."""
        identity = require_identity(identity)
        self.get(identity, session_id)
        with self._auth_guard:
            waiter = self._waiters.get(session_id)
            if waiter is None or waiter.done:
                return False
            self._authorized.add(session_id)
            return True

    def cancel_authorization(self, identity: Optional[Identity], session_id: str) -> bool:
        identity = require_identity(identity)
        self.get(identity, session_id)
        with self._auth_guard:
            waiter = self._waiters.pop(session_id, None)
            self._authorized.discard(session_id)
        if waiter is None or waiter.done:
            return False
        waiter.cancel()
        return True

    def _take_authorization(self, session_id: str) -> bool:
        with self._auth_guard:
            if session_id in self._authorized:
                self._authorized.discard(session_id)
                return True
            return False

    def _apply_auth_outcome(self, owner_id: str, outcome: AuthOutcome) -> None:
        session_id = outcome.session_id
        with self._auth_guard:
            waiter = self._waiters.get(session_id)
            if waiter is not None and waiter.done:
                del self._waiters[session_id]
        event = Event(
            EventType.AUTH_RESOLVED,
            owner_id,
            payload={"status": outcome.status, "detail": outcome.detail},
        )
        try:
            with self._session_lock(session_id):
                session = self._load(session_id, owner_id)
                self._drive(session, [event], None)
        except WorkflowError as exc:
            logger.warning("auth_outcome_dropped", extra={"session_id": session_id, "err": exc.detail})

    # ---- session bookkeeping ------------------------------------------------

    @contextmanager
    def _session_lock(self, session_id: str) -> Iterator[None]:
        """Hold the session's lock; the entry is dropped once nobody uses it."""
        with self._locks_guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = self._locks[session_id] = _SessionLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[session_id]

    def _interrupted(self, session: Session) -> bool:
        """A saved request that no live generation in this runner is serving."""
        if session.pending is None:
            return False
        assembler = self.streams.get(session.session_id)
        if assembler is not None and assembler.active:
            return False
        logger.info("session_resumed", extra={"session_id": session.session_id, "purpose": session.pending.purpose})
        return True

    def _load(self, session_id: str, owner_id: str) -> Session:
        live = self._live.get(session_id)
        if live is not None and live.owner_id == owner_id:
            return live
        return self.sessions.load(session_id, owner_id)

    def _persist(self, session: Session, notices: List[str]) -> None:
        try:
            self.sessions.save(session)
        except PersistenceError as exc:
            logger.warning("session_save_failed", extra={"session_id": session.session_id, "err": exc.detail})
            self._live[session.session_id] = session
            if PersistenceError.user_message not in notices:
                notices.append(PersistenceError.user_message)
            return
        self._live.pop(session.session_id, None)

    def _cancel_if_owner(self, session_id: str, owner_id: str) -> bool:
        assembler = self.streams.get(session_id)
        if assembler is None or not assembler.active:
            return False
        # ownership is checked without the session lock, which the stream holds
        live = self._live.get(session_id)
        session = live if live is not None else self.sessions.load(session_id, owner_id)
        if session.owner_id != owner_id:
            return False
        return self.streams.cancel(session_id)

    # ---- event loop ---------------------------------------------------------

    def _drive(self, session: Session, events: List[Event], on_fragment: Optional[Subscriber]) -> AdvanceOutcome:
        outcome = AdvanceOutcome(session)
        queue: Deque[Event] = deque(events)
        while queue:
            current = queue.popleft()
            nxt, commands = self.engine.advance(outcome.session, current)
            changed = nxt is not outcome.session
            record_transition(nxt.kind.value, current.type.value, changed)
            logger.debug(
                "event_applied",
                extra={
                    "session_id": nxt.session_id,
                    "event": current.type.value,
                    "phase": nxt.phase,
                    "commands": [c.name for c in commands],
                },
            )
            if changed:
                self._persist(nxt, outcome.notices)
            outcome.session = nxt
            for command in commands:
                outcome.commands.append(command)
                follow_up = self._execute(nxt, command, on_fragment, outcome.notices)
                if follow_up is not None:
                    queue.append(follow_up)
        return outcome

    def _execute(
        self, session: Session, command: Command, on_fragment: Optional[Subscriber], notices: List[str]
    ) -> Optional[Event]:
        if isinstance(command, RequestCompletion):
            if command.streaming:
                return self._stream_completion(session, command, on_fragment)
            return self._buffered_completion(session, command)
        if isinstance(command, CheckDuplicates):
            return self._check_duplicates(session, command)
        if isinstance(command, SubmitArtifact):
            return self._submit(session, command)
        if isinstance(command, RecordHistory):
            self._record_history(session, command, notices)
            return None
        if isinstance(command, CancelStream):
            self.streams.cancel(session.session_id)
            return None
        if isinstance(command, NoOp):
            logger.debug("event_ignored", extra={"session_id": session.session_id, "reason": command.reason})
            return None
        raise TypeError(f"unsupported command: {command.name}")

    # ---- command execution --------------------------------------------------

    def _failed(self, session: Session, exc: TransportError, partial: str = "") -> Event:
        record_transport_failure(exc.code)
        logger.warning(
            "completion_failed",
            extra={"session_id": session.session_id, "code": exc.code, "status": exc.status_code},
        )
        payload: Dict[str, Any] = {"code": exc.code, "detail": exc.detail}
        if partial:
            payload["partial"] = partial
        return Event(EventType.AI_FAILED, session.owner_id, payload=payload)

    def _buffered_completion(self, session: Session, command: RequestCompletion) -> Event:
        try:
            resp = self.transport.send(command.request, BUFFERED)
        except TransportError as exc:
            return self._failed(session, exc)
        return Event(EventType.AI_COMPLETED, session.owner_id, text=resp.text, payload={"purpose": command.purpose})

    def _stream_completion(
        self, session: Session, command: RequestCompletion, on_fragment: Optional[Subscriber]
    ) -> Event:
        assembler = self.streams.start(session.session_id, [on_fragment] if on_fragment else None)
        try:
            return self._consume(session, command, assembler)
        finally:
            self.streams.release(session.session_id, assembler)

    def _consume(self, session: Session, command: RequestCompletion, assembler: StreamAssembler) -> Event:
        try:
            stream = self.transport.send(command.request, STREAMING)
        except TransportError as exc:
            assembler.finish()
            return self._failed(session, exc)
        assembler.add_cancel_hook(stream.close)
        if not assembler.active:
            stream.close()
        else:
            try:
                with stream:
                    for fragment in stream:
                        if not assembler.feed(fragment):
                            break
            except TransportError as exc:
                if not assembler.aborted:
                    return self._failed(session, exc, partial=assembler.finish())
        if assembler.aborted:
            partial = assembler.text
            logger.info("stream_cancelled", extra={"session_id": session.session_id, "chars": len(partial)})
            return Event(EventType.STREAM_CANCELLED, session.owner_id, text=partial)
        text = assembler.finish()
        if not text.strip():
            return self._failed(session, Malformed("stream ended without content"))
        return Event(EventType.AI_COMPLETED, session.owner_id, text=text, payload={"purpose": command.purpose})

    def _check_duplicates(self, session: Session, command: CheckDuplicates) -> Event:
        try:
            priors = self.tickets.recent_tickets(session.owner_id, self.detector.window)
        except (WorkflowError, OSError) as exc:
            logger.warning("duplicate_lookup_failed", extra={"session_id": session.session_id, "err": str(exc)})
            return Event(EventType.DUPLICATES_CHECKED, session.owner_id, payload={"candidates": [], "error": str(exc)})
        candidates = self.detector.score(command.summary, priors, module=command.module, issue_type=command.issue_type)
        logger.info(
            "duplicates_scored",
            extra={"session_id": session.session_id, "priors": len(priors), "candidates": len(candidates)},
        )
        return Event(
            EventType.DUPLICATES_CHECKED,
            session.owner_id,
            payload={"candidates": [c.model_dump() for c in candidates]},
        )

    def _submit(self, session: Session, command: SubmitArtifact) -> Event:
        try:
            created = self.tickets.create_ticket(session.owner_id, command.artifact)
        except SubmissionFailed as exc:
            logger.warning(
                "ticket_submit_failed",
                extra={"session_id": session.session_id, "retryable": exc.retryable, "err": exc.detail},
            )
            return Event(
                EventType.SUBMIT_FAILED, session.owner_id, payload={"detail": exc.detail, "retryable": exc.retryable}
            )
        except OSError as exc:
            logger.warning("ticket_submit_failed", extra={"session_id": session.session_id, "err": str(exc)})
            return Event(EventType.SUBMIT_FAILED, session.owner_id, payload={"detail": str(exc), "retryable": True})
        logger.info("ticket_submitted", extra={"session_id": session.session_id, "key": created.get("key")})
        return Event(EventType.SUBMITTED, session.owner_id, payload=dict(created))

    def _record_history(self, session: Session, command: RecordHistory, notices: List[str]) -> None:
        try:
            entry = self.history.append(session.owner_id, command.kind, command.title, command.summary, command.metadata)
        except PersistenceError as exc:
            logger.warning("history_append_failed", extra={"session_id": session.session_id, "err": exc.detail})
            notices.append("The result could not be saved to your history.")
            return
        logger.info("history_recorded", extra={"session_id": session.session_id, "entry_id": entry.entry_id})

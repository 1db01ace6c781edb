"""Generic conversational workflow engine.

``WorkflowEngine.advance(session, event)`` returns the next session and the
commands the caller must execute. The engine performs no I/O: time and ids
come from injected callables, completions and ticket lookups are requested
as commands and their outcomes arrive back as events.
"""

from __future__ import annotations

import copy
import uuid
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import EngineConfig
from ..domain.errors import (
    TRANSPORT_ERRORS,
    AuthExpired,
    DuplicateBlocked,
    Malformed,
    MissingIdentityError,
    ValidationFailed,
)
from ..domain.models import ChatOption, DuplicateCandidate, Message, PendingRequest, Session, SessionStatus, WorkflowKind
from ..services.auth_waiter import CONNECTED, FAILED, TIMEOUT
from ..services.duplicate_detector import DuplicateDetector
from ..services.extractor import extract
from ..services.prompt_builder import PromptBuilder
from .events import (
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
from .state_machine import PHASE_TRANSITIONS, is_upstream, next_phase
from .workflows import PhaseKind, PhaseDef, WorkflowDef, compose_description, get_workflow, history_entry

CREDENTIAL_MASK = "••••••••"
RETRY_OPTION = ChatOption(id="retry", label="Retry", value="retry")
SKIP_OPTION = ChatOption(id="skip", label="Skip", value="skip")

Handler = Callable[["_Draft", WorkflowDef, PhaseDef, Event], Optional[str]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class _Draft:
    """Working copy of a session while one event is applied."""

    def __init__(self, session: Session, now: datetime, new_id: Callable[[], str]) -> None:
        self.session = session
        self.now = now
        self.new_id = new_id
        self.phase = session.phase
        self.status = session.status
        self.messages: List[Message] = list(session.messages)
        self.artifact: Dict[str, Any] = copy.deepcopy(session.artifact)
        self.context: Dict[str, Any] = copy.deepcopy(session.context)
        self.pending = session.pending
        self.blocked = session.blocked
        self.last_error = session.last_error
        self.commands: List[Command] = []

    def say(
        self,
        role: str,
        content: str,
        kind: Optional[str] = None,
        options: Sequence[ChatOption] = (),
        artifact: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.messages.append(
            Message(
                message_id=self.new_id(),
                role=role,
                content=content,
                kind=kind,
                options=list(options),
                artifact=artifact,
                created_at=self.now,
            )
        )

    def build(self) -> Session:
        return self.session.model_copy(
            update={
                "phase": self.phase,
                "status": self.status,
                "messages": self.messages,
                "artifact": self.artifact,
                "context": self.context,
                "pending": self.pending,
                "blocked": self.blocked,
                "last_error": self.last_error,
                "updated_at": self.now,
            }
        )


class WorkflowEngine:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        prompts: Optional[PromptBuilder] = None,
        detector: Optional[DuplicateDetector] = None,
        now: Callable[[], datetime] = _utcnow,
        new_id: Callable[[], str] = _new_id,
    ) -> None:
        self.config = config or EngineConfig()
        self.prompts = prompts or PromptBuilder(self.config.model)
        self.detector = detector or DuplicateDetector(
            window=self.config.duplicate_window,
            floor=self.config.duplicate_floor,
            threshold=self.config.duplicate_threshold,
        )
        self._now = now
        self._new_id = new_id
        self._global: Dict[EventType, Handler] = {
            EventType.START: self._on_start,
            EventType.CANCEL: self._on_cancel,
            EventType.EDIT: self._on_edit,
            EventType.RETRY: self._on_retry,
            EventType.QUOTA_RESTORED: self._on_quota_restored,
            EventType.CONTEXT_ATTACHED: self._on_context,
            EventType.INTERRUPTED: self._on_interrupted,
            EventType.AUTH_RESOLVED: self._on_auth_resolved,
        }
        self._handlers: Dict[Tuple[PhaseKind, EventType], Handler] = {
            (PhaseKind.TEXT, EventType.USER_TEXT): self._on_text,
            (PhaseKind.SELECT, EventType.USER_TEXT): self._on_select,
            (PhaseKind.SELECT, EventType.OPTION_SELECTED): self._on_select,
            (PhaseKind.AI, EventType.AI_COMPLETED): self._on_ai_completed,
            (PhaseKind.AI, EventType.AI_FAILED): self._on_ai_failed,
            (PhaseKind.AI, EventType.STREAM_CANCELLED): self._on_stream_cancelled,
            (PhaseKind.AI, EventType.USER_TEXT): self._on_clarification,
            (PhaseKind.AI, EventType.OPTION_SELECTED): self._on_retry_option,
            (PhaseKind.QUESTIONS, EventType.USER_TEXT): self._on_answer,
            (PhaseKind.QUESTIONS, EventType.OPTION_SELECTED): self._on_answer,
            (PhaseKind.CHECK, EventType.DUPLICATES_CHECKED): self._on_duplicates_checked,
            (PhaseKind.CHECK, EventType.OPTION_SELECTED): self._on_retry_option,
            (PhaseKind.REVIEW, EventType.OPTION_SELECTED): self._on_review,
            (PhaseKind.REVIEW, EventType.USER_TEXT): self._on_review,
            (PhaseKind.CONFIRM, EventType.OPTION_SELECTED): self._on_confirm,
            (PhaseKind.CONFIRM, EventType.USER_TEXT): self._on_confirm,
            (PhaseKind.SUBMIT, EventType.SUBMITTED): self._on_submitted,
            (PhaseKind.SUBMIT, EventType.SUBMIT_FAILED): self._on_submit_failed,
            (PhaseKind.SUBMIT, EventType.OPTION_SELECTED): self._on_retry_option,
        }

    # ---- public API ---------------------------------------------------------

    def new_session(self, kind: WorkflowKind, owner_id: Optional[str], session_id: Optional[str] = None) -> Session:
        if not owner_id:
            raise MissingIdentityError()
        flow = get_workflow(kind)
        ts = self._now()
        return Session(
            session_id=session_id or self._new_id(),
            owner_id=owner_id,
            kind=flow.kind,
            phase=flow.entry,
            created_at=ts,
            updated_at=ts,
        )

    def advance(self, session: Session, event: Event) -> Tuple[Session, List[Command]]:
        if not event.actor_id:
            raise MissingIdentityError()
        if session.is_terminal:
            return session, [NoOp("session_closed")]
        if session.blocked and event.type not in (EventType.CANCEL, EventType.QUOTA_RESTORED):
            return session, [NoOp(session.blocked)]

        flow = get_workflow(session.kind)
        phase = flow.phase(session.phase)
        handler = self._global.get(event.type) or self._handlers.get((phase.kind, event.type))
        if handler is None:
            return session, [NoOp(f"{event.type.value} not handled in {session.phase}")]

        draft = _Draft(session, self._now(), self._new_id)
        reason = handler(draft, flow, phase, event)
        if reason is not None:
            return session, [NoOp(reason)]
        return draft.build(), draft.commands

    # ---- phase entry --------------------------------------------------------

    def _enter(self, d: _Draft, flow: WorkflowDef, name: str) -> None:
        d.phase = name
        phase = flow.phase(name)
        if phase.kind == PhaseKind.TEXT:
            d.say("assistant", phase.prompt, kind="question")
        elif phase.kind == PhaseKind.SELECT:
            d.say("assistant", phase.prompt, kind="needs_selection", options=phase.options)
        elif phase.kind == PhaseKind.AI:
            d.say("assistant", phase.prompt, kind="status")
            self._request(d, phase)
        elif phase.kind == PhaseKind.QUESTIONS:
            self._ask_next(d, flow, phase)
        elif phase.kind == PhaseKind.CHECK:
            d.say("assistant", phase.prompt, kind="status")
            self._check(d)
        elif phase.kind == PhaseKind.REVIEW:
            preview = self._review_preview(d, flow, phase)
            d.say("assistant", phase.prompt, kind="needs_selection", options=phase.options, artifact=preview)
        elif phase.kind == PhaseKind.CONFIRM:
            d.artifact["description"] = compose_description(d.artifact)
            d.say("assistant", phase.prompt, kind="preview", options=phase.options, artifact=self._masked(d.artifact))
        elif phase.kind == PhaseKind.SUBMIT:
            d.say("assistant", phase.prompt, kind="status")
            self._submit(d)
        else:
            self._finish(d, flow, name)

    def _finish(self, d: _Draft, flow: WorkflowDef, name: str) -> None:
        d.pending = None
        if name == "done":
            d.status = SessionStatus.COMPLETED
            title, summary, meta = history_entry(flow.kind, d.artifact)
            meta["session_id"] = d.session.session_id
            d.commands.append(RecordHistory(kind=flow.kind, title=title, summary=summary, metadata=meta))
            d.say("system", "Workflow complete. The result was saved to your history.", kind="status")
        else:
            d.status = SessionStatus.CANCELLED

    def _request(self, d: _Draft, phase: PhaseDef) -> None:
        assert phase.purpose is not None
        request = self.prompts.build(phase.purpose, d.artifact, d.context, stream=phase.streaming)
        d.pending = PendingRequest(command="RequestCompletion", purpose=phase.purpose, streaming=phase.streaming)
        d.last_error = None
        d.commands.append(
            RequestCompletion(purpose=phase.purpose, request=request, streaming=phase.streaming, shape=phase.shape)
        )

    def _check(self, d: _Draft) -> None:
        d.pending = PendingRequest(command="CheckDuplicates")
        d.last_error = None
        d.commands.append(
            CheckDuplicates(
                summary=str(d.artifact.get("summary", "")),
                module=d.artifact.get("module"),
                issue_type=d.artifact.get("issue_type"),
            )
        )

    def _submit(self, d: _Draft) -> None:
        d.pending = PendingRequest(command="SubmitArtifact")
        d.last_error = None
        d.commands.append(SubmitArtifact(artifact=copy.deepcopy(d.artifact)))

    def _reissue(self, d: _Draft, phase: PhaseDef) -> None:
        if phase.kind == PhaseKind.AI:
            self._request(d, phase)
        elif phase.kind == PhaseKind.CHECK:
            self._check(d)
        else:
            self._submit(d)

    @staticmethod
    def _review_preview(d: _Draft, flow: WorkflowDef, phase: PhaseDef) -> Dict[str, Any]:
        if phase.name == "reviewing_duplicates":
            return {"duplicates": copy.deepcopy(d.artifact.get("duplicates") or [])}
        owner = flow.phase("generating")
        return {f: copy.deepcopy(d.artifact.get(f)) for f in owner.owns}

    @staticmethod
    def _masked(artifact: Dict[str, Any]) -> Dict[str, Any]:
        shown = copy.deepcopy(artifact)
        secret_ids = {q["id"] for q in shown.get("questions") or [] if q.get("input_kind") == "credentials"}
        for qid in secret_ids & set(shown.get("answers") or {}):
            if shown["answers"][qid]:
                shown["answers"][qid] = CREDENTIAL_MASK
        return shown

    def _reject(self, d: _Draft, text: Optional[str], hint: str) -> None:
        if text and text.strip():
            d.say("user", text.strip())
        d.say("assistant", f"{ValidationFailed.user_message} {hint}", kind="status")
        d.last_error = ValidationFailed.code

    # ---- global handlers ----------------------------------------------------

    def _on_start(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if d.messages or d.phase != flow.entry:
            return "already_started"
        self._enter(d, flow, flow.entry)
        return None

    def _on_cancel(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if d.pending is not None and d.pending.streaming:
            d.commands.append(CancelStream())
        d.blocked = None
        d.say("system", "Conversation cancelled.", kind="status")
        self._enter(d, flow, "cancelled")
        return None

    def _on_edit(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        target = event.option or ""
        if d.pending is not None:
            return "awaiting_completion"
        if target not in flow.phases or not flow.phase(target).is_input:
            return f"cannot edit {target or 'nothing'}"
        if not is_upstream(flow.kind, target, d.phase):
            return f"{target} is not before {d.phase}"
        self._edit(d, flow, target)
        return None

    def _edit(self, d: _Draft, flow: WorkflowDef, target: str) -> None:
        for name in flow.owned_after(target):
            d.artifact.pop(name, None)
        d.context.pop("clarifications", None)
        d.last_error = None
        self._enter(d, flow, target)

    def _on_retry(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if phase.kind not in (PhaseKind.AI, PhaseKind.CHECK, PhaseKind.SUBMIT):
            return "nothing_to_retry"
        if d.pending is not None:
            return "awaiting_completion"
        d.say("user", "Retry", kind="status")
        self._reissue(d, phase)
        return None

    def _on_retry_option(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if (event.option or "").lower() != RETRY_OPTION.value:
            return f"unknown option {event.option}"
        return self._on_retry(d, flow, phase, event)

    def _on_quota_restored(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if not d.blocked:
            return "not_blocked"
        d.blocked = None
        d.say("system", "AI credits are available again. Choose retry to continue.", kind="status", options=(RETRY_OPTION,))
        return None

    def _on_context(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        payload = event.payload or {}
        attached: List[str] = []
        stories = payload.get("user_stories")
        if isinstance(stories, str) and stories.strip():
            d.context["user_stories"] = stories.strip()
            attached.append("user stories")
        files = [f for f in payload.get("app_files") or [] if isinstance(f, dict) and f.get("name")]
        if files:
            known = d.context.setdefault("app_files", [])
            known.extend(f for f in files if f not in known)
            attached.append(f"{len(files)} app file(s)")
        columns = [
            {"key": str(c["key"]), "header": str(c.get("header") or c["key"])}
            for c in payload.get("reference_columns") or []
            if isinstance(c, dict) and c.get("key")
        ]
        if columns:
            d.context["reference_columns"] = columns
            attached.append(f"reference structure with {len(columns)} columns")
        attachments = [a for a in payload.get("attachments") or [] if a]
        if attachments and flow.kind == WorkflowKind.TICKET:
            d.artifact.setdefault("attachments", []).extend(attachments)
            attached.append(f"{len(attachments)} attachment(s)")
        if not attached:
            return "empty_context"
        d.say("system", "Attached " + ", ".join(attached) + ".", kind="file_request")
        return None

    def _on_interrupted(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        """Release a request that was in flight when the conversation was last saved."""
        if d.pending is None:
            return "nothing_pending"
        d.pending = None
        d.last_error = "interrupted"
        d.say(
            "system",
            "The previous request did not finish. Choose retry to run it again.",
            kind="status",
            options=(RETRY_OPTION,),
        )
        return None

    def _on_auth_resolved(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        payload = event.payload or {}
        outcome = payload.get("status")
        if outcome == CONNECTED:
            resume = d.last_error == AuthExpired.code
            d.last_error = None
            options = (RETRY_OPTION,) if resume else ()
            d.say("system", "Authorization complete.", kind="status", options=options)
        elif outcome == TIMEOUT:
            d.last_error = "auth_timeout"
            d.say("system", "Authorization timed out. Start it again when you are ready.", kind="status")
        elif outcome == FAILED:
            d.last_error = "auth_failed"
            d.say("system", f"Authorization failed: {payload.get('detail') or 'unknown error'}.", kind="status")
        else:
            return f"unknown authorization outcome {outcome}"
        return None

    # ---- input phases -------------------------------------------------------

    def _on_text(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        text = (event.text or "").strip()
        if len(text) < phase.min_length:
            self._reject(d, event.text, f"Please enter at least {phase.min_length} characters.")
            d.say("assistant", phase.prompt, kind="question")
            return None
        d.say("user", text)
        assert phase.field is not None
        d.artifact[phase.field] = text
        d.last_error = None
        self._enter(d, flow, next_phase(flow.kind, phase.name) or "done")
        return None

    def _on_select(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        raw = event.option if event.type == EventType.OPTION_SELECTED else event.text
        opt = phase.match_option(raw)
        if opt is not None:
            label, value = opt.label, opt.value
        elif phase.allow_custom and raw and raw.strip():
            label = value = raw.strip()
        else:
            labels = ", ".join(o.label for o in phase.options)
            self._reject(d, event.text, f"Please choose one of: {labels}.")
            d.say("assistant", phase.prompt, kind="needs_selection", options=phase.options)
            return None
        d.say("user", label)
        assert phase.field is not None
        d.artifact[phase.field] = value
        d.last_error = None
        self._enter(d, flow, next_phase(flow.kind, phase.name) or "done")
        return None

    # ---- AI phases ----------------------------------------------------------

    def _on_ai_completed(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if d.pending is None or d.pending.purpose != phase.purpose:
            return "no_pending_request"
        purpose = (event.payload or {}).get("purpose")
        if purpose and purpose != phase.purpose:
            return "stale_completion"
        d.pending = None
        raw = event.text or ""
        if not raw.strip():
            self._ai_status(d, Malformed.code)
            return None

        assert phase.shape is not None and phase.apply is not None
        result = extract(raw, phase.shape)
        if not result.complete:
            d.say("assistant", result.prose or raw.strip())
            if result.structured is not None:
                follow_up = f"I still need {', '.join(result.missing)}. Could you add more detail?"
            else:
                follow_up = "Could you tell me a bit more so I can finish this?"
            d.say("assistant", follow_up, kind="clarification")
            d.last_error = Malformed.code if result.found else None
            return None

        updates, warnings = phase.apply(result.structured, d.artifact, d.context)
        d.artifact.update(updates)
        d.say("assistant", result.prose or "Here is what I generated.", kind="structured_result", artifact=copy.deepcopy(updates))
        notes = result.warnings + warnings
        if notes:
            d.say("system", "Note: " + "; ".join(notes), kind="status")
        d.context.pop("clarifications", None)
        d.last_error = None
        self._enter(d, flow, next_phase(flow.kind, phase.name) or "done")
        return None

    def _on_ai_failed(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if d.pending is None:
            return "no_pending_request"
        d.pending = None
        payload = event.payload or {}
        if payload.get("partial"):
            d.say("assistant", str(payload["partial"]), kind="partial")
        self._ai_status(d, str(payload.get("code") or "provider_unavailable"))
        return None

    def _ai_status(self, d: _Draft, code: str) -> None:
        err = TRANSPORT_ERRORS.get(code, TRANSPORT_ERRORS["provider_unavailable"])
        d.last_error = err.code
        if err.code == "quota_exhausted":
            d.blocked = err.code
            d.say("system", err.user_message, kind="status")
        elif err.code == Malformed.code:
            d.say("system", err.user_message, kind="status")
            d.say("assistant", "Could you rephrase or add more detail?", kind="clarification", options=(RETRY_OPTION,))
        else:
            d.say("system", err.user_message, kind="status", options=(RETRY_OPTION,))

    def _on_stream_cancelled(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if d.pending is None:
            return "no_pending_request"
        d.pending = None
        if event.text:
            d.say("assistant", event.text, kind="partial")
        d.say("system", "Generation stopped. Choose retry or add more detail.", kind="status", options=(RETRY_OPTION,))
        d.last_error = "stream_cancelled"
        return None

    def _on_clarification(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if d.pending is not None:
            return "awaiting_completion"
        text = (event.text or "").strip()
        if not text:
            return "empty_text"
        d.say("user", text)
        d.context.setdefault("clarifications", []).append(text)
        self._request(d, phase)
        return None

    # ---- dynamic questions --------------------------------------------------

    @staticmethod
    def _current_question(d: _Draft) -> Optional[Dict[str, Any]]:
        answers = d.artifact.get("answers") or {}
        for q in d.artifact.get("questions") or []:
            if q["id"] not in answers:
                return q
        return None

    def _ask_next(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef) -> None:
        q = self._current_question(d)
        if q is None:
            self._enter(d, flow, next_phase(flow.kind, phase.name) or "done")
            return
        options: List[ChatOption] = []
        if q.get("input_kind") == "select":
            options = [ChatOption(id=o, label=o, value=o) for o in q.get("options") or []]
        if not q.get("required", True):
            options.append(SKIP_OPTION)
        d.say(
            "assistant",
            q["question"],
            kind="question",
            options=options,
            artifact={"question_id": q["id"], "input_kind": q.get("input_kind", "text"), "placeholder": q.get("placeholder")},
        )

    def _on_answer(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        q = self._current_question(d)
        if q is None:
            return "no_open_question"
        raw = (event.option if event.type == EventType.OPTION_SELECTED else event.text) or ""
        value = raw.strip()
        secret = q.get("input_kind") == "credentials"
        if value.lower() == SKIP_OPTION.value and not q.get("required", True):
            value = ""
        elif not value and q.get("required", True):
            self._reject(d, None, "This answer is required.")
            self._ask_next(d, flow, phase)
            return None
        elif q.get("input_kind") == "select" and q.get("options"):
            match = next((o for o in q["options"] if o.lower() == value.lower()), None)
            if match is None:
                self._reject(d, raw, f"Please choose one of: {', '.join(q['options'])}.")
                self._ask_next(d, flow, phase)
                return None
            value = match
        d.say("user", CREDENTIAL_MASK if secret and value else (value or "Skipped"))
        answers = d.artifact.setdefault("answers", {})
        answers[q["id"]] = value
        d.last_error = None
        self._ask_next(d, flow, phase)
        return None

    # ---- duplicates, review, confirmation, submission -----------------------

    def _on_duplicates_checked(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if d.pending is None:
            return "no_pending_request"
        d.pending = None
        payload = event.payload or {}
        candidates = [DuplicateCandidate.model_validate(c) for c in payload.get("candidates") or []]
        d.artifact["duplicates"] = [c.model_dump() for c in candidates]
        if payload.get("error"):
            d.say("system", f"Could not check for similar tickets ({payload['error']}). You can still continue.", kind="status")
        likely = self.detector.likely(candidates)
        if likely:
            blocked = DuplicateBlocked([c.key for c in likely])
            d.last_error = blocked.code
            d.say("assistant", blocked.detail, kind="duplicates", artifact={"duplicates": d.artifact["duplicates"]})
            self._enter(d, flow, PHASE_TRANSITIONS[flow.kind][phase.name][1])
            return None
        if candidates:
            d.say(
                "assistant",
                f"Found {len(candidates)} loosely similar ticket(s); none look like duplicates.",
                kind="duplicates",
                artifact={"duplicates": d.artifact["duplicates"]},
            )
        self._enter(d, flow, next_phase(flow.kind, phase.name) or "done")
        return None

    def _on_review(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        raw = event.option if event.type == EventType.OPTION_SELECTED else event.text
        opt = phase.match_option(raw)
        can_refine = phase.match_option("regenerate") is not None
        if opt is None:
            text = (raw or "").strip()
            if can_refine and event.type == EventType.USER_TEXT and text:
                d.say("user", text)
                d.context.setdefault("clarifications", []).append(text)
                self._enter(d, flow, "generating")
                return None
            labels = ", ".join(o.label for o in phase.options)
            self._reject(d, event.text, f"Please choose one of: {labels}.")
            d.say("assistant", phase.prompt, kind="needs_selection", options=phase.options)
            return None
        d.say("user", opt.label)
        if opt.value in ("proceed", "save"):
            if opt.value == "proceed":
                d.artifact["duplicate_override"] = True
            self._enter(d, flow, next_phase(flow.kind, phase.name) or "done")
        elif opt.value == "regenerate":
            self._enter(d, flow, "generating")
        elif opt.value == "edit":
            self._edit(d, flow, flow.entry)
        else:
            self._on_cancel(d, flow, phase, event)
        return None

    def _on_confirm(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        raw = event.option if event.type == EventType.OPTION_SELECTED else event.text
        opt = phase.match_option(raw)
        if opt is None:
            labels = ", ".join(o.label for o in phase.options)
            self._reject(d, event.text, f"Please choose one of: {labels}.")
            d.say("assistant", phase.prompt, kind="preview", options=phase.options)
            return None
        d.say("user", opt.label)
        if opt.value == "confirm":
            self._enter(d, flow, next_phase(flow.kind, phase.name) or "done")
        elif opt.value == "edit":
            self._edit(d, flow, flow.entry)
        else:
            self._on_cancel(d, flow, phase, event)
        return None

    def _on_submitted(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if d.pending is None:
            return "no_pending_request"
        d.pending = None
        payload = event.payload or {}
        d.artifact["ticket_key"] = payload.get("key")
        d.artifact["ticket_url"] = payload.get("url")
        d.say(
            "assistant",
            f"Ticket {payload.get('key')} created.",
            kind="structured_result",
            artifact={"key": payload.get("key"), "url": payload.get("url")},
        )
        self._enter(d, flow, "done")
        return None

    def _on_submit_failed(self, d: _Draft, flow: WorkflowDef, phase: PhaseDef, event: Event) -> Optional[str]:
        if d.pending is None:
            return "no_pending_request"
        d.pending = None
        payload = event.payload or {}
        detail = payload.get("detail") or "unknown error"
        d.last_error = "submit_failed"
        if payload.get("retryable", True):
            d.say("system", f"The ticket could not be created: {detail}.", kind="status", options=(RETRY_OPTION,))
            return None
        d.say("system", f"The ticket was rejected: {detail}.", kind="status")
        self._enter(d, flow, "failed")
        return None

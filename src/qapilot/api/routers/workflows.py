from __future__ import annotations

import json
import logging
import queue
from functools import lru_cache
from threading import Thread
from typing import Any, Dict, Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from ...domain.api_models import (
    AuthorizationStart,
    AuthorizationState,
    EventCreate,
    HistoryCleared,
    HistoryList,
    SessionCreate,
    SessionView,
    StreamCancelResult,
)
from ...domain.errors import (
    ConcurrentStreamError,
    MissingIdentityError,
    PersistenceError,
    SessionNotFound,
    ValidationFailed,
    WorkflowError,
)
from ...domain.models import Identity, WorkflowKind
from ...security.auth import get_current_identity
from ...services.workflow_runner import AdvanceOutcome, WorkflowRunner

logger = logging.getLogger("qapilot.api")

router = APIRouter(prefix="/workflows", tags=["workflows"])


@lru_cache(maxsize=1)
def get_runner() -> WorkflowRunner:
    return WorkflowRunner()


def _http_error(exc: WorkflowError) -> HTTPException:
    if isinstance(exc, MissingIdentityError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.user_message)
    if isinstance(exc, SessionNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    if isinstance(exc, ConcurrentStreamError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.user_message)
    if isinstance(exc, ValidationFailed):
        return HTTPException(status_code=422, detail=exc.detail)
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.user_message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.user_message)


def _view(outcome: AdvanceOutcome) -> SessionView:
    return SessionView(
        session=outcome.session,
        commands=[c.name for c in outcome.commands],
        notices=outcome.notices,
    )


@router.post("/sessions", response_model=SessionView, status_code=status.HTTP_201_CREATED)
def create_session(
    req: SessionCreate,
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> SessionView:
    try:
        return _view(runner.start(identity, req.kind))
    except WorkflowError as exc:
        raise _http_error(exc) from exc


@router.get("/sessions/{session_id}", response_model=SessionView)
def get_session(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> SessionView:
    try:
        return SessionView(session=runner.get(identity, session_id))
    except WorkflowError as exc:
        raise _http_error(exc) from exc


@router.post("/sessions/{session_id}/events", response_model=SessionView)
def post_event(
    session_id: str,
    req: EventCreate,
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> SessionView:
    try:
        outcome = runner.handle(identity, session_id, req.type, text=req.text, option=req.option, payload=req.payload)
    except WorkflowError as exc:
        raise _http_error(exc) from exc
    return _view(outcome)


@router.post("/sessions/{session_id}/events/stream", response_class=StreamingResponse)
def post_event_stream(
    session_id: str,
    req: EventCreate,
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
):
    """Apply an event and stream generated text as server-sent events.

    Each ``fragment`` frame carries the cumulative text so far; the last frame
    is either ``session`` (the resulting session) or ``error``.
    """
    try:
        runner.get(identity, session_id)
    except WorkflowError as exc:
        raise _http_error(exc) from exc

    frames: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()

    def worker() -> None:
        try:
            outcome = runner.handle(
                identity,
                session_id,
                req.type,
                text=req.text,
                option=req.option,
                payload=req.payload,
                on_fragment=lambda text: frames.put({"type": "fragment", "text": text}),
            )
            frames.put({"type": "session", **_view(outcome).model_dump(mode="json")})
        except WorkflowError as exc:
            logger.warning("stream_event_failed", extra={"session_id": session_id, "code": exc.code})
            frames.put({"type": "error", "code": exc.code, "detail": exc.user_message})
        except Exception:
            logger.exception("stream_event_crashed", extra={"session_id": session_id})
            frames.put({"type": "error", "code": WorkflowError.code, "detail": WorkflowError.user_message})
        finally:
            frames.put(None)

    thread = Thread(target=worker, name=f"workflow-stream-{session_id}", daemon=True)
    thread.start()

    def event_stream() -> Iterator[str]:  # --- qapilot-stream ---
        finished = False
        try:
            while True:
                frame = frames.get()
                if frame is None:
                    finished = True
                    break
                yield f"data: {json.dumps(frame)}\n\n"
        finally:
            if not finished:
                # client went away mid-generation
                runner.cancel_stream(identity, session_id)

    headers = {
        "Cache-Control": "no-cache, no-transform",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)


@router.post("/sessions/{session_id}/cancel-stream", response_model=StreamCancelResult)
def cancel_stream(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> StreamCancelResult:
    try:
        return StreamCancelResult(cancelled=runner.cancel_stream(identity, session_id))
    except WorkflowError as exc:
        raise _http_error(exc) from exc


@router.get("/history", response_model=HistoryList)
def list_history(
    kind: Optional[WorkflowKind] = Query(None),
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> HistoryList:
    try:
        return HistoryList(entries=runner.list_history(identity, kind))
    except WorkflowError as exc:
        raise _http_error(exc) from exc


@router.delete("/history", response_model=HistoryCleared)
def clear_history(
    kind: Optional[WorkflowKind] = Query(None),
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> HistoryCleared:
    try:
        return HistoryCleared(removed=runner.clear_history(identity, kind))
    except WorkflowError as exc:
        raise _http_error(exc) from exc


@router.delete("/history/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_history_entry(
    entry_id: str,
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> None:
    try:
        removed = runner.delete_history(identity, entry_id)
    except WorkflowError as exc:
        raise _http_error(exc) from exc
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="History entry not found")


@router.post(
    "/sessions/{session_id}/authorization",
    response_model=AuthorizationState,
    status_code=status.HTTP_202_ACCEPTED,
)
def begin_authorization(
    session_id: str,
    req: AuthorizationStart,
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> AuthorizationState:
    """Start waiting for an authorization popup; the result lands in the session messages."""
    try:
        runner.begin_authorization(identity, session_id, timeout=req.timeout)
    except WorkflowError as exc:
        raise _http_error(exc) from exc
    return AuthorizationState(waiting=True)


@router.post("/sessions/{session_id}/authorization/complete", response_model=AuthorizationState)
def complete_authorization(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> AuthorizationState:
    try:
        accepted = runner.complete_authorization(identity, session_id)
    except WorkflowError as exc:
        raise _http_error(exc) from exc
    if not accepted:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No authorization is in progress")
    return AuthorizationState(waiting=False)


@router.delete("/sessions/{session_id}/authorization", response_model=AuthorizationState)
def cancel_authorization(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    runner: WorkflowRunner = Depends(get_runner),
) -> AuthorizationState:
    try:
        runner.cancel_authorization(identity, session_id)
    except WorkflowError as exc:
        raise _http_error(exc) from exc
    return AuthorizationState(waiting=False)

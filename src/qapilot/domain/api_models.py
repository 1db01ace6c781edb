from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.events import EventType
from .models import HistoryEntry, Session, WorkflowKind


class SessionCreate(BaseModel):
    kind: WorkflowKind


class EventCreate(BaseModel):
    type: EventType
    text: Optional[str] = None
    option: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class SessionView(BaseModel):
    session: Session
    commands: List[str] = Field(default_factory=list)
    notices: List[str] = Field(default_factory=list)


class StreamCancelResult(BaseModel):
    cancelled: bool


class AuthorizationStart(BaseModel):
    timeout: float = Field(300.0, gt=0, le=3600)


class AuthorizationState(BaseModel):
    waiting: bool


class HistoryList(BaseModel):
    entries: List[HistoryEntry]


class HistoryCleared(BaseModel):
    removed: int

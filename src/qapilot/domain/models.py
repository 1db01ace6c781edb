from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class WorkflowKind(str, Enum):
    TICKET = "ticket"
    SCENARIO = "scenario"
    TESTCASE = "testcase"
    XPATH = "xpath"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


Role = Literal["system", "user", "assistant"]


class ChatOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    value: str
    description: Optional[str] = None


class Message(BaseModel):
    """One immutable turn of the conversation log."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    role: Role
    content: str
    kind: Optional[str] = None
    options: List[ChatOption] = Field(default_factory=list)
    artifact: Optional[Dict[str, Any]] = None
    created_at: datetime


class PendingRequest(BaseModel):
    """The side effect the engine is waiting on for the current phase."""

    command: str
    purpose: Optional[str] = None
    streaming: bool = False


class Session(BaseModel):
    session_id: str
    owner_id: str
    kind: WorkflowKind
    phase: str
    status: SessionStatus = SessionStatus.ACTIVE
    messages: List[Message] = Field(default_factory=list)
    artifact: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    pending: Optional[PendingRequest] = None
    blocked: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.ACTIVE


class DynamicQuestion(BaseModel):
    id: str
    question: str
    input_kind: Literal["text", "select", "credentials"] = "text"
    placeholder: Optional[str] = None
    options: List[str] = Field(default_factory=list)
    required: bool = True


class DuplicateCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    summary: str
    status: Optional[str] = None
    score: float
    url: Optional[str] = None


class PriorTicket(BaseModel):
    """A previously submitted ticket as returned by the ticket query collaborator."""

    key: str
    summary: str
    module: Optional[str] = None
    issue_type: Optional[str] = None
    status: Optional[str] = None
    url: Optional[str] = None
    created_at: Optional[datetime] = None


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_id: str
    kind: WorkflowKind
    title: str
    summary: str
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Identity(BaseModel):
    user_id: str
    email: str
    name: str = ""
    roles: List[str] = Field(default_factory=list)

"""Events fed into the workflow engine and the commands it emits back.

The engine never performs I/O itself. It returns commands, the runner
executes them and reports the outcome as a new event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Type

from ..domain.artifacts import ArtifactShape
from ..domain.models import WorkflowKind


class EventType(str, Enum):
    START = "start"
    USER_TEXT = "user_text"
    OPTION_SELECTED = "option_selected"
    CONTEXT_ATTACHED = "context_attached"
    AI_COMPLETED = "ai_completed"
    AI_FAILED = "ai_failed"
    STREAM_CANCELLED = "stream_cancelled"
    EDIT = "edit"
    RETRY = "retry"
    CANCEL = "cancel"
    DUPLICATES_CHECKED = "duplicates_checked"
    SUBMITTED = "submitted"
    SUBMIT_FAILED = "submit_failed"
    QUOTA_RESTORED = "quota_restored"
    INTERRUPTED = "interrupted"
    AUTH_RESOLVED = "auth_resolved"


@dataclass(frozen=True)
class Event:
    type: EventType
    actor_id: Optional[str]
    text: Optional[str] = None
    option: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Command:
    """Base class for side effects requested by the engine."""

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class RequestCompletion(Command):
    purpose: str
    request: Any  # CompletionRequest
    streaming: bool = False
    shape: Optional[Type[ArtifactShape]] = None


@dataclass(frozen=True)
class CheckDuplicates(Command):
    summary: str
    module: Optional[str] = None
    issue_type: Optional[str] = None


@dataclass(frozen=True)
class SubmitArtifact(Command):
    artifact: Dict[str, Any]


@dataclass(frozen=True)
class RecordHistory(Command):
    kind: WorkflowKind
    title: str
    summary: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CancelStream(Command):
    pass


@dataclass(frozen=True)
class NoOp(Command):
    reason: str = ""

"""Error taxonomy shared by the engine, the transport and the stores."""

from __future__ import annotations

from typing import List, Optional


class WorkflowError(Exception):
    code: str = "workflow_error"
    user_message: str = "Something went wrong. Please try again."

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail or self.user_message


class TransportError(WorkflowError):
    """Failure raised by the completion transport; never retried by it."""

    code = "transport_error"

    def __init__(self, detail: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.status_code = status_code


class AuthExpired(TransportError):
    code = "auth_expired"
    user_message = "Your session has expired. Please sign in again, then retry."


class RateLimited(TransportError):
    code = "rate_limited"
    user_message = "The assistant is busy right now. Please try again shortly."


class QuotaExhausted(TransportError):
    code = "quota_exhausted"
    user_message = "AI credits are exhausted. Please add credits to continue this conversation."


class ProviderUnavailable(TransportError):
    code = "provider_unavailable"
    user_message = "The assistant is unavailable at the moment. You can retry when you are ready."


class Malformed(TransportError):
    code = "malformed"
    user_message = "The assistant returned an empty or unreadable answer."


TRANSPORT_ERRORS = {
    cls.code: cls for cls in (AuthExpired, RateLimited, QuotaExhausted, ProviderUnavailable, Malformed)
}


class ValidationFailed(WorkflowError):
    code = "validation_failed"
    user_message = "That answer does not look right."


class ConcurrentStreamError(WorkflowError):
    code = "concurrent_stream"
    user_message = "A response is already being generated for this conversation."


class DuplicateBlocked(WorkflowError):
    """Soft stop: likely duplicates were found and the user must decide."""

    code = "duplicate_blocked"
    user_message = "Potential duplicate tickets were found."

    def __init__(self, keys: Optional[List[str]] = None) -> None:
        super().__init__(f"Potential duplicates: {', '.join(keys or [])}")
        self.keys = list(keys or [])


class PersistenceError(WorkflowError):
    code = "persistence_error"
    user_message = "Your progress could not be saved. You can keep working; we will retry on the next step."


class MissingIdentityError(WorkflowError):
    code = "missing_identity"
    user_message = "Please sign in to continue."


class SessionNotFound(WorkflowError):
    code = "session_not_found"
    user_message = "That conversation could not be found."


class SubmissionFailed(WorkflowError):
    """The ticket collaborator refused or could not take the artifact."""

    code = "submit_failed"
    user_message = "The ticket could not be created."

    def __init__(self, detail: Optional[str] = None, retryable: bool = True) -> None:
        super().__init__(detail)
        self.retryable = retryable

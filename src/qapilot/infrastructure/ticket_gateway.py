from __future__ import annotations

import os
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Mapping, Protocol

from ..domain.errors import SubmissionFailed
from ..domain.models import PriorTicket


class TicketGateway(Protocol):
    def recent_tickets(self, owner_id: str, limit: int) -> List[PriorTicket]: ...

    def create_ticket(self, owner_id: str, artifact: Mapping[str, Any]) -> Dict[str, str]: ...


class InMemoryTicketGateway:
    """Ticket collaborator kept in process memory, newest ticket first."""

    def __init__(self, project_key: str = "QA", base_url: str = "https://tickets.example.invalid/browse") -> None:
        self.project_key = project_key
        self.base_url = base_url.rstrip("/")
        self._tickets: Dict[str, List[PriorTicket]] = {}
        self._counter = 0
        self._lock = RLock()

    def seed(self, owner_id: str, tickets: List[PriorTicket]) -> None:
        with self._lock:
            self._tickets.setdefault(owner_id, []).extend(tickets)

    def recent_tickets(self, owner_id: str, limit: int) -> List[PriorTicket]:
        with self._lock:
            tickets = list(self._tickets.get(owner_id, []))
        tickets.sort(key=lambda t: t.created_at.timestamp() if t.created_at else 0.0, reverse=True)
        return tickets[: max(0, limit)]

    def create_ticket(self, owner_id: str, artifact: Mapping[str, Any]) -> Dict[str, str]:
        summary = str(artifact.get("summary") or "").strip()
        if not summary:
            raise SubmissionFailed("summary is required", retryable=False)
        with self._lock:
            self._counter += 1
            key = f"{self.project_key}-{self._counter}"
            ticket = PriorTicket(
                key=key,
                summary=summary,
                module=artifact.get("module"),
                issue_type=artifact.get("issue_type"),
                status="To Do",
                url=f"{self.base_url}/{key}",
                created_at=datetime.now(UTC),
            )
            self._tickets.setdefault(owner_id, []).append(ticket)
        return {"key": key, "url": ticket.url or ""}


_gateway: TicketGateway | None = None


def get_ticket_gateway() -> TicketGateway:
    global _gateway
    if _gateway is None:
        _gateway = InMemoryTicketGateway(
            project_key=os.getenv("QAPILOT_TICKET_PROJECT", "QA"),
            base_url=os.getenv("QAPILOT_TICKET_BASE_URL", "https://tickets.example.invalid/browse"),
        )
    return _gateway

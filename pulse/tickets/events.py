from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .models import Actor, Ticket
from .state import TicketStatus


class LifecycleEventKind(str, Enum):
    """Committed lifecycle changes that may trigger notifications."""

    CREATED = "created"
    APPROVED = "approved"
    REJECTED = "rejected"
    STATUS_CHANGED = "status_changed"
    REMARK_ADDED = "remark_added"
    DELETED = "deleted"


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """Emitted by the lifecycle engine after a transition has been committed."""

    kind: LifecycleEventKind
    ticket: Ticket
    actor: Actor
    previous_status: TicketStatus | None = None
    remark: str | None = None

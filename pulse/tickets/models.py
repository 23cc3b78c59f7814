from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from .state import Role, TicketStatus, Urgency


@dataclass(frozen=True, slots=True)
class Actor:
    """Snapshot of the user performing an action."""

    id: int
    name: str
    email: str
    role: Role


@dataclass(slots=True)
class TicketDraft:
    """User supplied fields for a new ticket."""

    title: str
    description: str
    type: str
    urgency: Urgency = Urgency.MEDIUM
    category_id: int | None = None
    subcategory_id: int | None = None
    subcategory_text: str | None = None
    software_name: str | None = None
    system_url: str | None = None


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket entry."""

    id: int | None
    ticket_number: str
    title: str
    description: str
    type: str
    urgency: Urgency
    status: TicketStatus
    creator: Actor
    requires_approval: bool
    created_at: datetime
    updated_at: datetime
    category_id: int | None = None
    subcategory_id: int | None = None
    subcategory_text: str | None = None
    software_name: str | None = None
    system_url: str | None = None
    assigned_to: int | None = None
    approved_by: int | None = None
    approved_at: datetime | None = None
    rejected_by: int | None = None
    rejected_at: datetime | None = None
    resolved_at: datetime | None = None
    remark: str | None = None
    is_deleted: bool = False
    deleted_by: int | None = None
    deleted_at: datetime | None = None
    delete_reason: str | None = None


# Ticket attributes a lifecycle operation may change after creation.
MUTABLE_TICKET_FIELDS = frozenset(
    {
        "status",
        "assigned_to",
        "approved_by",
        "approved_at",
        "rejected_by",
        "rejected_at",
        "resolved_at",
        "remark",
        "updated_at",
        "is_deleted",
        "deleted_by",
        "deleted_at",
        "delete_reason",
    }
)


@dataclass(frozen=True, slots=True)
class AuditChange:
    """A field level change that has not been written to the audit log yet."""

    field_name: str
    old_value: str | None
    new_value: str | None
    reason: str
    changed_by: int


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """History entry describing one field level change to a ticket."""

    id: int
    ticket_id: int
    field_name: str
    old_value: str | None
    new_value: str | None
    change_reason: str
    changed_by: int
    created_at: datetime


@dataclass(slots=True)
class TicketMutation:
    """Outcome of a committed write: the ticket as stored plus its audit entries."""

    ticket: Ticket
    audit_entries: Sequence[AuditEntry] = field(default_factory=list)
    audit_degraded: bool = False


def generate_ticket_number(now: datetime | None = None) -> str:
    """Return ``TK`` + ``YYYYMMDD`` + the last four digits of the millisecond epoch."""

    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"TK{now:%Y%m%d}{millis % 10000:04d}"

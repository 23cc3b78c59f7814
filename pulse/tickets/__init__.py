"""Ticket lifecycle: state machine, storage and audit trail."""

from .audit import AuditLog
from .events import LifecycleEvent, LifecycleEventKind
from .lifecycle import LifecycleEngine, LifecycleResult
from .models import Actor, AuditEntry, Ticket, TicketDraft
from .repository import InMemoryTicketRepository, SqlTicketRepository, TicketRepository
from .state import LifecycleAction, Role, RolePolicy, TicketStateMachine, TicketStatus, Urgency

__all__ = [
    "Actor",
    "AuditEntry",
    "AuditLog",
    "InMemoryTicketRepository",
    "LifecycleAction",
    "LifecycleEngine",
    "LifecycleEvent",
    "LifecycleEventKind",
    "LifecycleResult",
    "Role",
    "RolePolicy",
    "SqlTicketRepository",
    "Ticket",
    "TicketDraft",
    "TicketRepository",
    "TicketStateMachine",
    "TicketStatus",
    "Urgency",
]

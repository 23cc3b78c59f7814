from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Mapping


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    PENDING_APPROVAL = "Pending Approval"
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"
    CLOSED = "Closed"
    REJECTED = "Rejected"


class Urgency(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class Role(str, Enum):
    """Roles a ticket system user can hold."""

    GENERAL_USER = "general_user"
    DIGITAL_TEAM = "digital_team"
    MANAGER = "manager"
    ADMIN = "admin"


class LifecycleAction(str, Enum):
    """Operations that move an existing ticket through its lifecycle."""

    APPROVE = "approve"
    REJECT = "reject"
    UPDATE_STATUS = "update_status"
    ADD_REMARK = "add_remark"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class RolePolicy:
    """Which roles may perform which lifecycle operations."""

    approval_required_roles: AbstractSet[Role] = frozenset({Role.DIGITAL_TEAM, Role.ADMIN})
    approver_roles: AbstractSet[Role] = frozenset({Role.MANAGER})
    triage_roles: AbstractSet[Role] = frozenset({Role.MANAGER, Role.DIGITAL_TEAM, Role.ADMIN})
    ops_team_roles: AbstractSet[Role] = frozenset({Role.DIGITAL_TEAM})
    admin_roles: AbstractSet[Role] = frozenset({Role.ADMIN})

    def requires_approval(self, role: Role) -> bool:
        return role in self.approval_required_roles

    def can_approve(self, role: Role) -> bool:
        return role in self.approver_roles

    def can_triage(self, role: Role) -> bool:
        return role in self.triage_roles

    def can_delete(self, role: Role) -> bool:
        return role in self.admin_roles


class TicketStateMachine:
    """Validate ticket lifecycle transitions.

    Approval decisions and triage updates are tracked separately: a ticket
    waiting for approval can only leave that state through approve/reject,
    and approve/reject are only legal from it.
    """

    _APPROVAL_TRANSITIONS: Mapping[LifecycleAction, tuple[TicketStatus, TicketStatus]] = {
        LifecycleAction.APPROVE: (TicketStatus.PENDING_APPROVAL, TicketStatus.OPEN),
        LifecycleAction.REJECT: (TicketStatus.PENDING_APPROVAL, TicketStatus.REJECTED),
    }

    _UPDATE_TRANSITIONS: Mapping[TicketStatus, AbstractSet[TicketStatus]] = {
        TicketStatus.PENDING_APPROVAL: frozenset(),
        TicketStatus.OPEN: frozenset(
            {TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED}
        ),
        TicketStatus.IN_PROGRESS: frozenset(
            {TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED}
        ),
        TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED}),
        TicketStatus.CLOSED: frozenset(),
        TicketStatus.REJECTED: frozenset(),
    }

    def __init__(self, policy: RolePolicy | None = None) -> None:
        self.policy = policy or RolePolicy()

    def initial_state(self, role: Role) -> TicketStatus:
        if self.policy.requires_approval(role):
            return TicketStatus.PENDING_APPROVAL
        return TicketStatus.OPEN

    @classmethod
    def approval_transition(cls, action: LifecycleAction) -> tuple[TicketStatus, TicketStatus]:
        """Return the ``(required, resulting)`` status pair of an approval decision."""

        try:
            return cls._APPROVAL_TRANSITIONS[action]
        except KeyError:
            raise ValueError(f"{action.value} is not an approval decision") from None

    @classmethod
    def can_update(cls, current: TicketStatus, target: TicketStatus) -> bool:
        return target in cls._UPDATE_TRANSITIONS.get(current, frozenset())

    @classmethod
    def accepts_remarks(cls, current: TicketStatus) -> bool:
        return current in (TicketStatus.OPEN, TicketStatus.IN_PROGRESS)


def parse_status(value: TicketStatus | str) -> TicketStatus:
    """Coerce ``value`` to a :class:`TicketStatus`, raising ``ValueError`` when unknown."""

    if isinstance(value, TicketStatus):
        return value
    try:
        return TicketStatus(value)
    except ValueError:
        allowed = ", ".join(status.value for status in TicketStatus)
        raise ValueError(f"Unknown ticket status {value!r}; expected one of: {allowed}") from None

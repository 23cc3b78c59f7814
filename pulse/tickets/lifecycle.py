from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from pulse.errors import PermissionDeniedError, TicketConflictError, TicketNotFoundError, ValidationFailedError
from pulse.metrics import MetricsRegistry, metrics_registry

from .audit import AuditLog
from .events import LifecycleEvent, LifecycleEventKind
from .models import Actor, AuditChange, AuditEntry, Ticket, TicketDraft, TicketMutation, generate_ticket_number
from .repository import TicketRepository
from .state import LifecycleAction, RolePolicy, TicketStateMachine, TicketStatus, parse_status

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LifecycleResult:
    """A committed lifecycle operation and the event it produced."""

    ticket: Ticket
    event: LifecycleEvent
    audit_entries: Sequence[AuditEntry] = field(default_factory=list)
    audit_degraded: bool = False


class LifecycleEngine:
    """Role gated ticket lifecycle with an audit entry per field change."""

    def __init__(
        self,
        repository: TicketRepository,
        *,
        state_machine: TicketStateMachine | None = None,
        clock: Callable[[], datetime] | None = None,
        registry: MetricsRegistry | None = None,
    ) -> None:
        self._repository = repository
        self._state_machine = state_machine or TicketStateMachine()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._transitions = (registry or metrics_registry).counter(
            "ticket_transitions_total",
            description="Committed ticket lifecycle operations.",
            label_names=("action",),
        )

    @property
    def policy(self) -> RolePolicy:
        return self._state_machine.policy

    async def create_ticket(self, draft: TicketDraft, actor: Actor) -> LifecycleResult:
        now = self._clock()
        status = self._state_machine.initial_state(actor.role)
        ticket = Ticket(
            id=None,
            ticket_number=generate_ticket_number(now),
            title=draft.title,
            description=draft.description,
            type=draft.type,
            urgency=draft.urgency,
            status=status,
            creator=actor,
            requires_approval=status is TicketStatus.PENDING_APPROVAL,
            created_at=now,
            updated_at=now,
            category_id=draft.category_id,
            subcategory_id=draft.subcategory_id,
            subcategory_text=draft.subcategory_text,
            software_name=draft.software_name,
            system_url=draft.system_url,
        )
        mutation = await self._repository.insert_ticket(
            ticket, [AuditLog.change("status", None, status, "Ticket created", actor)]
        )
        logger.info(
            "Ticket %s created by %s (%s) with status %s",
            mutation.ticket.ticket_number,
            actor.email,
            actor.role.value,
            status.value,
        )
        return self._committed("create", mutation, LifecycleEvent(LifecycleEventKind.CREATED, mutation.ticket, actor))

    async def approve(self, ticket_id: int, actor: Actor) -> LifecycleResult:
        return await self._decide(ticket_id, LifecycleAction.APPROVE, actor, reason="Ticket approved")

    async def reject(self, ticket_id: int, actor: Actor, *, reason: str | None = None) -> LifecycleResult:
        return await self._decide(
            ticket_id, LifecycleAction.REJECT, actor, reason=reason or "Ticket rejected by manager"
        )

    async def update_status(
        self,
        ticket_id: int,
        *,
        status: TicketStatus | str,
        actor: Actor,
        assigned_to: int | None = None,
    ) -> LifecycleResult:
        self._require_triage(actor)
        target = self._parse_status(status)
        ticket = await self.get_ticket(ticket_id)
        if not self._state_machine.can_update(ticket.status, target):
            raise TicketConflictError(
                f"Ticket {ticket_id} cannot move from {ticket.status.value} to {target.value}"
            )

        now = self._clock()
        changes: dict[str, Any] = {"status": target, "updated_at": now}
        audit = [AuditLog.change("status", ticket.status, target, "Status updated", actor)]
        if target is TicketStatus.RESOLVED:
            changes["resolved_at"] = now
        if assigned_to is not None:
            changes["assigned_to"] = assigned_to
            audit.append(AuditLog.change("assigned_to", ticket.assigned_to, assigned_to, "Ticket assigned", actor))

        mutation = await self._compare_and_swap(ticket, changes, audit)
        logger.info("Ticket %s status updated to %s by %s", ticket.ticket_number, target.value, actor.email)
        event = LifecycleEvent(
            LifecycleEventKind.STATUS_CHANGED, mutation.ticket, actor, previous_status=ticket.status
        )
        return self._committed(LifecycleAction.UPDATE_STATUS.value, mutation, event)

    async def add_remark(
        self,
        ticket_id: int,
        *,
        remark: str,
        actor: Actor,
        status: TicketStatus | str | None = None,
    ) -> LifecycleResult:
        self._require_triage(actor)
        if not remark or not remark.strip():
            raise ValidationFailedError("Remark must not be empty")
        target = None if status is None else self._parse_status(status)
        ticket = await self.get_ticket(ticket_id)
        if target is None:
            if not self._state_machine.accepts_remarks(ticket.status):
                raise TicketConflictError(f"Ticket {ticket_id} is {ticket.status.value} and accepts no remarks")
        elif not self._state_machine.can_update(ticket.status, target):
            raise TicketConflictError(
                f"Ticket {ticket_id} cannot move from {ticket.status.value} to {target.value}"
            )

        now = self._clock()
        changes: dict[str, Any] = {"remark": remark, "updated_at": now}
        audit = [AuditLog.change("remark", ticket.remark, remark, "Remark added", actor)]
        if target is not None:
            changes["status"] = target
            audit.append(AuditLog.change("status", ticket.status, target, "Status updated with remark", actor))
            if target is TicketStatus.RESOLVED:
                changes["resolved_at"] = now

        mutation = await self._compare_and_swap(ticket, changes, audit)
        logger.info("Remark added to ticket %s by %s (%s)", ticket.ticket_number, actor.email, actor.role.value)
        event = LifecycleEvent(
            LifecycleEventKind.REMARK_ADDED,
            mutation.ticket,
            actor,
            previous_status=ticket.status,
            remark=remark,
        )
        return self._committed(LifecycleAction.ADD_REMARK.value, mutation, event)

    async def delete_ticket(self, ticket_id: int, actor: Actor, *, reason: str | None = None) -> LifecycleResult:
        """Soft-delete a ticket: it leaves every listing and accepts no further changes."""

        if not self.policy.can_delete(actor.role):
            raise PermissionDeniedError(f"Role {actor.role.value} cannot delete tickets")
        ticket = await self.get_ticket(ticket_id)

        now = self._clock()
        reason = reason or "Deleted by admin"
        changes: dict[str, Any] = {
            "is_deleted": True,
            "deleted_by": actor.id,
            "deleted_at": now,
            "delete_reason": reason,
            "updated_at": now,
        }
        mutation = await self._compare_and_swap(
            ticket, changes, [AuditLog.change("is_deleted", False, True, reason, actor)]
        )
        logger.info("Ticket %s deleted by %s: %s", ticket.ticket_number, actor.email, reason)
        event = LifecycleEvent(LifecycleEventKind.DELETED, mutation.ticket, actor, previous_status=ticket.status)
        return self._committed(LifecycleAction.DELETE.value, mutation, event)

    async def transition(
        self, ticket_id: int, action: LifecycleAction | str, actor: Actor, **params: Any
    ) -> LifecycleResult:
        """Run ``action`` against a ticket; ``params`` are passed to the matching operation."""

        try:
            action = LifecycleAction(action)
        except ValueError:
            raise ValidationFailedError(f"Unknown lifecycle action {action!r}") from None

        if action is LifecycleAction.APPROVE:
            return await self.approve(ticket_id, actor)
        if action is LifecycleAction.REJECT:
            return await self.reject(ticket_id, actor, reason=params.get("reason"))
        if action is LifecycleAction.DELETE:
            return await self.delete_ticket(ticket_id, actor, reason=params.get("reason"))
        if action is LifecycleAction.UPDATE_STATUS:
            if params.get("status") is None:
                raise ValidationFailedError("A target status is required")
            return await self.update_status(
                ticket_id, status=params["status"], actor=actor, assigned_to=params.get("assigned_to")
            )
        return await self.add_remark(
            ticket_id, remark=params.get("remark") or "", actor=actor, status=params.get("status")
        )

    async def get_ticket(self, ticket_id: int) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None or ticket.is_deleted:
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def list_tickets(
        self, *, created_by: int | None = None, assignable_to: int | None = None
    ) -> list[Ticket]:
        return await self._repository.list_tickets(created_by=created_by, assignable_to=assignable_to)

    async def get_history(self, ticket_id: int) -> list[AuditEntry]:
        await self.get_ticket(ticket_id)
        return await self._repository.get_audit_log(ticket_id)

    async def _decide(self, ticket_id: int, action: LifecycleAction, actor: Actor, *, reason: str) -> LifecycleResult:
        if not self.policy.can_approve(actor.role):
            raise PermissionDeniedError(f"Role {actor.role.value} cannot {action.value} tickets")
        required, target = self._state_machine.approval_transition(action)
        ticket = await self.get_ticket(ticket_id)
        if ticket.status is not required:
            raise TicketConflictError(f"Ticket {ticket_id} is {ticket.status.value}, not {required.value}")

        now = self._clock()
        changes: dict[str, Any] = {"status": target, "updated_at": now}
        if action is LifecycleAction.APPROVE:
            changes.update(approved_by=actor.id, approved_at=now)
            kind = LifecycleEventKind.APPROVED
        else:
            changes.update(rejected_by=actor.id, rejected_at=now)
            kind = LifecycleEventKind.REJECTED

        mutation = await self._compare_and_swap(
            ticket, changes, [AuditLog.change("status", required, target, reason, actor)]
        )
        logger.info("Ticket %s %s by %s", ticket.ticket_number, kind.value, actor.email)
        event = LifecycleEvent(kind, mutation.ticket, actor, previous_status=required)
        return self._committed(action.value, mutation, event)

    async def _compare_and_swap(
        self, ticket: Ticket, changes: dict[str, Any], audit: Sequence[AuditChange]
    ) -> TicketMutation:
        assert ticket.id is not None
        mutation = await self._repository.update_ticket(
            ticket.id, changes=changes, audit=audit, expected_statuses={ticket.status}
        )
        if mutation is None:
            # Lost the race: another writer changed the status since we read it.
            raise TicketConflictError(f"Ticket {ticket.id} was modified concurrently; reload and retry")
        return mutation

    def _committed(self, action: str, mutation: TicketMutation, event: LifecycleEvent) -> LifecycleResult:
        self._transitions.inc(labels={"action": action})
        if mutation.audit_degraded:
            logger.warning(
                "Ticket %s %s committed with an incomplete audit trail",
                mutation.ticket.ticket_number,
                action,
            )
        return LifecycleResult(
            ticket=mutation.ticket,
            event=event,
            audit_entries=list(mutation.audit_entries),
            audit_degraded=mutation.audit_degraded,
        )

    def _require_triage(self, actor: Actor) -> None:
        if not self.policy.can_triage(actor.role):
            raise PermissionDeniedError(f"Role {actor.role.value} cannot update tickets")

    @staticmethod
    def _parse_status(value: TicketStatus | str) -> TicketStatus:
        try:
            return parse_status(value)
        except ValueError as exc:
            raise ValidationFailedError(str(exc)) from exc

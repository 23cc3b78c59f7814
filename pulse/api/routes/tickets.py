from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from pulse.dependencies.auth import CurrentActor
from pulse.dependencies.tickets import TicketWorkflowDep, TriageActor
from pulse.errors import PermissionDeniedError, TicketConflictError, TicketNotFoundError, ValidationFailedError
from pulse.tickets import (
    Actor,
    AuditEntry,
    LifecycleAction,
    Role,
    RolePolicy,
    Ticket,
    TicketDraft,
    TicketStatus,
    Urgency,
)
from pulse.workflow import WorkflowOutcome

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketModel(BaseModel):
    id: int
    ticket_number: str
    title: str
    description: str
    type: str
    urgency: Urgency
    status: TicketStatus
    created_by: int
    created_by_name: str
    created_by_email: str
    requires_manager_approval: bool
    category_id: int | None = None
    subcategory_id: int | None = None
    subcategory_text: str | None = None
    software_name: str | None = None
    system_url: str | None = None
    assigned_to: int | None = None
    approved_by: int | None = None
    approved_at: str | None = None
    rejected_by: int | None = None
    rejected_at: str | None = None
    resolved_at: str | None = None
    remark: str | None = None
    is_deleted: bool = False
    deleted_at: str | None = None
    delete_reason: str | None = None
    created_at: str
    updated_at: str

    @classmethod
    def from_entity(cls, ticket: Ticket) -> "TicketModel":
        return cls(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            description=ticket.description,
            type=ticket.type,
            urgency=ticket.urgency,
            status=ticket.status,
            created_by=ticket.creator.id,
            created_by_name=ticket.creator.name,
            created_by_email=ticket.creator.email,
            requires_manager_approval=ticket.requires_approval,
            category_id=ticket.category_id,
            subcategory_id=ticket.subcategory_id,
            subcategory_text=ticket.subcategory_text,
            software_name=ticket.software_name,
            system_url=ticket.system_url,
            assigned_to=ticket.assigned_to,
            approved_by=ticket.approved_by,
            approved_at=ticket.approved_at.isoformat() if ticket.approved_at else None,
            rejected_by=ticket.rejected_by,
            rejected_at=ticket.rejected_at.isoformat() if ticket.rejected_at else None,
            resolved_at=ticket.resolved_at.isoformat() if ticket.resolved_at else None,
            remark=ticket.remark,
            is_deleted=ticket.is_deleted,
            deleted_at=ticket.deleted_at.isoformat() if ticket.deleted_at else None,
            delete_reason=ticket.delete_reason,
            created_at=ticket.created_at.isoformat(),
            updated_at=ticket.updated_at.isoformat(),
        )


class TicketChangeModel(BaseModel):
    """Response of a lifecycle write; the email goes out after the response."""

    ticket: TicketModel
    audit_degraded: bool = False
    notification_scheduled: bool = False

    @classmethod
    def from_outcome(cls, outcome: WorkflowOutcome) -> "TicketChangeModel":
        return cls(
            ticket=TicketModel.from_entity(outcome.result.ticket),
            audit_degraded=outcome.result.audit_degraded,
            notification_scheduled=outcome.notification is not None,
        )


class AuditEntryModel(BaseModel):
    id: int
    ticket_id: int
    field_name: str
    old_value: str | None = None
    new_value: str | None = None
    change_reason: str
    changed_by: int
    created_at: str

    @classmethod
    def from_entity(cls, entry: AuditEntry) -> "AuditEntryModel":
        return cls(
            id=entry.id,
            ticket_id=entry.ticket_id,
            field_name=entry.field_name,
            old_value=entry.old_value,
            new_value=entry.new_value,
            change_reason=entry.change_reason,
            changed_by=entry.changed_by,
            created_at=entry.created_at.isoformat(),
        )


class TicketCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    type: str = Field(min_length=1)
    urgency: Urgency = Urgency.MEDIUM
    category_id: int | None = None
    subcategory_id: int | None = None
    subcategory_text: str | None = None
    software_name: str | None = None
    system_url: str | None = None


class TicketRejectRequest(BaseModel):
    reason: str | None = None


class TicketStatusRequest(BaseModel):
    status: str
    assigned_to: int | None = None


class TicketRemarkRequest(BaseModel):
    remark: str
    status: str | None = None


@contextmanager
def lifecycle_errors() -> Iterator[None]:
    try:
        yield
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PermissionDeniedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except TicketConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValidationFailedError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _ensure_can_view(ticket: Ticket, actor: Actor, policy: RolePolicy) -> None:
    if policy.can_triage(actor.role) or ticket.creator.id == actor.id:
        return
    raise HTTPException(status_code=403, detail="Access denied")


@router.post("", response_model=TicketChangeModel, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    workflow: TicketWorkflowDep,
    actor: CurrentActor,
) -> TicketChangeModel:
    draft = TicketDraft(**payload.model_dump())
    with lifecycle_errors():
        outcome = await workflow.create_ticket(draft, actor)
    return TicketChangeModel.from_outcome(outcome)


@router.get("", response_model=list[TicketModel], summary="List tickets created by the caller")
async def list_my_tickets(workflow: TicketWorkflowDep, actor: CurrentActor) -> list[TicketModel]:
    tickets = await workflow.engine.list_tickets(created_by=actor.id)
    return [TicketModel.from_entity(ticket) for ticket in tickets]


@router.get("/all", response_model=list[TicketModel], summary="List tickets visible to the support staff")
async def list_all_tickets(workflow: TicketWorkflowDep, actor: TriageActor) -> list[TicketModel]:
    # Managers see everything; the ops roles see their own queue plus unassigned work.
    assignable_to = None if actor.role is Role.MANAGER else actor.id
    tickets = await workflow.engine.list_tickets(assignable_to=assignable_to)
    return [TicketModel.from_entity(ticket) for ticket in tickets]


@router.get("/{ticket_id}", response_model=TicketModel)
async def get_ticket(ticket_id: int, workflow: TicketWorkflowDep, actor: CurrentActor) -> TicketModel:
    with lifecycle_errors():
        ticket = await workflow.engine.get_ticket(ticket_id)
    _ensure_can_view(ticket, actor, workflow.engine.policy)
    return TicketModel.from_entity(ticket)


@router.put("/{ticket_id}/approve", response_model=TicketChangeModel)
async def approve_ticket(ticket_id: int, workflow: TicketWorkflowDep, actor: CurrentActor) -> TicketChangeModel:
    with lifecycle_errors():
        outcome = await workflow.transition_ticket(ticket_id, LifecycleAction.APPROVE, actor)
    return TicketChangeModel.from_outcome(outcome)


@router.put("/{ticket_id}/reject", response_model=TicketChangeModel)
async def reject_ticket(
    ticket_id: int,
    workflow: TicketWorkflowDep,
    actor: CurrentActor,
    payload: TicketRejectRequest | None = None,
) -> TicketChangeModel:
    reason = payload.reason if payload else None
    with lifecycle_errors():
        outcome = await workflow.transition_ticket(ticket_id, LifecycleAction.REJECT, actor, reason=reason)
    return TicketChangeModel.from_outcome(outcome)


@router.put("/{ticket_id}/status", response_model=TicketChangeModel)
async def update_ticket_status(
    ticket_id: int,
    payload: TicketStatusRequest,
    workflow: TicketWorkflowDep,
    actor: CurrentActor,
) -> TicketChangeModel:
    with lifecycle_errors():
        outcome = await workflow.transition_ticket(
            ticket_id,
            LifecycleAction.UPDATE_STATUS,
            actor,
            status=payload.status,
            assigned_to=payload.assigned_to,
        )
    return TicketChangeModel.from_outcome(outcome)


@router.post("/{ticket_id}/remarks", response_model=TicketChangeModel)
async def add_ticket_remark(
    ticket_id: int,
    payload: TicketRemarkRequest,
    workflow: TicketWorkflowDep,
    actor: CurrentActor,
) -> TicketChangeModel:
    with lifecycle_errors():
        outcome = await workflow.add_remark(ticket_id, payload.remark, actor, status=payload.status)
    return TicketChangeModel.from_outcome(outcome)


@router.get("/{ticket_id}/history", response_model=list[AuditEntryModel])
async def get_ticket_history(
    ticket_id: int, workflow: TicketWorkflowDep, actor: CurrentActor
) -> list[AuditEntryModel]:
    with lifecycle_errors():
        ticket = await workflow.engine.get_ticket(ticket_id)
        _ensure_can_view(ticket, actor, workflow.engine.policy)
        entries = await workflow.engine.get_history(ticket_id)
    return [AuditEntryModel.from_entity(entry) for entry in entries]

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from pulse.api.routes.tickets import TicketChangeModel, lifecycle_errors
from pulse.dependencies.tickets import AdminActor, TicketWorkflowDep
from pulse.tickets import LifecycleAction

router = APIRouter(prefix="/admin", tags=["admin"])


class TicketDeleteRequest(BaseModel):
    reason: str | None = None


@router.delete("/tickets/{ticket_id}", response_model=TicketChangeModel)
async def delete_ticket(
    ticket_id: int,
    workflow: TicketWorkflowDep,
    actor: AdminActor,
    payload: TicketDeleteRequest | None = None,
) -> TicketChangeModel:
    """Soft-delete a ticket; its history is kept and it drops out of every listing."""

    reason = payload.reason if payload else None
    with lifecycle_errors():
        outcome = await workflow.transition_ticket(ticket_id, LifecycleAction.DELETE, actor, reason=reason)
    return TicketChangeModel.from_outcome(outcome)

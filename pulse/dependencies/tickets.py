from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from pulse.dependencies.auth import roles_required
from pulse.notifications import DispatchEngine
from pulse.tickets import Actor, Role
from pulse.workflow import TicketWorkflow

require_triage = roles_required(Role.MANAGER, Role.DIGITAL_TEAM, Role.ADMIN)
require_admin = roles_required(Role.ADMIN)
require_notifier = roles_required(Role.MANAGER, Role.DIGITAL_TEAM)

TriageActor = Annotated[Actor, Depends(require_triage)]
AdminActor = Annotated[Actor, Depends(require_admin)]
NotifierActor = Annotated[Actor, Depends(require_notifier)]


async def get_ticket_workflow(request: Request) -> TicketWorkflow:
    workflow = getattr(request.app.state, "ticket_workflow", None)
    if workflow is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return workflow


async def get_dispatch_engine(request: Request) -> DispatchEngine:
    dispatcher = getattr(request.app.state, "dispatch_engine", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Notification service is not configured")
    return dispatcher


TicketWorkflowDep = Annotated[TicketWorkflow, Depends(get_ticket_workflow)]
DispatchEngineDep = Annotated[DispatchEngine, Depends(get_dispatch_engine)]

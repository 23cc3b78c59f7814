"""Request-path facade: commit the lifecycle change, then hand off the notification."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from pulse.notifications import DispatchResult, NotificationCoordinator
from pulse.tickets import Actor, LifecycleAction, LifecycleEngine, LifecycleResult, TicketDraft, TicketStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkflowOutcome:
    """The committed result, available immediately, and the notification still in flight."""

    result: LifecycleResult
    notification: asyncio.Task[DispatchResult] | None = None


class TicketWorkflow:
    def __init__(self, engine: LifecycleEngine, coordinator: NotificationCoordinator) -> None:
        self.engine = engine
        self.coordinator = coordinator

    async def create_ticket(self, draft: TicketDraft, actor: Actor) -> WorkflowOutcome:
        return self._notify(await self.engine.create_ticket(draft, actor))

    async def transition_ticket(
        self, ticket_id: int, action: LifecycleAction | str, actor: Actor, **params: Any
    ) -> WorkflowOutcome:
        return self._notify(await self.engine.transition(ticket_id, action, actor, **params))

    async def add_remark(
        self,
        ticket_id: int,
        remark: str,
        actor: Actor,
        *,
        status: TicketStatus | str | None = None,
    ) -> WorkflowOutcome:
        return self._notify(await self.engine.add_remark(ticket_id, remark=remark, actor=actor, status=status))

    def _notify(self, result: LifecycleResult) -> WorkflowOutcome:
        # the change is already committed; a notification fault must not turn it into an error
        try:
            task = self.coordinator.schedule(result.event)
        except Exception:
            logger.exception(
                "Could not schedule %s notification for ticket %s",
                result.event.kind.value,
                result.ticket.ticket_number,
            )
            task = None
        return WorkflowOutcome(result=result, notification=task)

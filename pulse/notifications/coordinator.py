"""Translate committed lifecycle events into background notification dispatches."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from pulse.core.config import Settings
from pulse.tickets.events import LifecycleEvent, LifecycleEventKind
from pulse.tickets.state import RolePolicy, TicketStatus

from .dispatch import DispatchEngine
from .models import DispatchResult, NotificationJob, NotificationKind
from .templates import NotificationTemplate

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecipientConfig:
    ops_team_email: str | None
    approver_email: str | None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecipientConfig":
        return cls(ops_team_email=settings.ops_team_email, approver_email=settings.approver_email)


class NotificationCoordinator:
    """Decide who hears about a lifecycle event and dispatch it off the request path.

    Jobs run as :class:`asyncio.Task` objects; the coordinator holds a
    reference to each until it finishes so they are not garbage collected
    mid-flight.
    """

    def __init__(
        self,
        dispatcher: DispatchEngine,
        template: NotificationTemplate,
        recipients: RecipientConfig,
        *,
        policy: RolePolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._template = template
        self._recipients = recipients
        self._policy = policy or RolePolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pending: set[asyncio.Task[DispatchResult]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def build_job(self, event: LifecycleEvent, *, generated_at: datetime | None = None) -> NotificationJob | None:
        ticket, actor = event.ticket, event.actor

        if event.kind is LifecycleEventKind.DELETED:
            logger.debug("Ticket %s was deleted; nobody is notified", ticket.ticket_number)
            return None
        if event.kind is LifecycleEventKind.CREATED:
            if ticket.status is TicketStatus.PENDING_APPROVAL:
                kind = NotificationKind.APPROVAL_REQUIRED
                primary = self._recipients.approver_email
                cc = [ticket.creator.email]
            else:
                kind = NotificationKind.TICKET_CREATED
                primary = self._recipients.ops_team_email
                creator_role = ticket.creator.role
                # ops team and approvers already learn about tickets through the primary mailbox
                if creator_role in self._policy.ops_team_roles or self._policy.can_approve(creator_role):
                    cc = []
                else:
                    cc = [ticket.creator.email]
        else:
            kind = NotificationKind.TICKET_UPDATED
            primary = ticket.creator.email
            cc = [] if actor.id == ticket.creator.id else [actor.email]

        if not primary:
            logger.warning(
                "No primary recipient for %s notification of ticket %s; skipping",
                kind.value,
                ticket.ticket_number,
            )
            return None

        rendered = self._template.render(kind, ticket, actor, remark=event.remark, generated_at=generated_at)
        return NotificationJob.create(primary, rendered.subject, rendered.body, cc, kind=kind)

    def schedule(self, event: LifecycleEvent) -> asyncio.Task[DispatchResult] | None:
        """Start dispatching the notification for ``event`` and return the running task."""

        job = self.build_job(event, generated_at=self._clock())
        if job is None:
            return None
        return self.submit(job)

    def submit(self, job: NotificationJob) -> asyncio.Task[DispatchResult]:
        task = asyncio.create_task(self._dispatcher.safe_dispatch(job), name=f"notify:{job.subject}")
        self._pending.add(task)
        task.add_done_callback(self._finished)
        logger.debug("Scheduled notification %r to %s (+%d cc)", job.subject, job.primary, len(job.cc))
        return task

    async def drain(self) -> None:
        """Wait for every dispatch that is still running."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _finished(self, task: asyncio.Task[DispatchResult]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("Notification task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Notification task %s failed", task.get_name(), exc_info=exc)
            return
        result = task.result()
        summary = result.summary
        logger.info(
            "Notification %r finished: total=%d succeeded=%d failed=%d",
            result.subject,
            summary.total,
            summary.succeeded,
            summary.failed,
        )

"""Append-only ticket history with best-effort writes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Sequence

from pulse.metrics import MetricsRegistry, metrics_registry

from .models import Actor, AuditChange, AuditEntry

logger = logging.getLogger(__name__)

AuditWriter = Callable[[int, AuditChange, datetime], Awaitable[AuditEntry]]


@dataclass(slots=True)
class AuditAppendResult:
    entries: list[AuditEntry] = field(default_factory=list)
    degraded: bool = False


class AuditLog:
    """Write audit entries through a store supplied writer.

    A write that keeps failing never propagates: the ticket mutation it
    describes stays committed, the failure is logged and counted, and the
    result is flagged as degraded so callers can surface it.
    """

    def __init__(self, *, attempts: int = 2, registry: MetricsRegistry | None = None) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self._attempts = attempts
        self._failures = (registry or metrics_registry).counter(
            "ticket_audit_failures_total", description="Audit entries that could not be written."
        )

    @staticmethod
    def change(
        field_name: str,
        old_value: object | None,
        new_value: object | None,
        reason: str,
        actor: Actor,
    ) -> AuditChange:
        return AuditChange(
            field_name=field_name,
            old_value=_as_text(old_value),
            new_value=_as_text(new_value),
            reason=reason,
            changed_by=actor.id,
        )

    async def append(
        self,
        writer: AuditWriter,
        ticket_id: int,
        changes: Sequence[AuditChange],
        *,
        created_at: datetime,
    ) -> AuditAppendResult:
        result = AuditAppendResult()
        for change in changes:
            entry = await self._write(writer, ticket_id, change, created_at)
            if entry is None:
                result.degraded = True
            else:
                result.entries.append(entry)
        return result

    async def _write(
        self, writer: AuditWriter, ticket_id: int, change: AuditChange, created_at: datetime
    ) -> AuditEntry | None:
        for attempt in range(1, self._attempts + 1):
            try:
                return await writer(ticket_id, change, created_at)
            except Exception:
                if attempt < self._attempts:
                    logger.warning(
                        "Audit write for ticket %s field %s failed (attempt %d/%d), retrying",
                        ticket_id,
                        change.field_name,
                        attempt,
                        self._attempts,
                        exc_info=True,
                    )
                    continue
                logger.error(
                    "Audit entry lost for ticket %s: field=%s new_value=%r actor=%s",
                    ticket_id,
                    change.field_name,
                    change.new_value,
                    change.changed_by,
                    exc_info=True,
                )
                self._failures.inc()
        return None


def _as_text(value: object | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        # str enums format to their member name under str(), we want the value
        return getattr(value, "value", value)
    return str(value)

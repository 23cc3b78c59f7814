from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Sequence

from .transport import TransportFailureKind


class NotificationKind(str, Enum):
    TICKET_CREATED = "ticket_created"
    TICKET_UPDATED = "ticket_updated"
    APPROVAL_REQUIRED = "approval_required"


@dataclass(frozen=True, slots=True)
class NotificationJob:
    """One conceptual notification: a primary recipient plus derivative CC copies."""

    primary: str
    subject: str
    body: str
    cc: tuple[str, ...] = ()
    cc_is_derivative: bool = True
    kind: NotificationKind | None = None

    @classmethod
    def create(
        cls,
        primary: str,
        subject: str,
        body: str,
        cc: Iterable[str | None] = (),
        *,
        cc_is_derivative: bool = True,
        kind: NotificationKind | None = None,
    ) -> "NotificationJob":
        """Build a job with CC recipients deduplicated in order, blanks and the primary dropped."""

        recipients: list[str] = []
        for address in cc:
            # exact comparison, no case folding
            if not address or address == primary or address in recipients:
                continue
            recipients.append(address)
        return cls(
            primary=primary,
            subject=subject,
            body=body,
            cc=tuple(recipients),
            cc_is_derivative=cc_is_derivative,
            kind=kind,
        )


@dataclass(slots=True)
class RecipientOutcome:
    recipient: str
    derivative: bool
    success: bool
    connect_attempts: int = 0
    send_attempts: int = 0
    duration: float = 0.0
    failure_kind: TransportFailureKind | None = None
    diagnostic: str | None = None


@dataclass(frozen=True, slots=True)
class GatewayHealth:
    """Result of a single connect and release against the mail gateway."""

    reachable: bool
    latency: float
    failure_kind: TransportFailureKind | None = None
    diagnostic: str | None = None


@dataclass(frozen=True, slots=True)
class DispatchSummary:
    total: int
    succeeded: int
    failed: int


@dataclass(slots=True)
class DispatchResult:
    """Aggregated outcome of a dispatch job.

    The job counts as successful when at least one recipient was reached.
    """

    subject: str
    outcomes: Sequence[RecipientOutcome] = field(default_factory=list)
    error: str | None = None

    @property
    def summary(self) -> DispatchSummary:
        succeeded = sum(1 for outcome in self.outcomes if outcome.success)
        return DispatchSummary(
            total=len(self.outcomes), succeeded=succeeded, failed=len(self.outcomes) - succeeded
        )

    @property
    def success(self) -> bool:
        return self.summary.succeeded > 0

    def outcome_for(self, recipient: str) -> RecipientOutcome | None:
        for outcome in self.outcomes:
            if outcome.recipient == recipient:
                return outcome
        return None

    @classmethod
    def aborted(
        cls, subject: str, error: BaseException | str, outcomes: Sequence[RecipientOutcome] = ()
    ) -> "DispatchResult":
        """A job cut short by ``error``; ``outcomes`` holds the recipients handled before it."""

        return cls(subject=subject, outcomes=list(outcomes), error=str(error) or type(error).__name__)

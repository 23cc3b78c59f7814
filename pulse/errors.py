"""Error taxonomy shared by the lifecycle engine and its adapters."""

from __future__ import annotations


class PulseError(RuntimeError):
    """Base error for ticket lifecycle issues."""


class TicketNotFoundError(PulseError):
    """Raised when an operation targets a non-existent ticket."""

    def __init__(self, ticket_id: int) -> None:
        super().__init__(f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class TicketConflictError(PulseError):
    """Raised for illegal transitions or when the ticket changed underneath the caller."""


class PermissionDeniedError(PulseError, PermissionError):
    """Raised when the acting user lacks the role an operation requires."""


class ValidationFailedError(PulseError, ValueError):
    """Raised for malformed input that reached the core, e.g. an unknown status."""

"""Database models and utilities."""

from .models import TicketHistoryTable, TicketTable

__all__ = [
    "TicketHistoryTable",
    "TicketTable",
]

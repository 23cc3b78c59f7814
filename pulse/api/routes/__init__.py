"""API route modules."""

from . import admin, notifications, tickets

__all__ = ["admin", "notifications", "tickets"]

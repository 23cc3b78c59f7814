"""SQLModel table definitions for the Pulse data layer."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class TicketTable(SQLModel, table=True):
    """Support tickets together with a snapshot of their creator."""

    __tablename__ = "tickets"

    id: int | None = Field(default=None, primary_key=True)
    ticket_number: str = Field(sa_column=Column(String(20), nullable=False, unique=True, index=True))
    title: str = Field(sa_column=Column(String(255), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    category_id: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    subcategory_id: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    subcategory_text: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    software_name: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    system_url: str | None = Field(default=None, sa_column=Column(String(500), nullable=True))
    type: str = Field(sa_column=Column(String(100), nullable=False))
    urgency: str = Field(sa_column=Column(String(20), nullable=False))
    status: str = Field(sa_column=Column(String(50), nullable=False, index=True))
    created_by: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    created_by_name: str = Field(sa_column=Column(String(255), nullable=False))
    created_by_email: str = Field(sa_column=Column(String(255), nullable=False))
    created_by_role: str = Field(sa_column=Column(String(50), nullable=False))
    requires_manager_approval: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    assigned_to: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    approved_by: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    approved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    rejected_by: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    rejected_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    remark: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    is_deleted: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, index=True))
    deleted_by: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    delete_reason: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketHistoryTable(SQLModel, table=True):
    """Append-only audit trail of field level ticket changes."""

    __tablename__ = "ticket_history"

    id: int | None = Field(default=None, primary_key=True)
    ticket_id: int = Field(
        sa_column=Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    changed_by: int = Field(sa_column=Column(Integer, nullable=False))
    field_name: str = Field(sa_column=Column(String(100), nullable=False))
    old_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    new_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    change_reason: str = Field(sa_column=Column(String(255), nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))

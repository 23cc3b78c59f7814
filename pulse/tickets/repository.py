from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Collection, Mapping, Protocol, Sequence

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from packages.db.models import TicketHistoryTable, TicketTable

from .audit import AuditLog
from .models import MUTABLE_TICKET_FIELDS, Actor, AuditChange, AuditEntry, Ticket, TicketMutation
from .state import Role, TicketStatus, Urgency


class TicketRepository(Protocol):
    """Transactional storage for tickets and their audit trail.

    ``update_ticket`` is a compare-and-swap: when ``expected_statuses`` is
    given the write only happens if the stored status is one of them, and
    ``None`` is returned when nothing was written. Soft-deleted tickets are
    never updated again and are left out of ``list_tickets``.
    """

    async def ensure_schema(self) -> None:
        ...

    async def insert_ticket(self, ticket: Ticket, changes: Sequence[AuditChange]) -> TicketMutation:
        ...

    async def update_ticket(
        self,
        ticket_id: int,
        *,
        changes: Mapping[str, Any],
        audit: Sequence[AuditChange],
        expected_statuses: Collection[TicketStatus] | None = None,
    ) -> TicketMutation | None:
        ...

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        ...

    async def list_tickets(
        self, *, created_by: int | None = None, assignable_to: int | None = None
    ) -> list[Ticket]:
        ...

    async def get_audit_log(self, ticket_id: int) -> list[AuditEntry]:
        ...


def _check_fields(changes: Mapping[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_TICKET_FIELDS
    if unknown:
        raise ValueError(f"Ticket fields cannot be changed after creation: {sorted(unknown)}")


class SqlTicketRepository:
    """Persistence helper wrapping the ``tickets`` and ``ticket_history`` tables.

    Each mutation and its audit rows share one transaction. Audit rows are
    written inside savepoints so that a failing insert only discards itself.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._audit_log = audit_log or AuditLog()

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def insert_ticket(self, ticket: Ticket, changes: Sequence[AuditChange]) -> TicketMutation:
        async with self._session_factory() as session:
            async with session.begin():
                row = self._ticket_to_table(ticket)
                session.add(row)
                await session.flush()
                assert row.id is not None
                appended = await self._audit_log.append(
                    lambda ticket_id, change, created_at: self._insert_audit(session, ticket_id, change, created_at),
                    row.id,
                    changes,
                    created_at=ticket.created_at,
                )
                stored = self._table_to_ticket(row)
        return TicketMutation(ticket=stored, audit_entries=appended.entries, audit_degraded=appended.degraded)

    async def update_ticket(
        self,
        ticket_id: int,
        *,
        changes: Mapping[str, Any],
        audit: Sequence[AuditChange],
        expected_statuses: Collection[TicketStatus] | None = None,
    ) -> TicketMutation | None:
        _check_fields(changes)
        values = {name: _column_value(value) for name, value in changes.items()}
        async with self._session_factory() as session:
            async with session.begin():
                # deleted tickets are frozen
                statement = update(TicketTable).where(
                    TicketTable.id == ticket_id, TicketTable.is_deleted.is_(False)
                )
                if expected_statuses is not None:
                    statement = statement.where(
                        TicketTable.status.in_([status.value for status in expected_statuses])
                    )
                result = await session.execute(
                    statement.values(**values).execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None

                row = await session.get(TicketTable, ticket_id, populate_existing=True)
                if row is None:
                    return None
                stamp = changes.get("updated_at") or datetime.now(timezone.utc)
                appended = await self._audit_log.append(
                    lambda target_id, change, created_at: self._insert_audit(session, target_id, change, created_at),
                    ticket_id,
                    audit,
                    created_at=stamp,
                )
                stored = self._table_to_ticket(row)
        return TicketMutation(ticket=stored, audit_entries=appended.entries, audit_degraded=appended.degraded)

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        async with self._session_factory() as session:
            row = await session.get(TicketTable, ticket_id)
            if row is None:
                return None
            return self._table_to_ticket(row)

    async def list_tickets(
        self, *, created_by: int | None = None, assignable_to: int | None = None
    ) -> list[Ticket]:
        statement = select(TicketTable).where(TicketTable.is_deleted.is_(False))
        if created_by is not None:
            statement = statement.where(TicketTable.created_by == created_by)
        if assignable_to is not None:
            statement = statement.where(
                or_(TicketTable.assigned_to == assignable_to, TicketTable.assigned_to.is_(None))
            )
        statement = statement.order_by(TicketTable.created_at.desc(), TicketTable.id.desc())
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def get_audit_log(self, ticket_id: int) -> list[AuditEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketHistoryTable)
                .where(TicketHistoryTable.ticket_id == ticket_id)
                .order_by(TicketHistoryTable.created_at.asc(), TicketHistoryTable.id.asc())
            )
            return [self._table_to_audit(row) for row in result.scalars().all()]

    async def _insert_audit(
        self, session: AsyncSession, ticket_id: int, change: AuditChange, created_at: datetime
    ) -> AuditEntry:
        async with session.begin_nested():
            row = TicketHistoryTable(
                ticket_id=ticket_id,
                changed_by=change.changed_by,
                field_name=change.field_name,
                old_value=change.old_value,
                new_value=change.new_value,
                change_reason=change.reason,
                created_at=created_at,
            )
            session.add(row)
            await session.flush()
        return self._table_to_audit(row)

    @staticmethod
    def _ticket_to_table(ticket: Ticket) -> TicketTable:
        return TicketTable(
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            description=ticket.description,
            category_id=ticket.category_id,
            subcategory_id=ticket.subcategory_id,
            subcategory_text=ticket.subcategory_text,
            software_name=ticket.software_name,
            system_url=ticket.system_url,
            type=ticket.type,
            urgency=ticket.urgency.value,
            status=ticket.status.value,
            created_by=ticket.creator.id,
            created_by_name=ticket.creator.name,
            created_by_email=ticket.creator.email,
            created_by_role=ticket.creator.role.value,
            requires_manager_approval=ticket.requires_approval,
            assigned_to=ticket.assigned_to,
            remark=ticket.remark,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
        )

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            ticket_number=row.ticket_number,
            title=row.title,
            description=row.description,
            type=row.type,
            urgency=Urgency(row.urgency),
            status=TicketStatus(row.status),
            creator=Actor(
                id=row.created_by,
                name=row.created_by_name,
                email=row.created_by_email,
                role=Role(row.created_by_role),
            ),
            requires_approval=bool(row.requires_manager_approval),
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            category_id=row.category_id,
            subcategory_id=row.subcategory_id,
            subcategory_text=row.subcategory_text,
            software_name=row.software_name,
            system_url=row.system_url,
            assigned_to=row.assigned_to,
            approved_by=row.approved_by,
            approved_at=_optional_datetime(row.approved_at),
            rejected_by=row.rejected_by,
            rejected_at=_optional_datetime(row.rejected_at),
            resolved_at=_optional_datetime(row.resolved_at),
            remark=row.remark,
            is_deleted=bool(row.is_deleted),
            deleted_by=row.deleted_by,
            deleted_at=_optional_datetime(row.deleted_at),
            delete_reason=row.delete_reason,
        )

    @staticmethod
    def _table_to_audit(row: TicketHistoryTable) -> AuditEntry:
        if row.id is None:
            raise RuntimeError("Audit row has not been flushed")
        return AuditEntry(
            id=row.id,
            ticket_id=row.ticket_id,
            field_name=row.field_name,
            old_value=row.old_value,
            new_value=row.new_value,
            change_reason=row.change_reason,
            changed_by=row.changed_by,
            created_at=_ensure_datetime(row.created_at),
        )


class InMemoryTicketRepository:
    """Dict backed repository with the same compare-and-swap contract.

    Writes are serialised with an ``asyncio.Lock``; stored tickets are never
    handed out directly, callers always receive copies.
    """

    def __init__(self, *, audit_log: AuditLog | None = None) -> None:
        self._audit_log = audit_log or AuditLog()
        self._tickets: dict[int, Ticket] = {}
        self._history: list[AuditEntry] = []
        self._ticket_ids = itertools.count(1)
        self._audit_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        return None

    async def insert_ticket(self, ticket: Ticket, changes: Sequence[AuditChange]) -> TicketMutation:
        async with self._lock:
            stored = replace(ticket, id=next(self._ticket_ids))
            self._tickets[stored.id] = stored
            appended = await self._audit_log.append(
                self._insert_audit, stored.id, changes, created_at=stored.created_at
            )
            return TicketMutation(
                ticket=replace(stored), audit_entries=appended.entries, audit_degraded=appended.degraded
            )

    async def update_ticket(
        self,
        ticket_id: int,
        *,
        changes: Mapping[str, Any],
        audit: Sequence[AuditChange],
        expected_statuses: Collection[TicketStatus] | None = None,
    ) -> TicketMutation | None:
        _check_fields(changes)
        async with self._lock:
            current = self._tickets.get(ticket_id)
            if current is None or current.is_deleted:
                return None
            if expected_statuses is not None and current.status not in expected_statuses:
                return None
            stored = replace(current, **changes)
            self._tickets[ticket_id] = stored
            appended = await self._audit_log.append(
                self._insert_audit,
                ticket_id,
                audit,
                created_at=changes.get("updated_at") or datetime.now(timezone.utc),
            )
            return TicketMutation(
                ticket=replace(stored), audit_entries=appended.entries, audit_degraded=appended.degraded
            )

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return None if ticket is None else replace(ticket)

    async def list_tickets(
        self, *, created_by: int | None = None, assignable_to: int | None = None
    ) -> list[Ticket]:
        tickets = [ticket for ticket in self._tickets.values() if not ticket.is_deleted]
        if created_by is not None:
            tickets = [ticket for ticket in tickets if ticket.creator.id == created_by]
        if assignable_to is not None:
            tickets = [ticket for ticket in tickets if ticket.assigned_to in (None, assignable_to)]
        tickets.sort(key=lambda ticket: (ticket.created_at, ticket.id or 0), reverse=True)
        return [replace(ticket) for ticket in tickets]

    async def get_audit_log(self, ticket_id: int) -> list[AuditEntry]:
        return [entry for entry in self._history if entry.ticket_id == ticket_id]

    async def _insert_audit(self, ticket_id: int, change: AuditChange, created_at: datetime) -> AuditEntry:
        entry = AuditEntry(
            id=next(self._audit_ids),
            ticket_id=ticket_id,
            field_name=change.field_name,
            old_value=change.old_value,
            new_value=change.new_value,
            change_reason=change.reason,
            changed_by=change.changed_by,
            created_at=created_at,
        )
        self._history.append(entry)
        return entry


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _optional_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return _ensure_datetime(value)


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")

from __future__ import annotations

import asyncio

import pytest

from pulse.errors import PermissionDeniedError, TicketConflictError, TicketNotFoundError, ValidationFailedError
from pulse.tickets import (
    AuditLog,
    InMemoryTicketRepository,
    LifecycleAction,
    LifecycleEngine,
    LifecycleEventKind,
    TicketStatus,
)


class SlowReadRepository(InMemoryTicketRepository):
    """Yields after every read so concurrent callers observe the same snapshot."""

    async def get_ticket(self, ticket_id):
        ticket = await super().get_ticket(ticket_id)
        await asyncio.sleep(0)
        return ticket


@pytest.mark.asyncio
async def test_general_user_ticket_starts_open_with_creation_audit(engine, general_user, draft):
    result = await engine.create_ticket(draft, general_user)

    assert result.ticket.status is TicketStatus.OPEN
    assert result.ticket.requires_approval is False
    assert result.ticket.ticket_number.startswith("TK20240501")
    assert result.event.kind is LifecycleEventKind.CREATED

    history = await engine.get_history(result.ticket.id)
    assert len(history) == 1
    assert history[0].change_reason == "Ticket created"
    assert history[0].old_value is None
    assert history[0].new_value == "Open"


@pytest.mark.asyncio
async def test_digital_team_ticket_waits_for_approval(engine, digital_user, draft):
    result = await engine.create_ticket(draft, digital_user)

    assert result.ticket.status is TicketStatus.PENDING_APPROVAL
    assert result.ticket.requires_approval is True


@pytest.mark.asyncio
async def test_manager_approves_pending_ticket(engine, digital_user, manager, draft):
    created = await engine.create_ticket(draft, digital_user)

    result = await engine.approve(created.ticket.id, manager)

    assert result.ticket.status is TicketStatus.OPEN
    assert result.ticket.approved_by == manager.id
    assert result.ticket.approved_at is not None
    assert result.event.kind is LifecycleEventKind.APPROVED
    assert [entry.new_value for entry in result.audit_entries] == ["Open"]


@pytest.mark.asyncio
async def test_rejected_ticket_is_terminal(engine, digital_user, manager, draft):
    created = await engine.create_ticket(draft, digital_user)

    result = await engine.reject(created.ticket.id, manager)

    assert result.ticket.status is TicketStatus.REJECTED
    assert result.ticket.rejected_by == manager.id
    assert result.ticket.rejected_at is not None
    assert result.audit_entries[0].change_reason == "Ticket rejected by manager"

    with pytest.raises(TicketConflictError):
        await engine.approve(created.ticket.id, manager)
    with pytest.raises(TicketConflictError):
        await engine.update_status(created.ticket.id, status=TicketStatus.OPEN, actor=manager)
    with pytest.raises(TicketConflictError):
        await engine.add_remark(created.ticket.id, remark="reopen please", actor=manager)


@pytest.mark.asyncio
async def test_approving_ticket_not_pending_leaves_no_trace(engine, general_user, manager, draft):
    created = await engine.create_ticket(draft, general_user)
    before = await engine.get_ticket(created.ticket.id)

    with pytest.raises(TicketConflictError):
        await engine.approve(created.ticket.id, manager)
    with pytest.raises(TicketConflictError):
        await engine.reject(created.ticket.id, manager)

    after = await engine.get_ticket(created.ticket.id)
    assert after == before
    assert len(await engine.get_history(created.ticket.id)) == 1


@pytest.mark.asyncio
async def test_permission_is_checked_before_lookup(engine, general_user, digital_user):
    with pytest.raises(PermissionDeniedError):
        await engine.approve(999, digital_user)
    with pytest.raises(PermissionDeniedError):
        await engine.update_status(999, status=TicketStatus.CLOSED, actor=general_user)


@pytest.mark.asyncio
async def test_missing_ticket_raises_not_found(engine, manager):
    with pytest.raises(TicketNotFoundError):
        await engine.approve(42, manager)
    with pytest.raises(TicketNotFoundError):
        await engine.get_history(42)


@pytest.mark.asyncio
async def test_status_update_with_assignment_writes_two_entries(engine, general_user, digital_user, draft):
    created = await engine.create_ticket(draft, general_user)

    result = await engine.update_status(
        created.ticket.id, status="In Progress", actor=digital_user, assigned_to=digital_user.id
    )

    assert result.ticket.status is TicketStatus.IN_PROGRESS
    assert result.ticket.assigned_to == digital_user.id
    assert result.ticket.resolved_at is None
    assert [(entry.field_name, entry.new_value) for entry in result.audit_entries] == [
        ("status", "In Progress"),
        ("assigned_to", str(digital_user.id)),
    ]


@pytest.mark.asyncio
async def test_resolving_sets_resolved_at(engine, general_user, manager, draft):
    created = await engine.create_ticket(draft, general_user)

    result = await engine.update_status(created.ticket.id, status=TicketStatus.RESOLVED, actor=manager)

    assert result.ticket.resolved_at is not None
    closed = await engine.update_status(created.ticket.id, status=TicketStatus.CLOSED, actor=manager)
    assert closed.ticket.status is TicketStatus.CLOSED


@pytest.mark.asyncio
async def test_unknown_status_is_rejected_as_validation_error(engine, general_user, manager, draft):
    created = await engine.create_ticket(draft, general_user)

    with pytest.raises(ValidationFailedError):
        await engine.update_status(created.ticket.id, status="Escalated", actor=manager)


@pytest.mark.asyncio
async def test_remark_with_status_change(engine, general_user, admin, draft):
    created = await engine.create_ticket(draft, general_user)

    result = await engine.add_remark(
        created.ticket.id, remark="Replaced the disk", actor=admin, status=TicketStatus.RESOLVED
    )

    assert result.ticket.remark == "Replaced the disk"
    assert result.ticket.status is TicketStatus.RESOLVED
    assert result.event.kind is LifecycleEventKind.REMARK_ADDED
    assert result.event.remark == "Replaced the disk"
    assert [entry.change_reason for entry in result.audit_entries] == ["Remark added", "Status updated with remark"]


@pytest.mark.asyncio
async def test_blank_remark_is_invalid(engine, general_user, admin, draft):
    created = await engine.create_ticket(draft, general_user)

    with pytest.raises(ValidationFailedError):
        await engine.add_remark(created.ticket.id, remark="   ", actor=admin)


@pytest.mark.asyncio
async def test_each_transition_writes_one_status_entry_matching_result(engine, digital_user, manager, draft):
    created = await engine.create_ticket(draft, digital_user)
    ticket_id = created.ticket.id

    results = [
        await engine.transition(ticket_id, LifecycleAction.APPROVE, manager),
        await engine.transition(ticket_id, "update_status", manager, status="In Progress", assigned_to=2),
        await engine.transition(ticket_id, LifecycleAction.ADD_REMARK, manager, remark="done", status="Resolved"),
        await engine.transition(ticket_id, LifecycleAction.UPDATE_STATUS, manager, status="Closed"),
    ]

    for result in results:
        status_entries = [entry for entry in result.audit_entries if entry.field_name == "status"]
        assert len(status_entries) == 1
        assert status_entries[0].new_value == result.ticket.status.value


@pytest.mark.asyncio
async def test_unknown_action_is_invalid(engine, manager):
    with pytest.raises(ValidationFailedError):
        await engine.transition(1, "escalate", manager)


@pytest.mark.asyncio
async def test_concurrent_approvals_have_one_winner(registry, clock, digital_user, manager, draft):
    engine = LifecycleEngine(
        SlowReadRepository(audit_log=AuditLog(registry=registry)), clock=clock, registry=registry
    )
    created = await engine.create_ticket(draft, digital_user)

    outcomes = await asyncio.gather(
        engine.approve(created.ticket.id, manager),
        engine.approve(created.ticket.id, manager),
        return_exceptions=True,
    )

    successes = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
    conflicts = [outcome for outcome in outcomes if isinstance(outcome, TicketConflictError)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    assert successes[0].ticket.status is TicketStatus.OPEN
    assert "concurrently" in str(conflicts[0])
    assert len(await engine.get_history(created.ticket.id)) == 2


@pytest.mark.asyncio
async def test_transitions_are_counted(engine, registry, general_user, manager, draft):
    created = await engine.create_ticket(draft, general_user)
    await engine.update_status(created.ticket.id, status="In Progress", actor=manager)

    counter = registry.counter("ticket_transitions_total", label_names=("action",))
    assert counter.value(labels={"action": "create"}) == 1
    assert counter.value(labels={"action": "update_status"}) == 1


@pytest.mark.asyncio
async def test_listing_filters_by_creator_and_assignment(engine, general_user, manager, digital_user, draft):
    mine = await engine.create_ticket(draft, general_user)
    other = await engine.create_ticket(draft, manager)
    await engine.update_status(other.ticket.id, status="In Progress", actor=manager, assigned_to=manager.id)

    own = await engine.list_tickets(created_by=general_user.id)
    queue = await engine.list_tickets(assignable_to=digital_user.id)

    assert [ticket.id for ticket in own] == [mine.ticket.id]
    assert [ticket.id for ticket in queue] == [mine.ticket.id]
    assert len(await engine.list_tickets()) == 2


@pytest.mark.asyncio
async def test_admin_soft_delete_hides_ticket_and_keeps_history(engine, repository, general_user, admin, draft):
    created = await engine.create_ticket(draft, general_user)

    result = await engine.delete_ticket(created.ticket.id, admin, reason="Duplicate of TK1")

    assert result.ticket.is_deleted is True
    assert result.ticket.deleted_by == admin.id
    assert result.ticket.delete_reason == "Duplicate of TK1"
    assert result.event.kind is LifecycleEventKind.DELETED
    assert await engine.list_tickets() == []
    assert await engine.list_tickets(created_by=general_user.id) == []
    with pytest.raises(TicketNotFoundError):
        await engine.get_ticket(created.ticket.id)

    history = await repository.get_audit_log(created.ticket.id)
    assert [(entry.field_name, entry.new_value, entry.change_reason) for entry in history] == [
        ("status", "Open", "Ticket created"),
        ("is_deleted", "True", "Duplicate of TK1"),
    ]


@pytest.mark.asyncio
async def test_delete_requires_admin_before_lookup(engine, manager, digital_user):
    with pytest.raises(PermissionDeniedError):
        await engine.delete_ticket(999, manager)
    with pytest.raises(PermissionDeniedError):
        await engine.transition(999, LifecycleAction.DELETE, digital_user)


@pytest.mark.asyncio
async def test_deleted_ticket_accepts_no_further_changes(engine, general_user, manager, admin, draft):
    created = await engine.create_ticket(draft, general_user)
    deleted = await engine.transition(created.ticket.id, "delete", admin)

    assert deleted.audit_entries[0].change_reason == "Deleted by admin"
    with pytest.raises(TicketNotFoundError):
        await engine.delete_ticket(created.ticket.id, admin)
    with pytest.raises(TicketNotFoundError):
        await engine.update_status(created.ticket.id, status="Closed", actor=manager)


@pytest.mark.asyncio
async def test_concurrent_deletes_have_one_winner(registry, clock, general_user, admin, draft):
    repository = SlowReadRepository(audit_log=AuditLog(registry=registry))
    engine = LifecycleEngine(repository, clock=clock, registry=registry)
    created = await engine.create_ticket(draft, general_user)

    outcomes = await asyncio.gather(
        engine.delete_ticket(created.ticket.id, admin),
        engine.delete_ticket(created.ticket.id, admin),
        return_exceptions=True,
    )

    assert len([outcome for outcome in outcomes if not isinstance(outcome, Exception)]) == 1
    assert len([outcome for outcome in outcomes if isinstance(outcome, TicketConflictError)]) == 1
    assert len(await repository.get_audit_log(created.ticket.id)) == 2

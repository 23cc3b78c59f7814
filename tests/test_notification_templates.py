from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from pulse.notifications import NotificationKind, NotificationTemplate


@pytest.mark.asyncio
async def test_rendering_ignores_footer_timestamp(engine, template, general_user, draft):
    ticket = (await engine.create_ticket(draft, general_user)).ticket

    first = template.render(
        NotificationKind.TICKET_CREATED, ticket, general_user, generated_at=datetime(2024, 1, 1, tzinfo=timezone.utc)
    )
    second = template.render(
        NotificationKind.TICKET_CREATED, ticket, general_user, generated_at=datetime(2025, 6, 1, tzinfo=timezone.utc)
    )

    assert first.subject == second.subject
    assert first.content == second.content
    assert first.footer != second.footer
    assert "2025-06-01" in second.body


@pytest.mark.asyncio
async def test_html_in_ticket_fields_is_escaped(engine, template, general_user, draft):
    ticket = (await engine.create_ticket(replace(draft, description="<script>alert(1)</script>"), general_user)).ticket

    rendered = template.render(NotificationKind.TICKET_CREATED, ticket, general_user)

    assert "<script>" not in rendered.body
    assert "&lt;script&gt;" in rendered.body


@pytest.mark.asyncio
async def test_update_body_links_ticket_and_includes_remark(engine, template, general_user, manager, draft):
    ticket = (await engine.create_ticket(draft, general_user)).ticket

    rendered = template.render(NotificationKind.TICKET_UPDATED, ticket, manager, remark="Parts ordered")

    assert rendered.subject == f"Ticket Update - {ticket.ticket_number}"
    assert f"https://support.example.com/tickets/{ticket.id}" in rendered.body
    assert "Parts ordered" in rendered.body
    assert manager.name in rendered.body


def test_derivative_prefixes_subject_and_names_primary():
    template = NotificationTemplate(copy_subject_prefix="[CC] ")

    subject, body = template.derivative("Ticket Update - TK1", "<p>body</p>", "owner@example.com")

    assert subject == "[CC] Ticket Update - TK1"
    assert "owner@example.com" in body
    assert body.endswith("<p>body</p>")

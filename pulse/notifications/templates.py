"""Deterministic subject and HTML body rendering for lifecycle notifications."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from jinja2 import Environment, StrictUndefined

from pulse.tickets.models import Actor, Ticket

from .models import NotificationKind

SUBJECT_TEMPLATES: Mapping[NotificationKind, str] = {
    NotificationKind.TICKET_CREATED: "New Support Ticket Created - {{ ticket.ticket_number }}",
    NotificationKind.TICKET_UPDATED: "Ticket Update - {{ ticket.ticket_number }}",
    NotificationKind.APPROVAL_REQUIRED: "Manager Approval Required - {{ ticket.ticket_number }}",
}

_TICKET_DETAILS = """\
<h3>Ticket Details</h3>
<p><strong>Ticket Number:</strong> {{ ticket.ticket_number }}</p>
<p><strong>Title:</strong> {{ ticket.title }}</p>
<p><strong>Type:</strong> {{ ticket.type }}</p>
<p><strong>Urgency:</strong> {{ ticket.urgency }}</p>
<p><strong>Status:</strong> {{ ticket.status }}</p>
"""

BODY_TEMPLATES: Mapping[NotificationKind, str] = {
    NotificationKind.TICKET_CREATED: (
        "<h2>New Support Ticket Created</h2>\n"
        + _TICKET_DETAILS
        + """\
<h3>Submitted By</h3>
<p><strong>Name:</strong> {{ actor.name }}</p>
<p><strong>Email:</strong> {{ actor.email }}</p>
<h3>Description</h3>
<p style="white-space: pre-wrap;">{{ ticket.description }}</p>
<p><a href="{{ system_url }}">Access Support System</a></p>
"""
    ),
    NotificationKind.TICKET_UPDATED: """\
<h2>Ticket Status Updated</h2>
<h3>Ticket Information</h3>
<p><strong>Ticket Number:</strong> {{ ticket.ticket_number }}</p>
<p><strong>Title:</strong> {{ ticket.title }}</p>
<p><strong>New Status:</strong> {{ ticket.status }}</p>
<h3>Update Details</h3>
<p><strong>Updated by:</strong> {{ actor.name }}</p>
{% if remark %}<p><strong>Remarks:</strong></p>
<p style="white-space: pre-wrap;">{{ remark }}</p>
{% endif %}<p><a href="{{ system_url }}/tickets/{{ ticket.id }}">View Ticket Details</a></p>
""",
    NotificationKind.APPROVAL_REQUIRED: (
        "<h2>Manager Approval Required</h2>\n"
        "<p>A ticket was created that requires your approval before it can be processed.</p>\n"
        + _TICKET_DETAILS
        + """\
<h3>Created By</h3>
<p><strong>Name:</strong> {{ actor.name }}</p>
<p><strong>Email:</strong> {{ actor.email }}</p>
<p><strong>Role:</strong> {{ actor.role }}</p>
<h3>Description</h3>
<p style="white-space: pre-wrap;">{{ ticket.description }}</p>
<p><a href="{{ system_url }}/tickets/{{ ticket.id }}">Review &amp; Approve Ticket</a></p>
"""
    ),
}

FOOTER_TEMPLATE = """\
<p style="color: #6c757d; font-size: 14px;">This is an automated notification from the Support Ticket System\
{% if generated_at %} ({{ generated_at }}){% endif %}</p>
"""

COPY_NOTE_TEMPLATE = """\
<p style="color: #856404;"><em>This is a copy of the notification sent to {{ primary }}.</em></p>
"""


@dataclass(frozen=True, slots=True)
class RenderedNotification:
    subject: str
    content: str
    footer: str

    @property
    def body(self) -> str:
        return self.content + self.footer


class NotificationTemplate:
    """Render notification kinds into subjects and HTML bodies.

    Rendering is a pure function of its arguments. The only time dependent
    value, ``generated_at``, is confined to the footer.
    """

    def __init__(self, *, system_url: str = "", copy_subject_prefix: str = "[COPY] ") -> None:
        self._system_url = system_url.rstrip("/")
        self._copy_subject_prefix = copy_subject_prefix
        self._html = Environment(undefined=StrictUndefined, autoescape=True, keep_trailing_newline=True)
        self._text = Environment(undefined=StrictUndefined, autoescape=False)

    def render(
        self,
        kind: NotificationKind,
        ticket: Ticket,
        actor: Actor,
        *,
        remark: str | None = None,
        generated_at: datetime | None = None,
    ) -> RenderedNotification:
        variables = {
            "ticket": self._ticket_context(ticket),
            "actor": {"name": actor.name, "email": actor.email, "role": actor.role.value},
            "remark": remark,
            "system_url": self._system_url,
        }
        subject = self._text.from_string(SUBJECT_TEMPLATES[kind]).render(**variables)
        content = self._html.from_string(BODY_TEMPLATES[kind]).render(**variables)
        footer = self._html.from_string(FOOTER_TEMPLATE).render(
            generated_at=generated_at.isoformat(timespec="seconds") if generated_at else None
        )
        return RenderedNotification(subject=" ".join(subject.split()), content=content, footer=footer)

    def derivative(self, subject: str, body: str, primary: str) -> tuple[str, str]:
        """Return the CC copy of a message: prefixed subject, body noting the primary recipient."""

        note = self._html.from_string(COPY_NOTE_TEMPLATE).render(primary=primary)
        return f"{self._copy_subject_prefix}{subject}", note + body

    @staticmethod
    def _ticket_context(ticket: Ticket) -> dict[str, Any]:
        return {
            "id": ticket.id,
            "ticket_number": ticket.ticket_number,
            "title": ticket.title,
            "type": ticket.type,
            "urgency": ticket.urgency.value,
            "status": ticket.status.value,
            "description": ticket.description,
        }

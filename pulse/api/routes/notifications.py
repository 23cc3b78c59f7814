from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from pulse.core.config import Settings, get_settings
from pulse.dependencies.tickets import DispatchEngineDep, NotifierActor
from pulse.metrics import MetricsRegistry, metrics_registry
from pulse.notifications import DispatchResult, RecipientOutcome

router = APIRouter(tags=["notifications"])

TEST_SUBJECT = "Test Email - Support Ticket System"

# Settings without which notifications cannot go out.
_REQUIRED_MAIL_SETTINGS = ("mail_gateway_url", "ops_team_email", "approver_email")


class EmailTestRequest(BaseModel):
    to: str = Field(min_length=3)
    subject: str = TEST_SUBJECT


class RecipientOutcomeModel(BaseModel):
    recipient: str
    derivative: bool
    success: bool
    connect_attempts: int
    send_attempts: int
    duration: float
    failure_kind: str | None = None
    diagnostic: str | None = None

    @classmethod
    def from_entity(cls, outcome: RecipientOutcome) -> "RecipientOutcomeModel":
        return cls(
            recipient=outcome.recipient,
            derivative=outcome.derivative,
            success=outcome.success,
            connect_attempts=outcome.connect_attempts,
            send_attempts=outcome.send_attempts,
            duration=outcome.duration,
            failure_kind=outcome.failure_kind.value if outcome.failure_kind else None,
            diagnostic=outcome.diagnostic,
        )


class DispatchResultModel(BaseModel):
    subject: str
    success: bool
    total: int
    succeeded: int
    failed: int
    outcomes: list[RecipientOutcomeModel]
    error: str | None = None

    @classmethod
    def from_entity(cls, result: DispatchResult) -> "DispatchResultModel":
        summary = result.summary
        return cls(
            subject=result.subject,
            success=result.success,
            total=summary.total,
            succeeded=summary.succeeded,
            failed=summary.failed,
            outcomes=[RecipientOutcomeModel.from_entity(outcome) for outcome in result.outcomes],
            error=result.error,
        )


class MailHealthModel(BaseModel):
    status: str
    gateway_url: str
    reachable: bool
    latency: float
    failure_kind: str | None = None
    diagnostic: str | None = None
    checked_at: str


class MailConfigModel(BaseModel):
    gateway_url: str
    gateway_namespace: str
    gateway_contract: str
    connect_timeout: float
    send_timeout: float
    connect_attempts: int
    connect_backoff_base: float
    send_attempts: int
    send_backoff_base: float
    cc_send_delay: float
    ops_team_email: str
    approver_email: str
    missing: list[str]


@router.post("/notifications/test", response_model=DispatchResultModel)
async def send_test_email(
    payload: EmailTestRequest,
    dispatcher: DispatchEngineDep,
    actor: NotifierActor,
) -> DispatchResultModel:
    """Send one email through the mail gateway and report how it went."""

    sent_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
    body = (
        "<h2>Email Configuration Test</h2>"
        f"<p>Requested by {actor.name} at {sent_at}.</p>"
        "<p>If you received this message, the mail gateway is working.</p>"
    )
    outcome = await dispatcher.send_one(payload.to, payload.subject, body)
    return DispatchResultModel.from_entity(DispatchResult(subject=payload.subject, outcomes=[outcome]))


@router.get("/email/health", response_model=MailHealthModel)
async def mail_gateway_health(
    response: Response,
    dispatcher: DispatchEngineDep,
    settings: Annotated[Settings, Depends(get_settings)],
    actor: NotifierActor,
) -> MailHealthModel:
    """Check that the mail gateway accepts a connection."""

    health = await dispatcher.check_gateway()
    if not health.reachable:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return MailHealthModel(
        status="healthy" if health.reachable else "unhealthy",
        gateway_url=settings.mail_gateway_url,
        reachable=health.reachable,
        latency=health.latency,
        failure_kind=health.failure_kind.value if health.failure_kind else None,
        diagnostic=health.diagnostic,
        checked_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
    )


@router.get("/email/config", response_model=MailConfigModel)
async def mail_configuration(
    settings: Annotated[Settings, Depends(get_settings)],
    actor: NotifierActor,
) -> MailConfigModel:
    missing = [name for name in _REQUIRED_MAIL_SETTINGS if not getattr(settings, name)]
    return MailConfigModel(
        gateway_url=settings.mail_gateway_url,
        gateway_namespace=settings.mail_gateway_namespace,
        gateway_contract=settings.mail_gateway_contract,
        connect_timeout=settings.mail_connect_timeout,
        send_timeout=settings.mail_send_timeout,
        connect_attempts=settings.mail_connect_attempts,
        connect_backoff_base=settings.mail_connect_backoff_base,
        send_attempts=settings.mail_send_attempts,
        send_backoff_base=settings.mail_send_backoff_base,
        cc_send_delay=settings.mail_cc_send_delay,
        ops_team_email=settings.ops_team_email,
        approver_email=settings.approver_email,
        missing=missing,
    )


@router.get("/metrics", response_class=PlainTextResponse, include_in_schema=False)
async def render_metrics(request: Request) -> str:
    registry: MetricsRegistry = getattr(request.app.state, "metrics_registry", None) or metrics_registry
    return registry.render_prometheus()

"""Fan-out of one notification to a primary recipient and derivative CC copies."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from opentelemetry import trace

from pulse.core.config import Settings
from pulse.metrics import MetricsRegistry, metrics_registry

from .models import DispatchResult, GatewayHealth, NotificationJob, RecipientOutcome
from .retry import Backoff, RetryPolicy, Sleep, retry_async
from .templates import NotificationTemplate
from .transport import MailHandle, MailTransport, TransportError

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)


@dataclass(frozen=True, slots=True)
class DispatchConfig:
    """Retry counts and delays, all in seconds."""

    connect_attempts: int = 3
    connect_backoff_base: float = 2.0
    send_attempts: int = 2
    send_backoff_base: float = 3.0
    cc_send_delay: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "DispatchConfig":
        return cls(
            connect_attempts=settings.mail_connect_attempts,
            connect_backoff_base=settings.mail_connect_backoff_base,
            send_attempts=settings.mail_send_attempts,
            send_backoff_base=settings.mail_send_backoff_base,
            cc_send_delay=settings.mail_cc_send_delay,
        )

    @property
    def connect_policy(self) -> RetryPolicy:
        return RetryPolicy(self.connect_attempts, self.connect_backoff_base, Backoff.EXPONENTIAL)

    @property
    def send_policy(self) -> RetryPolicy:
        return RetryPolicy(self.send_attempts, self.send_backoff_base, Backoff.LINEAR)


class DispatchEngine:
    """Deliver notification jobs through a :class:`MailTransport`.

    Each recipient is handled independently: its own handle, its own retry
    budget, its own outcome. CC copies go out one at a time with
    ``cc_send_delay`` before each, which keeps the gateway from being flooded.
    """

    def __init__(
        self,
        transport: MailTransport,
        template: NotificationTemplate,
        *,
        config: DispatchConfig | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        registry: MetricsRegistry | None = None,
    ) -> None:
        self._transport = transport
        self._template = template
        self._config = config or DispatchConfig()
        self._sleep = sleep
        self._clock = clock
        registry = registry or metrics_registry
        self._dispatches = registry.counter(
            "notification_dispatch_total", description="Notification jobs dispatched.", label_names=("outcome",)
        )
        self._sends = registry.counter(
            "notification_send_total",
            description="Per-recipient email sends by outcome and failure kind.",
            label_names=("outcome", "kind"),
        )
        self._send_duration = registry.distribution(
            "notification_send_duration_seconds", description="Duration of per-recipient sends."
        )

    async def dispatch(self, job: NotificationJob) -> DispatchResult:
        return await self._dispatch(job, [])

    async def safe_dispatch(self, job: NotificationJob) -> DispatchResult:
        """Like :meth:`dispatch` but converts any unexpected fault into a failed result.

        Recipients handled before the fault keep their outcomes, so a primary
        that was already reached still counts towards ``success``.
        """

        outcomes: list[RecipientOutcome] = []
        try:
            return await self._dispatch(job, outcomes)
        except Exception as exc:
            logger.exception(
                "Notification %r aborted after %d of %d recipients", job.subject, len(outcomes), 1 + len(job.cc)
            )
            result = DispatchResult.aborted(job.subject, exc, outcomes)
            self._dispatches.inc(labels={"outcome": "success" if result.success else "failure"})
            return result

    async def send_one(self, recipient: str, subject: str, body: str) -> RecipientOutcome:
        return await self._deliver(recipient, subject, body, derivative=False)

    async def check_gateway(self) -> GatewayHealth:
        """Open and release one gateway handle, without retries."""

        started = self._clock()
        try:
            handle = await self._transport.connect()
        except TransportError as exc:
            logger.warning("Mail gateway health check failed: %s", exc.diagnostic)
            return GatewayHealth(
                reachable=False,
                latency=self._clock() - started,
                failure_kind=exc.kind,
                diagnostic=exc.diagnostic,
            )
        await self._transport.release(handle)
        return GatewayHealth(reachable=True, latency=self._clock() - started)

    async def _dispatch(self, job: NotificationJob, outcomes: list[RecipientOutcome]) -> DispatchResult:
        with _tracer.start_as_current_span("notification.dispatch") as span:
            span.set_attribute("notification.primary", job.primary)
            span.set_attribute("notification.cc_count", len(job.cc))
            if job.kind is not None:
                span.set_attribute("notification.kind", job.kind.value)

            outcomes.append(await self._deliver(job.primary, job.subject, job.body, derivative=False))
            delivered_to = {job.primary}
            for recipient in job.cc:
                if recipient in delivered_to:
                    logger.debug("Skipping duplicate recipient %s for %r", recipient, job.subject)
                    continue
                delivered_to.add(recipient)
                try:
                    subject, body = self._cc_message(job)
                except Exception as exc:
                    logger.exception("Could not build the copy of %r for %s", job.subject, recipient)
                    outcomes.append(self._unrendered(recipient, exc, derivative=job.cc_is_derivative))
                    continue
                if self._config.cc_send_delay > 0:
                    await self._sleep(self._config.cc_send_delay)
                outcomes.append(await self._deliver(recipient, subject, body, derivative=job.cc_is_derivative))

            result = DispatchResult(subject=job.subject, outcomes=list(outcomes))
            summary = result.summary
            span.set_attribute("notification.succeeded", summary.succeeded)
            span.set_attribute("notification.failed", summary.failed)

        self._dispatches.inc(labels={"outcome": "success" if result.success else "failure"})
        log = logger.info if summary.failed == 0 else logger.warning
        log(
            "Notification %r dispatched: %d/%d recipients reached",
            job.subject,
            summary.succeeded,
            summary.total,
        )
        return result

    def _cc_message(self, job: NotificationJob) -> tuple[str, str]:
        if job.cc_is_derivative:
            return self._template.derivative(job.subject, job.body, job.primary)
        return job.subject, job.body

    def _unrendered(self, recipient: str, exc: Exception, *, derivative: bool) -> RecipientOutcome:
        self._sends.inc(labels={"outcome": "failure", "kind": "render"})
        return RecipientOutcome(
            recipient=recipient,
            derivative=derivative,
            success=False,
            diagnostic=f"Message could not be rendered: {exc}",
        )

    async def _deliver(self, recipient: str, subject: str, body: str, *, derivative: bool) -> RecipientOutcome:
        started = self._clock()
        outcome = RecipientOutcome(recipient=recipient, derivative=derivative, success=False)
        with _tracer.start_as_current_span("notification.send") as span:
            span.set_attribute("notification.recipient", recipient)
            span.set_attribute("notification.derivative", derivative)

            connected = await retry_async(
                self._transport.connect,
                self._config.connect_policy,
                sleep=self._sleep,
                retry_on=(TransportError,),
                on_failure=lambda attempt, exc: self._log_attempt("connect", recipient, attempt, exc),
            )
            outcome.connect_attempts = connected.attempts
            handle = connected.value
            if connected.error is not None or handle is None:
                self._record_failure(outcome, connected.error)
            else:
                try:
                    await self._send(handle, recipient, subject, body, outcome)
                finally:
                    await self._transport.release(handle)

            span.set_attribute("notification.success", outcome.success)
            span.set_attribute("notification.connect_attempts", outcome.connect_attempts)
            span.set_attribute("notification.send_attempts", outcome.send_attempts)

        outcome.duration = self._clock() - started
        self._send_duration.observe(outcome.duration)
        self._sends.inc(
            labels={
                "outcome": "success" if outcome.success else "failure",
                "kind": outcome.failure_kind.value if outcome.failure_kind else "none",
            }
        )
        if outcome.success:
            logger.info(
                "Email sent to %s subject=%r attempts=%d/%d duration=%.2fs",
                recipient,
                subject,
                outcome.connect_attempts,
                outcome.send_attempts,
                outcome.duration,
            )
        else:
            logger.error(
                "Email to %s failed subject=%r kind=%s connect_attempts=%d send_attempts=%d duration=%.2fs: %s",
                recipient,
                subject,
                outcome.failure_kind.value if outcome.failure_kind else "unknown",
                outcome.connect_attempts,
                outcome.send_attempts,
                outcome.duration,
                outcome.diagnostic,
            )
        return outcome

    async def _send(
        self, handle: MailHandle, recipient: str, subject: str, body: str, outcome: RecipientOutcome
    ) -> None:
        sent = await retry_async(
            lambda: self._transport.send(handle, recipient, subject, body),
            self._config.send_policy,
            sleep=self._sleep,
            retry_on=(TransportError,),
            on_failure=lambda attempt, exc: self._log_attempt("send", recipient, attempt, exc),
        )
        outcome.send_attempts = sent.attempts
        if sent.error is None:
            outcome.success = True
        else:
            self._record_failure(outcome, sent.error)

    @staticmethod
    def _record_failure(outcome: RecipientOutcome, error: Exception | None) -> None:
        if isinstance(error, TransportError):
            outcome.failure_kind = error.kind
            outcome.diagnostic = error.diagnostic
        else:
            outcome.diagnostic = "Mail gateway returned no handle"

    @staticmethod
    def _log_attempt(stage: str, recipient: str, attempt: int, exc: Exception) -> None:
        logger.warning("Mail %s attempt %d for %s failed: %s", stage, attempt, recipient, exc)

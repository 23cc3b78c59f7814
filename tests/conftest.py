from __future__ import annotations

from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone

import pytest

from pulse.metrics import MetricsRegistry, register_default_metrics
from pulse.notifications import (
    DispatchConfig,
    DispatchEngine,
    MailTransport,
    NotificationCoordinator,
    NotificationTemplate,
    RecipientConfig,
)
from pulse.tickets import Actor, AuditLog, InMemoryTicketRepository, LifecycleEngine, Role, TicketDraft
from pulse.workflow import TicketWorkflow

OPS_EMAIL = "ops@example.com"
APPROVER_EMAIL = "approvals@example.com"


class FakeClock:
    """Deterministic UTC clock advancing one second per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeHandle:
    def __init__(self, gateway: "FakeMailGateway") -> None:
        self._gateway = gateway
        self.closed = False

    async def send(self, to: str, subject: str, html_body: str) -> None:
        self._gateway.attempts[to] += 1
        failures = self._gateway.send_failures.get(to)
        if failures:
            raise failures.popleft()
        self._gateway.sent.append((to, subject, html_body))

    async def close(self) -> None:
        self.closed = True
        self._gateway.closed += 1


class FakeMailGateway:
    """In-process gateway with scripted connect and per-recipient send failures."""

    def __init__(self) -> None:
        self.connect_failures: deque[Exception] = deque()
        self.send_failures: dict[str, deque[Exception]] = {}
        self.sent: list[tuple[str, str, str]] = []
        self.attempts: defaultdict[str, int] = defaultdict(int)
        self.opened = 0
        self.closed = 0

    def fail_connect(self, *errors: Exception) -> None:
        self.connect_failures.extend(errors)

    def fail_send(self, recipient: str, *errors: Exception) -> None:
        self.send_failures.setdefault(recipient, deque()).extend(errors)

    def recipients(self) -> list[str]:
        return [to for to, _, _ in self.sent]

    async def open(self) -> FakeHandle:
        self.opened += 1
        if self.connect_failures:
            raise self.connect_failures.popleft()
        return FakeHandle(self)


@pytest.fixture
def registry() -> MetricsRegistry:
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def gateway() -> FakeMailGateway:
    return FakeMailGateway()


@pytest.fixture
def general_user() -> Actor:
    return Actor(id=1, name="Grace User", email="grace@example.com", role=Role.GENERAL_USER)


@pytest.fixture
def digital_user() -> Actor:
    return Actor(id=2, name="Dana Digital", email="dana@example.com", role=Role.DIGITAL_TEAM)


@pytest.fixture
def manager() -> Actor:
    return Actor(id=3, name="Morgan Manager", email="morgan@example.com", role=Role.MANAGER)


@pytest.fixture
def admin() -> Actor:
    return Actor(id=4, name="Alex Admin", email="alex@example.com", role=Role.ADMIN)


@pytest.fixture
def draft() -> TicketDraft:
    return TicketDraft(title="Laptop will not boot", description="Black screen after update", type="Hardware")


@pytest.fixture
def template() -> NotificationTemplate:
    return NotificationTemplate(system_url="https://support.example.com")


@pytest.fixture
def repository(registry) -> InMemoryTicketRepository:
    return InMemoryTicketRepository(audit_log=AuditLog(registry=registry))


@pytest.fixture
def engine(repository, clock, registry) -> LifecycleEngine:
    return LifecycleEngine(repository, clock=clock, registry=registry)


@pytest.fixture
def dispatcher(gateway, template, sleep, registry) -> DispatchEngine:
    return DispatchEngine(
        MailTransport(gateway),
        template,
        config=DispatchConfig(),
        sleep=sleep,
        clock=lambda: 0.0,
        registry=registry,
    )


@pytest.fixture
def coordinator(dispatcher, template, clock) -> NotificationCoordinator:
    return NotificationCoordinator(
        dispatcher,
        template,
        RecipientConfig(ops_team_email=OPS_EMAIL, approver_email=APPROVER_EMAIL),
        clock=clock,
    )


@pytest.fixture
def workflow(engine, coordinator) -> TicketWorkflow:
    return TicketWorkflow(engine, coordinator)

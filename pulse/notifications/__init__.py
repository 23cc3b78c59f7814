"""Email notifications for ticket lifecycle events."""

from .coordinator import NotificationCoordinator, RecipientConfig
from .dispatch import DispatchConfig, DispatchEngine
from .models import (
    DispatchResult,
    DispatchSummary,
    GatewayHealth,
    NotificationJob,
    NotificationKind,
    RecipientOutcome,
)
from .retry import Backoff, RetryOutcome, RetryPolicy, retry_async
from .templates import NotificationTemplate, RenderedNotification
from .transport import (
    GatewayConfig,
    MailTransport,
    SoapMailGateway,
    TransportError,
    TransportFailureKind,
    classify_failure,
)

__all__ = [
    "Backoff",
    "DispatchConfig",
    "DispatchEngine",
    "DispatchResult",
    "DispatchSummary",
    "GatewayConfig",
    "GatewayHealth",
    "MailTransport",
    "NotificationCoordinator",
    "NotificationJob",
    "NotificationKind",
    "NotificationTemplate",
    "RecipientConfig",
    "RecipientOutcome",
    "RenderedNotification",
    "RetryOutcome",
    "RetryPolicy",
    "SoapMailGateway",
    "TransportError",
    "TransportFailureKind",
    "classify_failure",
    "retry_async",
]

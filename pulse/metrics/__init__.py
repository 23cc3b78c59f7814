"""Application wide metrics."""
from .registry import Counter, Distribution, MetricsRegistry

# (name, type, description, labels)
DEFAULT_METRIC_DEFINITIONS = (
    ("ticket_transitions_total", "counter", "Committed ticket lifecycle operations.", ("action",)),
    ("ticket_audit_failures_total", "counter", "Audit entries that could not be written.", ()),
    ("notification_dispatch_total", "counter", "Notification jobs dispatched.", ("outcome",)),
    (
        "notification_send_total",
        "counter",
        "Per-recipient email sends by outcome and failure kind.",
        ("outcome", "kind"),
    ),
    ("notification_send_duration_seconds", "distribution", "Duration of per-recipient sends.", ()),
)


def register_default_metrics(registry: MetricsRegistry) -> MetricsRegistry:
    """Ensure all default metric definitions exist in ``registry``."""

    for name, metric_type, description, label_names in DEFAULT_METRIC_DEFINITIONS:
        if metric_type == "counter":
            registry.counter(name, description=description, label_names=label_names)
        else:
            registry.distribution(name, description=description, label_names=label_names)
    return registry


metrics_registry = register_default_metrics(MetricsRegistry())

__all__ = [
    "Counter",
    "DEFAULT_METRIC_DEFINITIONS",
    "Distribution",
    "MetricsRegistry",
    "metrics_registry",
    "register_default_metrics",
]

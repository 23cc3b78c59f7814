"""Logging and tracing utilities for the Pulse API."""

from __future__ import annotations

import logging
from logging.config import dictConfig

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from pulse.core.config import Settings

_TRACER_INITIALISED = False


class TraceContextFilter(logging.Filter):
    """Stamp records with the ids of the active span.

    Notification dispatches and sends run inside spans, so the ids tie every
    mail log line to the recipient attempt that produced it. Outside a span
    both ids are ``-``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = record.span_id = "-"
        return True


def parse_otlp_headers(header_string: str | None) -> dict[str, str]:
    """Parse ``key=value`` pairs separated by commas."""

    if not header_string:
        return {}
    headers: dict[str, str] = {}
    for item in header_string.split(","):
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            continue
        headers[key.strip()] = value.strip()
    return headers


def configure_logging(settings: Settings) -> logging.Logger:
    """Configure the root and ``pulse`` loggers based on settings."""

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": settings.log_format,
                }
            },
            "filters": {
                "trace_context": {"()": TraceContextFilter},
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["trace_context"],
                    "level": level,
                }
            },
            "root": {
                "handlers": ["default"],
                "level": level,
            },
            "loggers": {
                # Keep the HTTP client quiet; every gateway call is logged by the dispatcher.
                "httpx": {"level": max(level, logging.WARNING)},
            },
        }
    )

    logger = logging.getLogger("pulse")
    logger.setLevel(level)
    return logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Initialise the OpenTelemetry tracer if enabled in settings."""

    global _TRACER_INITIALISED

    if _TRACER_INITIALISED or not settings.otel_enabled:
        return None

    resource = Resource(attributes={"service.name": settings.otel_service_name})
    provider = TracerProvider(resource=resource)

    exporter_kwargs: dict[str, object] = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers)
    if headers:
        exporter_kwargs["headers"] = headers

    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))

    trace.set_tracer_provider(provider)
    _TRACER_INITIALISED = True
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    """Flush and shut down the configured tracer provider."""

    if provider is None:
        return

    global _TRACER_INITIALISED
    provider.shutdown()
    _TRACER_INITIALISED = False

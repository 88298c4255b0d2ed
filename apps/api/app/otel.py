from __future__ import annotations

import os
import uuid
from collections.abc import Mapping
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

try:
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
except Exception:  # pragma: no cover - runtime environment fallback
    OTLPSpanExporter = None  # type: ignore[assignment]


SERVICE_NAMESPACE = "pipeline-automations"

_configured = False
_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    resource = Resource.create(
        {
            "service.name": f"{SERVICE_NAMESPACE}-{service_name}",
            "service.namespace": SERVICE_NAMESPACE,
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
        }
    )
    _provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    """Install the tracer provider for the api process or a celery worker.

    Exporters are chosen from the environment: OTLP over HTTP when
    ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, console output when
    ``OTEL_CONSOLE_EXPORTER=true``. Calling it again is a no-op.
    """
    global _configured

    if not enable:
        return None

    provider = _get_or_create_provider(service_name)
    if _configured:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and OTLPSpanExporter is not None:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel(service_name: str = "api") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def set_span_attributes(span: trace.Span, attributes: Mapping[str, Any]) -> None:
    # OTel only accepts primitives; None values are dropped.
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, uuid.UUID):
            value = str(value)
        elif not isinstance(value, (str, bool, int, float)):
            value = str(value)
        span.set_attribute(key, value)


def run_attributes(run: Any) -> dict[str, Any]:
    return {
        "automation.run_id": run.id,
        "automation.workflow_id": run.workflow_id,
        "automation.workflow_version": run.workflow_version,
        "automation.contact_id": run.contact_id,
        "automation.trigger_depth": run.trigger_depth,
        "correlation_id": run.correlation_id,
    }


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None:
            return
        headers = dict(scope.get("headers", []))
        attributes: dict[str, Any] = {}
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            attributes["correlation_id"] = correlation_raw.decode("utf-8")
        organization_raw = headers.get(b"x-organization-id")
        if organization_raw:
            attributes["organization_id"] = organization_raw.decode("utf-8")
        set_span_attributes(span, attributes)

    return server_request_hook

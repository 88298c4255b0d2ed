from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

automation_events_total = Counter(
    "automation_events_total",
    "Pipeline events received by the automation engine by outcome",
    ["event_type", "outcome"],
)

automation_runs_total = Counter(
    "automation_runs_total",
    "Workflow runs reaching a status",
    ["status"],
)

automation_step_attempts_total = Counter(
    "automation_step_attempts_total",
    "Step attempts by step type and status",
    ["step_type", "status"],
)

automation_step_duration_seconds = Histogram(
    "automation_step_duration_seconds",
    "Step handler duration in seconds",
    ["step_type"],
)

automation_guardrail_blocks_total = Counter(
    "automation_guardrail_blocks_total",
    "Total automation guardrail blocks by reason",
    ["reason"],
)

automation_webhook_deliveries_total = Counter(
    "automation_webhook_deliveries_total",
    "Outbound webhook deliveries by outcome",
    ["outcome"],
)

automation_sweep_resumed_total = Counter(
    "automation_sweep_resumed_total",
    "Waiting runs resumed by the delay sweeper",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_event(event_type: str, outcome: str) -> None:
    automation_events_total.labels(event_type=event_type, outcome=outcome).inc()


def observe_run_status(status: str) -> None:
    automation_runs_total.labels(status=status).inc()


def observe_step_attempt(step_type: str, status: str, duration: float) -> None:
    automation_step_attempts_total.labels(step_type=step_type, status=status).inc()
    automation_step_duration_seconds.labels(step_type=step_type).observe(duration)


def observe_guardrail_block(reason: str) -> None:
    automation_guardrail_blocks_total.labels(reason=reason).inc()


def observe_webhook_delivery(outcome: str) -> None:
    automation_webhook_deliveries_total.labels(outcome=outcome).inc()


def observe_sweep_resumed(count: int = 1) -> None:
    if count > 0:
        automation_sweep_resumed_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

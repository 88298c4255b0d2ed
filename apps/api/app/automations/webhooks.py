from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx
from opentelemetry.trace import Status, StatusCode

from app.automations.errors import TransientExternalError
from app.automations.schemas import WebhookTestResult
from app.context import get_correlation_id
from app.core.config import get_settings
from app.metrics import observe_webhook_delivery
from app.otel import get_tracer


logger = logging.getLogger("app.automations.webhooks")
tracer = get_tracer("app.automations.webhooks")

MAX_CAPTURED_BODY = 2000


@dataclass(slots=True)
class WebhookResponse:
    status_code: int
    body: str

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class WebhookDispatcher:
    """Single-shot outbound HTTP delivery.

    Retries belong to the step executor, so a manual endpoint test stays one
    request while a webhook step gets the engine's retry policy.
    """

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self._transport = transport

    def deliver(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None,
        payload: dict[str, Any] | None,
        timeout: float | None = None,
    ) -> WebhookResponse:
        settings = get_settings()
        limit = settings.webhook_timeout_seconds
        effective_timeout = min(timeout, limit) if timeout is not None else limit
        request_headers = {"Content-Type": "application/json", "User-Agent": "pipeline-automations/1.0"}
        request_headers.update(headers or {})
        host = urlparse(url).hostname or ""

        with tracer.start_as_current_span("automation.webhook.deliver") as span:
            span.set_attribute("http.method", method.upper())
            span.set_attribute("webhook.host", host)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                with httpx.Client(
                    timeout=httpx.Timeout(effective_timeout, connect=min(effective_timeout, 5.0)),
                    transport=self._transport,
                    follow_redirects=False,
                ) as client:
                    response = client.request(
                        method.upper(),
                        url,
                        content=json.dumps(payload or {}, default=str),
                        headers=request_headers,
                    )
            except httpx.TimeoutException as exc:
                observe_webhook_delivery("timeout")
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, "timeout"))
                logger.warning("automation_webhook_timeout", extra={"error": f"{host}: {exc}"})
                raise TransientExternalError(f"webhook timed out after {effective_timeout}s") from exc
            except httpx.RequestError as exc:
                observe_webhook_delivery("network_error")
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, "network_error"))
                logger.warning("automation_webhook_network_error", extra={"error": f"{host}: {exc}"})
                raise TransientExternalError(f"webhook request failed: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            outcome = "delivered" if response.is_success else f"http_{response.status_code // 100}xx"
            observe_webhook_delivery(outcome)
            return WebhookResponse(status_code=response.status_code, body=response.text[:MAX_CAPTURED_BODY])

    def test_endpoint(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None,
        payload: dict[str, Any] | None = None,
    ) -> WebhookTestResult:
        body = payload if payload is not None else {"event": "test", "message": "Webhook test from pipeline automations"}
        try:
            response = self.deliver(url, method, headers, body)
        except TransientExternalError as exc:
            return WebhookTestResult(success=False, error=exc.message)
        if response.is_success:
            return WebhookTestResult(success=True, status_code=response.status_code)
        return WebhookTestResult(success=False, status_code=response.status_code, error=f"HTTP {response.status_code}")

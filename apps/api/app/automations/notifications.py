from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from app.automations.errors import PermanentExternalError, TransientExternalError
from app.context import get_correlation_id
from app.core.config import Settings, get_settings
from app.otel import get_tracer


tracer = get_tracer("app.automations.notifications")


@dataclass(slots=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    from_address: str
    idempotency_key: str


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> str: ...


class StubEmailSender:
    """Records messages in its own ``outbox``; repeated idempotency keys are delivered once.

    The outbox keeps the newest ``max_messages`` entries.
    """

    def __init__(self, max_messages: int = 1000) -> None:
        self.outbox: deque[dict[str, Any]] = deque(maxlen=max_messages)

    def send(self, message: EmailMessage) -> str:
        with tracer.start_as_current_span("automation.email.send") as span:
            span.set_attribute("email.provider", "stub")
            span.set_attribute("correlation_id", get_correlation_id() or "")
            for existing in self.outbox:
                if existing["idempotency_key"] == message.idempotency_key:
                    return existing["id"]
            message_id = str(uuid.uuid4())
            self.outbox.append(
                {
                    "id": message_id,
                    "to": message.to,
                    "subject": message.subject,
                    "html": message.html,
                    "from": message.from_address,
                    "idempotency_key": message.idempotency_key,
                }
            )
            return message_id


class ResendEmailSender:
    def __init__(self, api_key: str, api_url: str, timeout: float, transport: httpx.BaseTransport | None = None) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self._transport = transport

    def send(self, message: EmailMessage) -> str:
        with tracer.start_as_current_span("automation.email.send") as span:
            span.set_attribute("email.provider", "resend")
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                with httpx.Client(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
                    response = client.post(
                        self.api_url,
                        json={
                            "from": message.from_address,
                            "to": [message.to],
                            "subject": message.subject,
                            "html": message.html,
                        },
                        headers={
                            "Authorization": f"Bearer {self.api_key}",
                            "Idempotency-Key": message.idempotency_key,
                        },
                    )
            except httpx.TimeoutException as exc:
                raise TransientExternalError("email provider timed out") from exc
            except httpx.RequestError as exc:
                raise TransientExternalError(f"email provider unreachable: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 500 or response.status_code == 429:
                raise TransientExternalError(f"email provider returned {response.status_code}")
            if response.status_code >= 400:
                raise PermanentExternalError(
                    f"email provider rejected message with {response.status_code}",
                    details={"body": response.text[:500]},
                )
            data = response.json() if response.content else {}
            return str(data.get("id") or "")


def build_email_sender(settings: Settings | None = None) -> EmailSender:
    resolved = settings or get_settings()
    if resolved.email_provider.lower() == "resend":
        return ResendEmailSender(
            api_key=resolved.resend_api_key,
            api_url=resolved.resend_api_url,
            timeout=resolved.webhook_timeout_seconds,
        )
    return StubEmailSender()

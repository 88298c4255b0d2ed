from __future__ import annotations

import json
from collections.abc import Generator

import httpx
import pytest

from app.automations.errors import PermanentExternalError, TransientExternalError
from app.automations.notifications import EmailMessage, ResendEmailSender, StubEmailSender, build_email_sender
from app.automations.webhooks import MAX_CAPTURED_BODY, WebhookDispatcher
from app.context import reset_correlation_id, set_correlation_id
from app.core.config import Settings, get_settings


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _message(key: str = "run-1:step-1") -> EmailMessage:
    return EmailMessage(
        to="ada@example.com",
        subject="Hello",
        html="<p>Hi</p>",
        from_address="automations@example.com",
        idempotency_key=key,
    )


def test_deliver_sends_json_with_merged_headers() -> None:
    captured: list[httpx.Request] = []

    def respond(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, text="accepted")

    dispatcher = WebhookDispatcher(transport=httpx.MockTransport(respond))
    response = dispatcher.deliver(
        "https://hooks.example.com/lead",
        "put",
        {"X-Signature": "sig"},
        {"contact": {"id": "c-1"}},
    )

    assert response.status_code == 202
    assert response.is_success
    assert response.body == "accepted"
    request = captured[0]
    assert request.method == "PUT"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Signature"] == "sig"
    assert json.loads(request.content) == {"contact": {"id": "c-1"}}


def test_deliver_truncates_captured_body() -> None:
    dispatcher = WebhookDispatcher(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="x" * 5000)))
    response = dispatcher.deliver("https://hooks.example.com", "POST", None, None)
    assert response.status_code == 500
    assert not response.is_success
    assert len(response.body) == MAX_CAPTURED_BODY


def test_timeout_and_network_errors_are_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEBHOOK_TIMEOUT_SECONDS", "3")
    get_settings.cache_clear()

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientExternalError) as timed_out:
        WebhookDispatcher(transport=httpx.MockTransport(slow)).deliver("https://hooks.example.com", "POST", None, {}, timeout=30)
    assert timed_out.value.retryable is True
    assert timed_out.value.message == "webhook timed out after 3.0s"

    with pytest.raises(TransientExternalError) as refused:
        WebhookDispatcher(transport=httpx.MockTransport(unreachable)).deliver("https://hooks.example.com", "POST", None, {})
    assert refused.value.message.startswith("webhook request failed:")


def test_endpoint_test_reports_outcomes() -> None:
    bodies: list[dict] = []

    def respond(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        if request.url.path == "/missing":
            return httpx.Response(404)
        if request.url.path == "/down":
            raise httpx.ConnectError("down", request=request)
        return httpx.Response(200)

    dispatcher = WebhookDispatcher(transport=httpx.MockTransport(respond))

    ok = dispatcher.test_endpoint("https://hooks.example.com/ok", "POST", None)
    assert ok.model_dump(by_alias=True, exclude_none=True) == {"success": True, "statusCode": 200}
    assert bodies[-1]["event"] == "test"

    missing = dispatcher.test_endpoint("https://hooks.example.com/missing", "POST", None, {"ping": 1})
    assert (missing.success, missing.status_code, missing.error) == (False, 404, "HTTP 404")
    assert bodies[-1] == {"ping": 1}

    down = dispatcher.test_endpoint("https://hooks.example.com/down", "POST", None)
    assert down.success is False
    assert down.status_code is None
    assert down.error is not None and down.error.startswith("webhook request failed:")


def test_stub_sender_delivers_each_idempotency_key_once() -> None:
    sender = StubEmailSender()
    first = sender.send(_message())
    second = sender.send(_message())
    third = sender.send(_message("run-1:step-2"))

    assert first == second
    assert third != first
    assert [entry["idempotency_key"] for entry in sender.outbox] == ["run-1:step-1", "run-1:step-2"]


def test_stub_senders_keep_separate_bounded_outboxes() -> None:
    first = StubEmailSender(max_messages=2)
    second = StubEmailSender()
    for index in range(3):
        first.send(_message(f"run-1:step-{index}"))

    assert [entry["idempotency_key"] for entry in first.outbox] == ["run-1:step-1", "run-1:step-2"]
    assert list(second.outbox) == []


def test_resend_sender_posts_message_with_idempotency_key() -> None:
    captured: list[httpx.Request] = []

    def respond(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"id": "email_123"})

    sender = ResendEmailSender("re_key", "https://api.resend.test/emails", 5.0, transport=httpx.MockTransport(respond))
    token = set_correlation_id("corr-email-1")
    try:
        assert sender.send(_message()) == "email_123"
    finally:
        reset_correlation_id(token)

    request = captured[0]
    assert request.headers["Authorization"] == "Bearer re_key"
    assert request.headers["Idempotency-Key"] == "run-1:step-1"
    assert json.loads(request.content)["to"] == ["ada@example.com"]


@pytest.mark.parametrize(
    ("status_code", "error_type"),
    [(500, TransientExternalError), (429, TransientExternalError), (422, PermanentExternalError)],
)
def test_resend_sender_classifies_failures(status_code: int, error_type: type[Exception]) -> None:
    sender = ResendEmailSender(
        "re_key",
        "https://api.resend.test/emails",
        5.0,
        transport=httpx.MockTransport(lambda request: httpx.Response(status_code, text="nope")),
    )
    with pytest.raises(error_type):
        sender.send(_message())


def test_build_email_sender_follows_provider_setting() -> None:
    assert isinstance(build_email_sender(Settings(email_provider="stub")), StubEmailSender)
    resend = build_email_sender(Settings(email_provider="Resend", resend_api_key="re_key"))
    assert isinstance(resend, ResendEmailSender)
    assert resend.api_key == "re_key"

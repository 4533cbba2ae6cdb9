"""Unit tests for completion webhooks."""

from __future__ import annotations

import json
from decimal import Decimal

import httpx

from proptrace.services.notifications import WebhookNotifier
from proptrace.settings import get_settings


def _notifier(handler, urls):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return WebhookNotifier(settings=get_settings(), webhook_urls=urls, client=client, background=False)


def _send(notifier: WebhookNotifier, caller_id: str = "caller-1") -> bool:
    return notifier.trace_completed(
        caller_id,
        trace_id="trace-1",
        status="success",
        address="123 Main St",
        city="AUSTIN",
        state="TX",
        zip_code="78701",
        result={"phones": [{"number": "5125550100", "type": "mobile"}], "emails": []},
        charge=Decimal("0.11"),
    )


def test_trace_completed_posts_payload():
    received: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    assert _send(_notifier(handler, {"caller-1": "https://hooks.example/trace"})) is True

    assert len(received) == 1
    payload = received[0]
    assert payload["event"] == "trace.completed"
    assert payload["trace_id"] == "trace-1"
    assert payload["zip"] == "78701"
    assert payload["charge"] == 0.11
    assert "timestamp" in payload


def test_trace_completed_without_url_is_skipped():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    assert _send(_notifier(handler, {}), caller_id="caller-1") is False
    assert calls == []


def test_delivery_failure_is_logged_not_raised(caplog):
    notifier = _notifier(lambda request: httpx.Response(500), {"caller-1": "https://hooks.example/trace"})

    with caplog.at_level("WARNING"):
        assert _send(notifier) is True

    assert "Webhook delivery failed" in caplog.text


def test_unexpected_delivery_error_is_logged_not_raised(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("serializer blew up")

    client = httpx.Client(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier(
        settings=get_settings(),
        webhook_urls={"caller-1": "https://hooks.example/trace"},
        client=client,
        background=False,
    )

    with caplog.at_level("ERROR"):
        assert _send(notifier) is True

    assert "Webhook delivery crashed" in caplog.text
    assert "trace-1" in caplog.text

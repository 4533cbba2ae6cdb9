"""Unit tests for event logging and StatsD counters."""

from __future__ import annotations

import json
import logging
from decimal import Decimal

from proptrace.observability import Observability, StatsdCounter
from proptrace.settings import get_settings


class _RecordingCounter:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def increment(self, metric, *, value=1.0, tags=None) -> None:
        self.calls.append((metric, value, dict(tags or {})))


def _structured_settings():
    base = get_settings()
    return base.model_copy(
        update={"observability": base.observability.model_copy(update={"structured_logging": True})}
    )


def test_emit_event_writes_json_with_money_as_string_and_no_contact_details(caplog):
    logger = logging.getLogger("proptrace.tests.events")
    observability = Observability(settings=_structured_settings(), component="billing", logger=logger)
    caplog.set_level(logging.INFO, logger="proptrace.tests.events")

    observability.emit_event(
        "trace.transition",
        trace_id="trace-1",
        charge=Decimal("0.1100"),
        phones=[{"number": "5125550100", "type": "mobile"}],
        result={"owner_name": "Jane Doe", "emails": ["jane@example.com"]},
        emails=0,
    )

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "trace.transition"
    assert payload["component"] == "billing"
    assert payload["charge"] == "0.1100"
    assert payload["phones"] == 1
    assert payload["result"] == 2
    assert payload["emails"] == 0
    assert "5125550100" not in caplog.text


def test_increment_tags_component_and_is_silent_without_counter():
    counter = _RecordingCounter()
    observability = Observability(settings=get_settings(), component="bulk", counter=counter)

    observability.increment("bulk.records_submitted", value=85)
    observability.increment("trace.completed", tags={"status": "success"})
    Observability(settings=get_settings(), component="bulk").increment("ignored")

    assert counter.calls == [
        ("bulk.records_submitted", 85, {"component": "bulk"}),
        ("trace.completed", 1.0, {"component": "bulk", "status": "success"}),
    ]


def test_statsd_packet_format():
    counter = StatsdCounter(host="127.0.0.1", port=8125, prefix="proptrace")
    try:
        assert counter.packet("billing.debit", value=1) == b"proptrace.billing.debit:1|c"
        assert (
            counter.packet("trace.completed", value=2.5, tags={"status": "success", "component": "traces"})
            == b"proptrace.trace.completed:2.5|c|#component:traces,status:success"
        )
    finally:
        counter._socket.close()

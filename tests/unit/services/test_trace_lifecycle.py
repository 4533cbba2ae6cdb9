"""Unit tests for the single-address trace lifecycle."""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from proptrace.errors import InsufficientFunds, InvalidTransition, NotFoundError, SubmissionError
from proptrace.normalization import canonicalize_address
from proptrace.observability import get_observability
from proptrace.providers.tracer import ContactResult, TracerClient
from proptrace.services.billing import BillingService
from proptrace.services.dedupe import DeduplicationCache
from proptrace.services.models import TraceRequest
from proptrace.services.notifications import WebhookNotifier
from proptrace.services.trace_lifecycle import (
    TraceService,
    TraceSettlement,
    assert_transition,
    can_transition,
)
from proptrace.settings import get_settings
from proptrace.store import sql as sql_schema
from proptrace.store.job_store import BulkJobStore
from proptrace.store.trace_store import ERROR, NO_MATCH, PENDING, PROCESSING, SUCCESS, TraceStore
from proptrace.store.wallet_store import WalletStore

MATCH_ROW = {
    "address": "123 Main St",
    "city": "Austin",
    "state": "TX",
    "first_name": "Jane",
    "last_name": "Doe",
    "primary_phone": "512-555-0100",
    "primary_phone_type": "mobile",
}
PADDING_ROW = {"address": "0 Padding Row", "city": "Austin", "state": "TX"}


class _FakeProvider:
    """Scripted provider responses keyed by request kind."""

    def __init__(self) -> None:
        self.submit_response = httpx.Response(200, json={"queue_id": 101})
        self.poll_body: object = {"pending": True}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            return self.submit_response
        return httpx.Response(200, json=self.poll_body)

    @property
    def polls(self) -> int:
        return sum(1 for request in self.requests if request.method == "GET")


def _build_service(tmp_path, provider: _FakeProvider, *, sleeps: list | None = None):
    db_path = tmp_path / "lifecycle.db"
    engine = sa.create_engine(f"sqlite:///{db_path}", future=True)
    sql_schema.METADATA.create_all(engine)
    factory = sessionmaker(bind=engine, future=True)
    settings = get_settings()
    store = TraceStore(session_factory=factory)
    wallet = WalletStore(session_factory=factory)
    billing = BillingService(store=wallet, settings=settings)
    tracer = TracerClient(
        settings=settings,
        client=httpx.Client(transport=httpx.MockTransport(provider), base_url="https://tracer.test/"),
        api_key="test-key",
    )
    service = TraceService(
        store=store,
        job_store=BulkJobStore(session_factory=factory),
        tracer=tracer,
        billing=billing,
        dedupe=DeduplicationCache(store=store, settings=settings),
        notifier=WebhookNotifier(settings=settings, webhook_urls={}),
        settings=settings,
        sleep=(sleeps.append if sleeps is not None else (lambda seconds: None)),
    )
    return service, store, billing, wallet, engine


def _request(address: str = "123 Main Street") -> TraceRequest:
    return TraceRequest(address=address, city="Austin", state="TX", zip="78701", owner_name="Jane Doe")


def _fingerprint(address: str = "123 Main Street") -> str:
    return canonicalize_address(address, "Austin", "TX", "78701").fingerprint


def test_transition_table():
    assert can_transition(PENDING, PROCESSING)
    assert can_transition(PROCESSING, SUCCESS)
    assert can_transition(PROCESSING, NO_MATCH)
    assert can_transition(PROCESSING, ERROR)
    assert not can_transition(SUCCESS, PROCESSING)
    assert not can_transition(NO_MATCH, SUCCESS)
    with pytest.raises(InvalidTransition):
        assert_transition(ERROR, SUCCESS)


def test_submit_then_check_status_charges_once(tmp_path):
    provider = _FakeProvider()
    service, store, billing, wallet, engine = _build_service(tmp_path, provider)
    try:
        billing.credit("caller-1", Decimal("5.00"), "Top-up")

        outcome = service.submit_single("caller-1", _request())
        assert outcome.status == PROCESSING
        assert outcome.is_cached is False
        assert store.get(outcome.trace_id).provider_job_id == "101"

        pending = service.check_status("caller-1", outcome.trace_id)
        assert pending.status == PROCESSING
        assert pending.result is None

        provider.poll_body = [MATCH_ROW, PADDING_ROW]
        settled = service.check_status("caller-1", outcome.trace_id)
        assert settled.status == SUCCESS
        assert settled.charge == Decimal("0.11")
        assert settled.result["owner_name"] == "Jane Doe"
        assert settled.result["phones"] == [{"number": "512-555-0100", "type": "mobile"}]

        polls_before = provider.polls
        again = service.check_status("caller-1", outcome.trace_id)
        assert again.status == SUCCESS
        assert provider.polls == polls_before
        assert billing.check_balance("caller-1") == Decimal("4.89")
        assert len(wallet.debits_for_trace(outcome.trace_id)) == 1
    finally:
        engine.dispose()


def test_cached_result_is_free_and_skips_provider(tmp_path):
    provider = _FakeProvider()
    service, _, billing, _, engine = _build_service(tmp_path, provider)
    try:
        billing.credit("caller-1", Decimal("1.00"), "Top-up")
        first = service.submit_single("caller-1", _request())
        provider.poll_body = [MATCH_ROW, PADDING_ROW]
        service.check_status("caller-1", first.trace_id)
        request_count = len(provider.requests)

        cached = service.submit_single("caller-1", _request("123 MAIN ST Apt 4B"))

        assert cached.is_cached is True
        assert cached.trace_id == first.trace_id
        assert cached.status == SUCCESS
        assert cached.charge == Decimal("0")
        assert cached.result["phones"]
        assert len(provider.requests) == request_count
        assert billing.check_balance("caller-1") == Decimal("0.89")
    finally:
        engine.dispose()


def test_insufficient_balance_blocks_before_any_record(tmp_path):
    provider = _FakeProvider()
    service, store, billing, _, engine = _build_service(tmp_path, provider)
    try:
        billing.credit("caller-1", Decimal("0.05"), "Top-up")

        with pytest.raises(InsufficientFunds):
            service.submit_single("caller-1", _request())

        assert provider.requests == []
        assert store.find_by_fingerprint("caller-1", _fingerprint()) is None
        assert billing.check_balance("caller-1") == Decimal("0.05")
    finally:
        engine.dispose()


def test_submission_failure_marks_record_error_and_allows_retry(tmp_path):
    provider = _FakeProvider()
    provider.submit_response = httpx.Response(503, text="maintenance")
    service, store, billing, _, engine = _build_service(tmp_path, provider)
    try:
        billing.credit("caller-1", Decimal("1.00"), "Top-up")

        with pytest.raises(SubmissionError):
            service.submit_single("caller-1", _request())

        fingerprint = _fingerprint()
        failed = store.find_by_fingerprint("caller-1", fingerprint)
        assert failed.status == ERROR
        assert "503" in failed.error_message

        provider.submit_response = httpx.Response(200, json={"job_id": "202"})
        retry = service.submit_single("caller-1", _request())
        assert retry.status == PROCESSING
        assert retry.trace_id != failed.trace_id
        assert store.get(failed.trace_id) is None
    finally:
        engine.dispose()


def test_empty_result_settles_as_no_match_without_charge(tmp_path):
    provider = _FakeProvider()
    service, _, billing, wallet, engine = _build_service(tmp_path, provider)
    try:
        billing.credit("caller-1", Decimal("1.00"), "Top-up")
        outcome = service.submit_single("caller-1", _request())
        provider.poll_body = {"results": [{"address": "123 Main St", "city": "Austin", "state": "TX"}, PADDING_ROW]}

        view = service.check_status("caller-1", outcome.trace_id)

        assert view.status == NO_MATCH
        assert view.charge == Decimal("0")
        assert wallet.debits_for_trace(outcome.trace_id) == []
        assert billing.check_balance("caller-1") == Decimal("1.00")
    finally:
        engine.dispose()


def test_success_is_kept_when_debit_is_rejected(tmp_path):
    provider = _FakeProvider()
    service, _, billing, wallet, engine = _build_service(tmp_path, provider)
    try:
        billing.credit("caller-1", Decimal("0.11"), "Top-up")
        outcome = service.submit_single("caller-1", _request())
        wallet.debit("caller-1", Decimal("0.11"), description="Another trace", trace_id="other-trace")
        provider.poll_body = [MATCH_ROW, PADDING_ROW]

        view = service.check_status("caller-1", outcome.trace_id)

        assert view.status == SUCCESS
        assert view.charge == Decimal("0")
        assert billing.check_balance("caller-1") == Decimal("0")
    finally:
        engine.dispose()


def test_settlement_only_bills_the_writer_that_lands(tmp_path):
    provider = _FakeProvider()
    service, store, billing, wallet, engine = _build_service(tmp_path, provider)
    try:
        billing.credit("caller-1", Decimal("1.00"), "Top-up")
        outcome = service.submit_single("caller-1", _request())
        record = store.get(outcome.trace_id)
        settlement = TraceSettlement(
            store=store,
            billing=billing,
            settings=get_settings(),
            observability=get_observability(component="tests", settings=get_settings()),
        )
        contact = ContactResult(phones=[{"number": "5125550100", "type": "mobile"}])

        first = settlement.settle(record, contact, description="Skip trace - successful match")
        second = settlement.settle(record, contact, description="Skip trace - successful match")

        assert first is not None and first.status == SUCCESS
        assert second is None
        assert len(wallet.debits_for_trace(record.trace_id)) == 1
        assert first.cost == Decimal("0.009")
    finally:
        engine.dispose()


def test_wait_for_result_times_out_without_failing(tmp_path):
    provider = _FakeProvider()
    sleeps: list[float] = []
    service, store, billing, _, engine = _build_service(tmp_path, provider, sleeps=sleeps)
    try:
        billing.credit("caller-1", Decimal("1.00"), "Top-up")
        outcome = service.submit_single("caller-1", _request())

        view = service.wait_for_result(
            "caller-1",
            outcome.trace_id,
            max_attempts=3,
            initial_delay=10,
            interval=3,
        )

        assert view.status == PROCESSING
        assert view.timed_out is True
        assert sleeps == [10, 3, 3]
        assert provider.polls == 3
        assert store.get(outcome.trace_id).status == PROCESSING
    finally:
        engine.dispose()


def test_wait_for_result_returns_once_settled(tmp_path):
    provider = _FakeProvider()
    service, _, billing, _, engine = _build_service(tmp_path, provider, sleeps=[])
    try:
        billing.credit("caller-1", Decimal("1.00"), "Top-up")
        outcome = service.submit_single("caller-1", _request())
        provider.poll_body = [MATCH_ROW, PADDING_ROW]

        view = service.wait_for_result("caller-1", outcome.trace_id, max_attempts=5, initial_delay=0, interval=0)

        assert view.status == SUCCESS
        assert view.timed_out is False
        assert provider.polls == 1
    finally:
        engine.dispose()


def test_check_status_for_other_caller_is_not_found(tmp_path):
    provider = _FakeProvider()
    service, _, billing, _, engine = _build_service(tmp_path, provider)
    try:
        billing.credit("caller-1", Decimal("1.00"), "Top-up")
        outcome = service.submit_single("caller-1", _request())

        with pytest.raises(NotFoundError):
            service.check_status("caller-2", outcome.trace_id)
    finally:
        engine.dispose()


def test_clear_cache_removes_every_record_for_address(tmp_path):
    provider = _FakeProvider()
    service, store, billing, _, engine = _build_service(tmp_path, provider)
    try:
        billing.credit("caller-1", Decimal("1.00"), "Top-up")
        outcome = service.submit_single("caller-1", _request())

        deleted = service.clear_cache("caller-1", "123 MAIN ST", "Austin", "TX", "78701")

        assert deleted == 1
        assert store.get(outcome.trace_id) is None
    finally:
        engine.dispose()

"""Unit tests for the fingerprint result cache."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from proptrace.normalization import canonicalize_address
from proptrace.services.dedupe import DeduplicationCache
from proptrace.services.models import PreparedRecord, TraceRequest
from proptrace.settings import get_settings
from proptrace.store import sql as sql_schema
from proptrace.store.trace_store import ERROR, SUCCESS, NewTrace, TraceStore

CONTACT_PAYLOAD = {"phones": [{"number": "5125550100", "type": "mobile"}], "emails": []}


def _build_store(tmp_path):
    db_path = tmp_path / "dedupe.db"
    engine = sa.create_engine(f"sqlite:///{db_path}", future=True)
    sql_schema.METADATA.create_all(engine)
    factory = sessionmaker(bind=engine, future=True)
    return TraceStore(session_factory=factory), engine


def _prepared(address: str, zip_code: str = "78701") -> PreparedRecord:
    request = TraceRequest(address=address, city="Austin", state="TX", zip=zip_code)
    return PreparedRecord(request=request, canonical=canonicalize_address(address, "Austin", "TX", zip_code))


def _seed(store: TraceStore, caller_id: str, prepared: PreparedRecord, *, status: str, payload=None) -> str:
    record, _ = store.create_processing(
        caller_id,
        NewTrace(
            address_fingerprint=prepared.fingerprint,
            canonical_address=prepared.canonical.canonical,
            address=prepared.request.address,
            city="Austin",
            state="TX",
            zip=prepared.canonical.zip5,
        ),
    )
    store.complete(record.trace_id, status=status, result_payload=payload)
    return record.trace_id


def test_lookup_single_returns_recent_success_with_contacts(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        cache = DeduplicationCache(store=store, settings=get_settings())
        prepared = _prepared("5 Walnut Street")
        trace_id = _seed(store, "caller-1", prepared, status=SUCCESS, payload=CONTACT_PAYLOAD)

        hit = cache.lookup_single("caller-1", _prepared("5 WALNUT ST Apt 9").fingerprint)

        assert hit is not None
        assert hit.trace_id == trace_id
        assert cache.lookup_single("caller-2", prepared.fingerprint) is None
    finally:
        engine.dispose()


def test_lookup_single_ignores_results_outside_window(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        later = datetime.now(timezone.utc) + timedelta(days=91)
        cache = DeduplicationCache(store=store, settings=get_settings(), clock=lambda: later)
        prepared = _prepared("6 Walnut Street")
        _seed(store, "caller-1", prepared, status=SUCCESS, payload=CONTACT_PAYLOAD)

        assert cache.window_days == 90
        assert cache.lookup_single("caller-1", prepared.fingerprint) is None
        assert cache.prepare_resubmission("caller-1", prepared.fingerprint) == 1
        assert store.find_by_fingerprint("caller-1", prepared.fingerprint) is None
    finally:
        engine.dispose()


def test_empty_success_is_purged_on_lookup(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        cache = DeduplicationCache(store=store, settings=get_settings())
        prepared = _prepared("7 Walnut Street")
        trace_id = _seed(store, "caller-1", prepared, status=SUCCESS, payload={"phones": [], "emails": []})

        assert cache.lookup_single("caller-1", prepared.fingerprint) is None
        assert store.get(trace_id) is None
    finally:
        engine.dispose()


def test_prepare_resubmission_keeps_active_and_authoritative_records(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        cache = DeduplicationCache(store=store, settings=get_settings())
        good = _prepared("8 Walnut Street")
        failed = _prepared("9 Walnut Street")
        _seed(store, "caller-1", good, status=SUCCESS, payload=CONTACT_PAYLOAD)
        _seed(store, "caller-1", failed, status=ERROR)
        open_record = _prepared("10 Walnut Street")
        store.create_processing(
            "caller-1",
            NewTrace(
                address_fingerprint=open_record.fingerprint,
                canonical_address=open_record.canonical.canonical,
                address="10 Walnut Street",
                city="Austin",
                state="TX",
            ),
        )

        assert cache.prepare_resubmission("caller-1", good.fingerprint) == 0
        assert cache.prepare_resubmission("caller-1", open_record.fingerprint) == 0
        assert cache.prepare_resubmission("caller-1", failed.fingerprint) == 1
        assert store.find_by_fingerprint("caller-1", failed.fingerprint) is None
    finally:
        engine.dispose()


def test_lookup_batch_partitions_hits_and_new(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        cache = DeduplicationCache(store=store, settings=get_settings())
        cached = _prepared("1 Ash Court")
        fresh = _prepared("2 Ash Court")
        _seed(store, "caller-1", cached, status=SUCCESS, payload=CONTACT_PAYLOAD)

        lookup = cache.lookup_batch("caller-1", [cached, fresh])

        assert [item.fingerprint for item in lookup.cached] == [cached.fingerprint]
        assert [item.fingerprint for item in lookup.new] == [fresh.fingerprint]
        assert cached.fingerprint in lookup.cached_results
    finally:
        engine.dispose()


def test_lookup_batch_holds_back_in_flight_traces(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        cache = DeduplicationCache(store=store, settings=get_settings())
        in_flight = _prepared("3 Ash Court")
        failed = _prepared("4 Ash Court")
        store.create_processing(
            "caller-1",
            NewTrace(
                address_fingerprint=in_flight.fingerprint,
                canonical_address=in_flight.canonical.canonical,
                address="3 Ash Court",
                city="Austin",
                state="TX",
            ),
        )
        _seed(store, "caller-1", failed, status=ERROR)

        lookup = cache.lookup_batch("caller-1", [in_flight, failed])

        assert [item.fingerprint for item in lookup.in_progress] == [in_flight.fingerprint]
        assert [item.fingerprint for item in lookup.new] == [failed.fingerprint]
        assert lookup.cached == []
        assert cache.lookup_batch("caller-2", [in_flight]).new == [in_flight]
    finally:
        engine.dispose()


def test_remove_internal_duplicates_keeps_first_occurrence():
    records = [_prepared("1 Ash Court"), _prepared("1 ASH CT Unit 4"), _prepared("2 Ash Court")]

    unique, removed = DeduplicationCache.remove_internal_duplicates(records)

    assert removed == 1
    assert [item.request.address for item in unique] == ["1 Ash Court", "2 Ash Court"]

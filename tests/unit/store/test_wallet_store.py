"""Unit tests for wallet balances and the ledger."""

from __future__ import annotations

from decimal import Decimal

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from proptrace.store import sql as sql_schema
from proptrace.store.wallet_store import CREDIT, DEBIT, WalletStore


def _build_store(tmp_path):
    db_path = tmp_path / "wallet.db"
    engine = sa.create_engine(f"sqlite:///{db_path}", future=True)
    sql_schema.METADATA.create_all(engine)
    factory = sessionmaker(bind=engine, future=True)
    return WalletStore(session_factory=factory), engine


def test_credit_opens_account_and_records_entry(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        entry = store.credit("caller-1", Decimal("5"), description="Top-up")

        assert entry.entry_type == CREDIT
        assert entry.balance_before == Decimal("0")
        assert entry.balance_after == Decimal("5")
        assert store.get_account("caller-1").balance == Decimal("5")
    finally:
        engine.dispose()


def test_debit_decrements_balance_and_appends_entry(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        store.credit("caller-1", Decimal("1.00"), description="Top-up")

        entry = store.debit("caller-1", Decimal("0.11"), description="Skip trace", trace_id="trace-1")

        assert entry is not None
        assert entry.entry_type == DEBIT
        assert entry.balance_before == Decimal("1.00")
        assert entry.balance_after == Decimal("0.89")
        assert store.get_account("caller-1").balance == Decimal("0.89")
        assert [item.entry_type for item in store.list_entries("caller-1")] == [DEBIT, CREDIT]
    finally:
        engine.dispose()


def test_debit_refuses_to_overdraw(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        store.credit("caller-1", Decimal("0.05"), description="Top-up")

        assert store.debit("caller-1", Decimal("0.11"), description="Skip trace", trace_id="trace-1") is None
        assert store.get_account("caller-1").balance == Decimal("0.05")
        assert store.debits_for_trace("trace-1") == []
    finally:
        engine.dispose()


def test_debit_without_account_is_rejected(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        assert store.debit("nobody", Decimal("0.11"), description="Skip trace") is None
    finally:
        engine.dispose()


def test_second_debit_for_same_trace_is_suppressed(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        store.credit("caller-1", Decimal("1.00"), description="Top-up")

        first = store.debit("caller-1", Decimal("0.11"), description="Skip trace", trace_id="trace-1")
        second = store.debit("caller-1", Decimal("0.11"), description="Skip trace", trace_id="trace-1")

        assert first is not None
        assert second is None
        assert store.get_account("caller-1").balance == Decimal("0.89")
        assert len(store.debits_for_trace("trace-1")) == 1
    finally:
        engine.dispose()


def test_non_positive_amounts_raise(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        with pytest.raises(ValueError):
            store.credit("caller-1", Decimal("0"), description="Nothing")
        with pytest.raises(ValueError):
            store.debit("caller-1", Decimal("-1"), description="Nothing")
    finally:
        engine.dispose()


def test_update_settings_changes_tier_and_rebill(tmp_path):
    store, engine = _build_store(tmp_path)
    try:
        store.ensure_account("caller-1")
        updated = store.update_settings("caller-1", tier="member", auto_rebill_enabled=True)

        assert updated.tier == "member"
        assert updated.auto_rebill_enabled is True
        assert updated.balance == Decimal("0")
    finally:
        engine.dispose()

"""Unit tests for pricing, the balance gate and success debits."""

from __future__ import annotations

from decimal import Decimal

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from proptrace.errors import InsufficientFunds
from proptrace.services.billing import MEMBER_TIER, BillingService, PricingTable
from proptrace.settings import get_settings
from proptrace.store import sql as sql_schema
from proptrace.store.wallet_store import WalletStore


def _build_service(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = sa.create_engine(f"sqlite:///{db_path}", future=True)
    sql_schema.METADATA.create_all(engine)
    factory = sessionmaker(bind=engine, future=True)
    store = WalletStore(session_factory=factory)
    return BillingService(store=store, settings=get_settings()), store, engine


def test_pricing_table_falls_back_to_default_tier():
    pricing = PricingTable({"standard": Decimal("0.11"), "member": Decimal("0.07")})

    assert pricing.rate_for("member") == Decimal("0.07")
    assert pricing.rate_for("MEMBER") == Decimal("0.07")
    assert pricing.rate_for("enterprise") == Decimal("0.11")
    assert pricing.rate_for(None) == Decimal("0.11")


def test_pricing_table_requires_default_rate():
    with pytest.raises(ValueError):
        PricingTable({"member": Decimal("0.07")})


def test_ensure_funds_rejects_short_balance(tmp_path):
    service, _, engine = _build_service(tmp_path)
    try:
        service.credit("caller-1", Decimal("0.20"), "Top-up")

        assert service.ensure_funds("caller-1", 1) == Decimal("0.11")
        with pytest.raises(InsufficientFunds) as excinfo:
            service.ensure_funds("caller-1", 2)
        assert excinfo.value.required == Decimal("0.22")
        assert excinfo.value.available == Decimal("0.20")
    finally:
        engine.dispose()


def test_ensure_funds_without_wallet_raises(tmp_path):
    service, _, engine = _build_service(tmp_path)
    try:
        with pytest.raises(InsufficientFunds):
            service.ensure_funds("caller-new", 1)
    finally:
        engine.dispose()


def test_charge_success_uses_member_rate_and_charges_once(tmp_path):
    service, store, engine = _build_service(tmp_path)
    try:
        service.open_account("caller-1", tier=MEMBER_TIER)
        service.credit("caller-1", Decimal("1.00"), "Top-up")

        first = service.charge_success("caller-1", "trace-1")
        second = service.charge_success("caller-1", "trace-1")

        assert first == Decimal("0.07")
        assert second == Decimal("0")
        assert service.check_balance("caller-1") == Decimal("0.93")
        assert len(store.debits_for_trace("trace-1")) == 1
    finally:
        engine.dispose()


def test_charge_success_returns_zero_when_balance_is_gone(tmp_path):
    service, _, engine = _build_service(tmp_path)
    try:
        service.credit("caller-1", Decimal("0.05"), "Top-up")

        assert service.charge_success("caller-1", "trace-1") == Decimal("0")
        assert service.check_balance("caller-1") == Decimal("0.05")
    finally:
        engine.dispose()


def test_summary_reports_rebill_need(tmp_path):
    service, store, engine = _build_service(tmp_path)
    try:
        service.credit("caller-1", Decimal("5.00"), "Top-up")
        assert service.needs_rebill("caller-1") is False

        store.update_settings("caller-1", auto_rebill_enabled=True)
        summary = service.summary("caller-1")

        assert summary.balance == Decimal("5.00")
        assert summary.rate == Decimal("0.11")
        assert summary.needs_rebill is True
        assert service.summary("caller-fresh").balance == Decimal("0")
    finally:
        engine.dispose()

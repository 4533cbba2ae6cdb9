"""Pricing and wallet reconciliation for successful traces.

Callers prepay into a wallet. A submission is only accepted while the balance
covers the rate for every record being sent, and the wallet is debited once
per trace that comes back with contact data. Debits go through
:meth:`WalletStore.debit`, which refuses to overdraw and refuses a second debit
for the same trace.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Mapping, Optional

from proptrace.errors import InsufficientFunds
from proptrace.observability import Observability, get_observability
from proptrace.services.factories import build_wallet_store
from proptrace.services.models import WalletSummary
from proptrace.settings import Settings, get_settings
from proptrace.store.wallet_store import LedgerEntry, WalletAccount, WalletStore

LOGGER = logging.getLogger(__name__)

STANDARD_TIER = "standard"
MEMBER_TIER = "member"


class PricingTable:
    """Per-success charge keyed by caller tier."""

    def __init__(self, rates: Mapping[str, Decimal], *, default_tier: str = STANDARD_TIER) -> None:
        if default_tier not in rates:
            raise ValueError(f"default tier {default_tier!r} has no rate")
        self._rates = {tier.lower(): Decimal(rate) for tier, rate in rates.items()}
        self.default_tier = default_tier

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingTable":
        billing = settings.billing
        return cls({STANDARD_TIER: billing.standard_rate, MEMBER_TIER: billing.member_rate})

    def rate_for(self, tier: str | None) -> Decimal:
        """Return the charge for ``tier``; unknown tiers pay the default rate."""

        return self._rates.get((tier or "").lower(), self._rates[self.default_tier])

    @property
    def tiers(self) -> tuple[str, ...]:
        return tuple(self._rates)


class BillingService:
    """Balance gate, success debits, credits and rebill checks."""

    def __init__(
        self,
        *,
        store: Optional[WalletStore] = None,
        pricing: Optional[PricingTable] = None,
        settings: Optional[Settings] = None,
        observability: Optional[Observability] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store or build_wallet_store()
        self.pricing = pricing or PricingTable.from_settings(self.settings)
        self._observability = observability or get_observability(component="billing", settings=self.settings)

    def _account(self, caller_id: str) -> Optional[WalletAccount]:
        return self._store.get_account(caller_id)

    def open_account(self, caller_id: str, *, tier: str = STANDARD_TIER) -> WalletAccount:
        billing = self.settings.billing
        return self._store.ensure_account(
            caller_id,
            tier=tier,
            low_balance_threshold=billing.low_balance_threshold,
            auto_rebill_amount=billing.auto_rebill_amount,
        )

    def check_balance(self, caller_id: str) -> Decimal:
        account = self._account(caller_id)
        return account.balance if account else Decimal("0")

    def rate_for_caller(self, caller_id: str) -> Decimal:
        account = self._account(caller_id)
        return self.pricing.rate_for(account.tier if account else None)

    def required_amount(self, caller_id: str, record_count: int) -> Decimal:
        """Amount the wallet must hold before ``record_count`` records may be submitted."""

        return self.rate_for_caller(caller_id) * max(record_count, 0)

    def ensure_funds(self, caller_id: str, record_count: int) -> Decimal:
        """Raise :class:`InsufficientFunds` unless the balance covers ``record_count`` traces."""

        required = self.required_amount(caller_id, record_count)
        available = self.check_balance(caller_id)
        if available < required:
            self._observability.emit_event(
                "billing.insufficient_funds",
                caller_id=caller_id,
                required=required,
                available=available,
            )
            raise InsufficientFunds(required, available)
        return required

    def charge_success(self, caller_id: str, trace_id: str, *, description: str = "Skip trace - successful match") -> Decimal:
        """Debit the caller's rate for ``trace_id``; returns the amount charged (0 when rejected)."""

        rate = self.rate_for_caller(caller_id)
        if rate <= 0:
            return Decimal("0")
        entry = self._store.debit(caller_id, rate, description=description, trace_id=trace_id)
        if entry is None:
            LOGGER.warning("Debit rejected caller_id=%s trace_id=%s rate=%s", caller_id, trace_id, rate)
            self._observability.emit_event(
                "billing.debit_rejected",
                caller_id=caller_id,
                trace_id=trace_id,
                amount=rate,
            )
            self._observability.increment("billing.debit_rejected")
            return Decimal("0")
        self._observability.increment("billing.debit")
        if self.needs_rebill(caller_id):
            self._observability.emit_event("billing.rebill_needed", caller_id=caller_id, balance=entry.balance_after)
        return entry.amount

    def credit(self, caller_id: str, amount: Decimal, reason: str) -> LedgerEntry:
        """Add funds to the caller's wallet, opening it if necessary."""

        if self._account(caller_id) is None:
            self.open_account(caller_id)
        entry = self._store.credit(caller_id, Decimal(amount), description=reason)
        self._observability.emit_event("billing.credit", caller_id=caller_id, amount=entry.amount)
        return entry

    def needs_rebill(self, caller_id: str) -> bool:
        """True when auto-rebill is on and the balance fell below the threshold."""

        account = self._account(caller_id)
        if account is None:
            return False
        return account.auto_rebill_enabled and account.balance < account.low_balance_threshold

    def summary(self, caller_id: str) -> WalletSummary:
        account = self._account(caller_id) or self.open_account(caller_id)
        return WalletSummary(
            caller_id=caller_id,
            tier=account.tier,
            balance=account.balance,
            rate=self.pricing.rate_for(account.tier),
            low_balance_threshold=account.low_balance_threshold,
            auto_rebill_enabled=account.auto_rebill_enabled,
            needs_rebill=account.auto_rebill_enabled and account.balance < account.low_balance_threshold,
        )


__all__ = ["BillingService", "MEMBER_TIER", "PricingTable", "STANDARD_TIER"]

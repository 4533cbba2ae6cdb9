"""Wallet balances and the append-only ledger.

``debit`` and ``credit`` are the only code paths that write
``wallet_accounts.balance``. Each runs as a single transaction that adjusts the
balance with a conditional UPDATE and appends the matching ledger entry, so a
rejected ledger insert (for example a second debit for the same trace) rolls the
balance change back with it.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from proptrace.store import sql as sql_schema
from proptrace.store.sql import session_factory as default_session_factory

LOGGER = logging.getLogger(__name__)

DEBIT = "debit"
CREDIT = "credit"
CENT = Decimal("0.0001")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(CENT)


@dataclass(slots=True)
class WalletAccount:
    """Domain object describing a caller's prepaid wallet."""

    caller_id: str
    tier: str
    balance: Decimal
    low_balance_threshold: Decimal
    auto_rebill_enabled: bool
    auto_rebill_amount: Decimal
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(slots=True)
class LedgerEntry:
    """One immutable balance movement."""

    entry_id: str
    caller_id: str
    entry_type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str | None
    trace_id: str | None
    created_at: datetime | None


def _row_to_account(row: Any) -> WalletAccount:
    return WalletAccount(
        caller_id=row.caller_id,
        tier=row.tier,
        balance=_money(row.balance),
        low_balance_threshold=_money(row.low_balance_threshold),
        auto_rebill_enabled=bool(row.auto_rebill_enabled),
        auto_rebill_amount=_money(row.auto_rebill_amount),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_entry(row: Any) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row.entry_id,
        caller_id=row.caller_id,
        entry_type=row.entry_type,
        amount=_money(row.amount),
        balance_before=_money(row.balance_before),
        balance_after=_money(row.balance_after),
        description=row.description,
        trace_id=row.trace_id,
        created_at=row.created_at,
    )


class WalletStore:
    """Atomic balance primitives over ``wallet_accounts`` and ``ledger_entries``."""

    def __init__(self, *, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory or default_session_factory()

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_account(self, caller_id: str) -> Optional[WalletAccount]:
        table = sql_schema.wallet_accounts
        with self._session_scope() as session:
            row = session.execute(sa.select(table).where(table.c.caller_id == caller_id)).first()
        return _row_to_account(row) if row else None

    def ensure_account(
        self,
        caller_id: str,
        *,
        tier: str = "standard",
        low_balance_threshold: Decimal = Decimal("10.00"),
        auto_rebill_amount: Decimal = Decimal("25.00"),
        auto_rebill_enabled: bool = False,
    ) -> WalletAccount:
        """Return the caller's account, opening an empty one if missing."""

        existing = self.get_account(caller_id)
        if existing is not None:
            return existing
        timestamp = _utcnow()
        try:
            with self._session_scope() as session:
                session.execute(
                    sa.insert(sql_schema.wallet_accounts).values(
                        caller_id=caller_id,
                        tier=tier,
                        balance=Decimal("0"),
                        low_balance_threshold=low_balance_threshold,
                        auto_rebill_enabled=auto_rebill_enabled,
                        auto_rebill_amount=auto_rebill_amount,
                        created_at=timestamp,
                        updated_at=timestamp,
                    )
                )
            LOGGER.info("Opened wallet caller_id=%s tier=%s", caller_id, tier)
        except IntegrityError:
            LOGGER.debug("Wallet for caller_id=%s created concurrently", caller_id)
        account = self.get_account(caller_id)
        assert account is not None
        return account

    def update_settings(
        self,
        caller_id: str,
        *,
        tier: str | None = None,
        low_balance_threshold: Decimal | None = None,
        auto_rebill_enabled: bool | None = None,
        auto_rebill_amount: Decimal | None = None,
    ) -> Optional[WalletAccount]:
        """Update non-balance wallet attributes."""

        values: dict[str, Any] = {}
        if tier is not None:
            values["tier"] = tier
        if low_balance_threshold is not None:
            values["low_balance_threshold"] = low_balance_threshold
        if auto_rebill_enabled is not None:
            values["auto_rebill_enabled"] = auto_rebill_enabled
        if auto_rebill_amount is not None:
            values["auto_rebill_amount"] = auto_rebill_amount
        if values:
            values["updated_at"] = _utcnow()
            table = sql_schema.wallet_accounts
            with self._session_scope() as session:
                session.execute(sa.update(table).where(table.c.caller_id == caller_id).values(**values))
        return self.get_account(caller_id)

    def debit(
        self,
        caller_id: str,
        amount: Decimal,
        *,
        description: str,
        trace_id: str | None = None,
    ) -> Optional[LedgerEntry]:
        """Atomically decrement the balance and append a debit entry.

        Returns ``None`` when the balance does not cover ``amount``, the account
        does not exist, or ``trace_id`` already carries a debit.
        """

        amount = _money(amount)
        if amount <= 0:
            raise ValueError("debit amount must be positive")
        accounts = sql_schema.wallet_accounts
        entry_id = str(uuid.uuid4())
        timestamp = _utcnow()
        try:
            with self._session_scope() as session:
                result = session.execute(
                    sa.update(accounts)
                    .where(accounts.c.caller_id == caller_id, accounts.c.balance >= amount)
                    .values(balance=accounts.c.balance - amount, updated_at=timestamp)
                )
                if result.rowcount != 1:
                    LOGGER.info("Debit rejected caller_id=%s amount=%s trace_id=%s", caller_id, amount, trace_id)
                    return None
                balance_after = _money(
                    session.execute(
                        sa.select(accounts.c.balance).where(accounts.c.caller_id == caller_id)
                    ).scalar_one()
                )
                session.execute(
                    sa.insert(sql_schema.ledger_entries).values(
                        entry_id=entry_id,
                        caller_id=caller_id,
                        entry_type=DEBIT,
                        amount=amount,
                        balance_before=balance_after + amount,
                        balance_after=balance_after,
                        description=description,
                        trace_id=trace_id,
                        created_at=timestamp,
                    )
                )
        except IntegrityError:
            LOGGER.warning("Duplicate debit suppressed caller_id=%s trace_id=%s", caller_id, trace_id)
            return None
        return self.get_entry(entry_id)

    def credit(
        self,
        caller_id: str,
        amount: Decimal,
        *,
        description: str,
        trace_id: str | None = None,
    ) -> LedgerEntry:
        """Atomically increment the balance and append a credit entry."""

        amount = _money(amount)
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        self.ensure_account(caller_id)
        accounts = sql_schema.wallet_accounts
        entry_id = str(uuid.uuid4())
        timestamp = _utcnow()
        with self._session_scope() as session:
            session.execute(
                sa.update(accounts)
                .where(accounts.c.caller_id == caller_id)
                .values(balance=accounts.c.balance + amount, updated_at=timestamp)
            )
            balance_after = _money(
                session.execute(sa.select(accounts.c.balance).where(accounts.c.caller_id == caller_id)).scalar_one()
            )
            session.execute(
                sa.insert(sql_schema.ledger_entries).values(
                    entry_id=entry_id,
                    caller_id=caller_id,
                    entry_type=CREDIT,
                    amount=amount,
                    balance_before=balance_after - amount,
                    balance_after=balance_after,
                    description=description,
                    trace_id=trace_id,
                    created_at=timestamp,
                )
            )
        LOGGER.info("Credited caller_id=%s amount=%s balance=%s", caller_id, amount, balance_after)
        entry = self.get_entry(entry_id)
        assert entry is not None
        return entry

    def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        table = sql_schema.ledger_entries
        with self._session_scope() as session:
            row = session.execute(sa.select(table).where(table.c.entry_id == entry_id)).first()
        return _row_to_entry(row) if row else None

    def list_entries(self, caller_id: str, *, limit: int = 100) -> List[LedgerEntry]:
        """Return ledger entries newest first."""

        table = sql_schema.ledger_entries
        with self._session_scope() as session:
            rows = session.execute(
                sa.select(table)
                .where(table.c.caller_id == caller_id)
                .order_by(table.c.created_at.desc(), table.c.entry_id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def debits_for_trace(self, trace_id: str) -> List[LedgerEntry]:
        table = sql_schema.ledger_entries
        with self._session_scope() as session:
            rows = session.execute(
                sa.select(table).where(table.c.trace_id == trace_id, table.c.entry_type == DEBIT)
            ).fetchall()
        return [_row_to_entry(row) for row in rows]


__all__ = ["CREDIT", "DEBIT", "LedgerEntry", "WalletAccount", "WalletStore"]

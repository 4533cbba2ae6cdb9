"""Persistence helpers for per-address trace records."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from proptrace.store import sql as sql_schema
from proptrace.store.sql import session_factory as default_session_factory

LOGGER = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
SUCCESS = "success"
NO_MATCH = "no_match"
ERROR = "error"

ACTIVE_STATUSES = (PENDING, PROCESSING)
TERMINAL_STATUSES = (SUCCESS, NO_MATCH, ERROR)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class NewTrace:
    """Input needed to open a ``processing`` trace record."""

    address_fingerprint: str
    canonical_address: str
    address: str
    city: str
    state: str
    zip: str | None = None
    input_owner_name: str | None = None
    mailing_address: str | None = None


@dataclass(slots=True)
class TraceRecord:
    """Domain object describing one trace record row."""

    trace_id: str
    caller_id: str
    address_fingerprint: str
    canonical_address: str
    address: str
    city: str
    state: str
    zip: str | None
    input_owner_name: str | None
    mailing_address: str | None
    status: str
    provider_job_id: str | None
    result_payload: Dict[str, Any] | None
    is_successful: bool
    phone_count: int
    email_count: int
    cost: Decimal
    charge: Decimal
    error_message: str | None
    created_at: datetime | None
    updated_at: datetime | None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def street_key(self) -> str:
        """Normalized street portion of the canonical address."""

        return self.canonical_address.split("|", 1)[0]

    @property
    def has_contact_data(self) -> bool:
        payload = self.result_payload or {}
        return bool(payload.get("phones") or payload.get("emails"))


def _row_to_record(row: Any) -> TraceRecord:
    return TraceRecord(
        trace_id=row.trace_id,
        caller_id=row.caller_id,
        address_fingerprint=row.address_fingerprint,
        canonical_address=row.canonical_address,
        address=row.address,
        city=row.city,
        state=row.state,
        zip=row.zip,
        input_owner_name=row.input_owner_name,
        mailing_address=row.mailing_address,
        status=row.status,
        provider_job_id=row.provider_job_id,
        result_payload=row.result_payload,
        is_successful=bool(row.is_successful),
        phone_count=row.phone_count or 0,
        email_count=row.email_count or 0,
        cost=Decimal(row.cost or 0),
        charge=Decimal(row.charge or 0),
        error_message=row.error_message,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        completed_at=_as_utc(row.completed_at),
    )


def _processing_values(new: NewTrace, *, provider_job_id: str | None, timestamp: datetime) -> Dict[str, Any]:
    return {
        "canonical_address": new.canonical_address,
        "address": new.address,
        "city": new.city.upper().strip(),
        "state": new.state.upper().strip(),
        "zip": (new.zip or "")[:5] or None,
        "input_owner_name": new.input_owner_name,
        "mailing_address": new.mailing_address,
        "status": PROCESSING,
        "provider_job_id": provider_job_id,
        "result_payload": None,
        "is_successful": False,
        "phone_count": 0,
        "email_count": 0,
        "cost": Decimal("0"),
        "charge": Decimal("0"),
        "error_message": None,
        "created_at": timestamp,
        "updated_at": timestamp,
        "completed_at": None,
    }


class TraceStore:
    """CRUD helpers around the ``trace_records`` table."""

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

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, trace_id: str, *, caller_id: str | None = None) -> Optional[TraceRecord]:
        """Return the record for ``trace_id`` (scoped to ``caller_id`` when given)."""

        table = sql_schema.trace_records
        query = sa.select(table).where(table.c.trace_id == trace_id)
        if caller_id is not None:
            query = query.where(table.c.caller_id == caller_id)
        with self._session_scope() as session:
            row = session.execute(query).first()
        return _row_to_record(row) if row else None

    def find_by_fingerprint(self, caller_id: str, fingerprint: str) -> Optional[TraceRecord]:
        table = sql_schema.trace_records
        with self._session_scope() as session:
            row = session.execute(
                sa.select(table).where(
                    table.c.caller_id == caller_id,
                    table.c.address_fingerprint == fingerprint,
                )
            ).first()
        return _row_to_record(row) if row else None

    def find_successful(
        self,
        caller_id: str,
        fingerprints: Sequence[str],
        *,
        since: datetime,
    ) -> Dict[str, TraceRecord]:
        """Return successful records created at or after ``since`` keyed by fingerprint.

        When more than one row matches a fingerprint the most recent wins.
        """

        if not fingerprints:
            return {}
        table = sql_schema.trace_records
        found: Dict[str, TraceRecord] = {}
        with self._session_scope() as session:
            for chunk in _chunks(list(dict.fromkeys(fingerprints)), 500):
                rows = session.execute(
                    sa.select(table)
                    .where(
                        table.c.caller_id == caller_id,
                        table.c.address_fingerprint.in_(chunk),
                        table.c.status == SUCCESS,
                        table.c.created_at >= since,
                    )
                    .order_by(table.c.created_at.desc())
                ).fetchall()
                for row in rows:
                    found.setdefault(row.address_fingerprint, _row_to_record(row))
        return found

    def find_active(self, caller_id: str, fingerprints: Sequence[str]) -> Dict[str, TraceRecord]:
        """Return ``pending``/``processing`` records keyed by fingerprint."""

        if not fingerprints:
            return {}
        table = sql_schema.trace_records
        found: Dict[str, TraceRecord] = {}
        with self._session_scope() as session:
            for chunk in _chunks(list(dict.fromkeys(fingerprints)), 500):
                rows = session.execute(
                    sa.select(table).where(
                        table.c.caller_id == caller_id,
                        table.c.address_fingerprint.in_(chunk),
                        table.c.status.in_(ACTIVE_STATUSES),
                    )
                ).fetchall()
                for row in rows:
                    found[row.address_fingerprint] = _row_to_record(row)
        return found

    def list_for_job(
        self,
        provider_job_id: str,
        *,
        caller_id: str,
        status: str | None = None,
    ) -> List[TraceRecord]:
        """Return the job's records oldest first (``created_at`` then ``trace_id``)."""

        table = sql_schema.trace_records
        query = sa.select(table).where(
            table.c.provider_job_id == provider_job_id,
            table.c.caller_id == caller_id,
        )
        if status is not None:
            query = query.where(table.c.status == status)
        query = query.order_by(table.c.created_at.asc(), table.c.trace_id.asc())
        with self._session_scope() as session:
            rows = session.execute(query).fetchall()
        return [_row_to_record(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_processing(self, caller_id: str, new: NewTrace) -> tuple[TraceRecord, bool]:
        """Insert a ``processing`` record.

        Returns ``(record, created)``. When another writer already holds the
        (caller, fingerprint) slot the existing record is returned with
        ``created=False``.
        """

        timestamp = _utcnow()
        trace_id = str(uuid.uuid4())
        values = _processing_values(new, provider_job_id=None, timestamp=timestamp)
        try:
            with self._session_scope() as session:
                session.execute(
                    sa.insert(sql_schema.trace_records).values(
                        trace_id=trace_id,
                        caller_id=caller_id,
                        address_fingerprint=new.address_fingerprint,
                        **values,
                    )
                )
        except IntegrityError:
            existing = self.find_by_fingerprint(caller_id, new.address_fingerprint)
            if existing is None:
                raise
            LOGGER.info(
                "Trace insert lost race caller_id=%s fingerprint=%s existing=%s",
                caller_id,
                new.address_fingerprint,
                existing.trace_id,
            )
            return existing, False
        record = self.get(trace_id)
        assert record is not None
        return record, True

    def upsert_processing(
        self,
        caller_id: str,
        records: Sequence[NewTrace],
        *,
        provider_job_id: str,
        batch_size: int = 500,
    ) -> int:
        """Open or reset one ``processing`` record per fingerprint for a bulk job.

        Keyed on (caller, fingerprint). A terminal row in the slot is reset
        under a fresh ``trace_id`` so its ledger history stays with the old
        id. Rows that are still active belong to another submission and are
        left alone. Returns the number of rows written.
        """

        table = sql_schema.trace_records
        written = 0
        for chunk in _chunks(list(records), max(batch_size, 1)):
            timestamp = _utcnow()
            with self._session_scope() as session:
                fingerprints = [item.address_fingerprint for item in chunk]
                existing = {
                    row.address_fingerprint: row.status
                    for row in session.execute(
                        sa.select(table.c.address_fingerprint, table.c.status).where(
                            table.c.caller_id == caller_id,
                            table.c.address_fingerprint.in_(fingerprints),
                        )
                    )
                }
                for item in chunk:
                    values = _processing_values(item, provider_job_id=provider_job_id, timestamp=timestamp)
                    current = existing.get(item.address_fingerprint)
                    if current in ACTIVE_STATUSES:
                        LOGGER.info(
                            "Skipping active trace caller_id=%s fingerprint=%s job=%s",
                            caller_id,
                            item.address_fingerprint,
                            provider_job_id,
                        )
                        continue
                    if current is not None:
                        session.execute(
                            sa.update(table)
                            .where(
                                table.c.caller_id == caller_id,
                                table.c.address_fingerprint == item.address_fingerprint,
                                table.c.status.notin_(ACTIVE_STATUSES),
                            )
                            .values(trace_id=str(uuid.uuid4()), **values)
                        )
                    else:
                        session.execute(
                            sa.insert(table).values(
                                trace_id=str(uuid.uuid4()),
                                caller_id=caller_id,
                                address_fingerprint=item.address_fingerprint,
                                **values,
                            )
                        )
                        existing[item.address_fingerprint] = PROCESSING
                    written += 1
            LOGGER.debug("Upserted %s processing records for job %s", len(chunk), provider_job_id)
        return written

    def set_provider_job(self, trace_id: str, provider_job_id: str) -> None:
        table = sql_schema.trace_records
        with self._session_scope() as session:
            session.execute(
                sa.update(table)
                .where(table.c.trace_id == trace_id)
                .values(provider_job_id=provider_job_id, updated_at=_utcnow())
            )

    def complete(
        self,
        trace_id: str,
        *,
        status: str,
        result_payload: Dict[str, Any] | None = None,
        phone_count: int = 0,
        email_count: int = 0,
        cost: Decimal = Decimal("0"),
        error_message: str | None = None,
    ) -> bool:
        """Move a ``processing`` record to a terminal state.

        The update is guarded by ``status = 'processing'``; only the writer whose
        update lands gets ``True`` back.
        """

        table = sql_schema.trace_records
        timestamp = _utcnow()
        with self._session_scope() as session:
            result = session.execute(
                sa.update(table)
                .where(table.c.trace_id == trace_id, table.c.status == PROCESSING)
                .values(
                    status=status,
                    result_payload=result_payload,
                    is_successful=status == SUCCESS,
                    phone_count=phone_count,
                    email_count=email_count,
                    cost=cost,
                    error_message=error_message,
                    updated_at=timestamp,
                    completed_at=timestamp,
                )
            )
            return result.rowcount == 1

    def set_charge(self, trace_id: str, charge: Decimal) -> None:
        table = sql_schema.trace_records
        with self._session_scope() as session:
            session.execute(
                sa.update(table).where(table.c.trace_id == trace_id).values(charge=charge, updated_at=_utcnow())
            )

    def sweep_processing(self, provider_job_id: str, *, caller_id: str, cost: Decimal = Decimal("0")) -> int:
        """Close every record still ``processing`` for the job as ``no_match``."""

        table = sql_schema.trace_records
        timestamp = _utcnow()
        with self._session_scope() as session:
            result = session.execute(
                sa.update(table)
                .where(
                    table.c.provider_job_id == provider_job_id,
                    table.c.caller_id == caller_id,
                    table.c.status == PROCESSING,
                )
                .values(
                    status=NO_MATCH,
                    is_successful=False,
                    cost=cost,
                    charge=Decimal("0"),
                    updated_at=timestamp,
                    completed_at=timestamp,
                )
            )
            return result.rowcount or 0

    def delete(self, trace_id: str) -> None:
        table = sql_schema.trace_records
        with self._session_scope() as session:
            session.execute(sa.delete(table).where(table.c.trace_id == trace_id))

    def delete_for_fingerprint(
        self,
        caller_id: str,
        fingerprint: str,
        *,
        statuses: Iterable[str] | None = None,
    ) -> int:
        """Delete records for the fingerprint, optionally limited to ``statuses``."""

        table = sql_schema.trace_records
        query = sa.delete(table).where(
            table.c.caller_id == caller_id,
            table.c.address_fingerprint == fingerprint,
        )
        if statuses is not None:
            query = query.where(table.c.status.in_(list(statuses)))
        with self._session_scope() as session:
            result = session.execute(query)
            deleted = result.rowcount or 0
        if deleted:
            LOGGER.info("Deleted %s trace records caller_id=%s fingerprint=%s", deleted, caller_id, fingerprint)
        return deleted


def _chunks(items: List[Any], size: int) -> Iterator[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


__all__ = [
    "ACTIVE_STATUSES",
    "ERROR",
    "NO_MATCH",
    "NewTrace",
    "PENDING",
    "PROCESSING",
    "SUCCESS",
    "TERMINAL_STATUSES",
    "TraceRecord",
    "TraceStore",
]

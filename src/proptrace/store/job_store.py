"""Persistence helpers for bulk trace jobs."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session, sessionmaker

from proptrace.store import sql as sql_schema
from proptrace.store.sql import session_factory as default_session_factory

LOGGER = logging.getLogger(__name__)

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class BulkJob:
    """Domain object describing a bulk trace job."""

    job_id: str
    caller_id: str
    provider_job_id: str | None
    file_name: str | None
    total_records: int
    dedupe_removed: int
    records_submitted: int
    records_matched: int
    total_charge: Decimal
    status: str
    error_message: str | None
    poll_attempts: int
    created_at: datetime | None
    updated_at: datetime | None
    completed_at: datetime | None


def _row_to_job(row: Any) -> BulkJob:
    return BulkJob(
        job_id=row.job_id,
        caller_id=row.caller_id,
        provider_job_id=row.provider_job_id,
        file_name=row.file_name,
        total_records=row.total_records or 0,
        dedupe_removed=row.dedupe_removed or 0,
        records_submitted=row.records_submitted or 0,
        records_matched=row.records_matched or 0,
        total_charge=Decimal(row.total_charge or 0),
        status=row.status,
        error_message=row.error_message,
        poll_attempts=row.poll_attempts or 0,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


class BulkJobStore:
    """CRUD helpers around the ``bulk_jobs`` table."""

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

    def create(
        self,
        *,
        caller_id: str,
        file_name: str | None,
        total_records: int,
        dedupe_removed: int,
        records_submitted: int,
    ) -> BulkJob:
        """Insert a job in ``processing`` state and return it."""

        timestamp = _utcnow()
        job_id = str(uuid.uuid4())
        with self._session_scope() as session:
            session.execute(
                sa.insert(sql_schema.bulk_jobs).values(
                    job_id=job_id,
                    caller_id=caller_id,
                    file_name=file_name,
                    total_records=total_records,
                    dedupe_removed=dedupe_removed,
                    records_submitted=records_submitted,
                    records_matched=0,
                    total_charge=Decimal("0"),
                    status=JOB_PROCESSING,
                    poll_attempts=0,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
            )
        LOGGER.info("Created bulk job job_id=%s caller_id=%s submitted=%s", job_id, caller_id, records_submitted)
        job = self.get(job_id)
        assert job is not None
        return job

    def get(self, job_id: str, *, caller_id: str | None = None) -> Optional[BulkJob]:
        table = sql_schema.bulk_jobs
        query = sa.select(table).where(table.c.job_id == job_id)
        if caller_id is not None:
            query = query.where(table.c.caller_id == caller_id)
        with self._session_scope() as session:
            row = session.execute(query).first()
        return _row_to_job(row) if row else None

    def find_by_provider_job(self, provider_job_id: str) -> Optional[BulkJob]:
        table = sql_schema.bulk_jobs
        with self._session_scope() as session:
            row = session.execute(sa.select(table).where(table.c.provider_job_id == provider_job_id)).first()
        return _row_to_job(row) if row else None

    def list_for_caller(self, caller_id: str, *, limit: int = 50) -> List[BulkJob]:
        table = sql_schema.bulk_jobs
        with self._session_scope() as session:
            rows = session.execute(
                sa.select(table)
                .where(table.c.caller_id == caller_id)
                .order_by(table.c.created_at.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def set_provider_job(self, job_id: str, provider_job_id: str) -> None:
        table = sql_schema.bulk_jobs
        with self._session_scope() as session:
            session.execute(
                sa.update(table)
                .where(table.c.job_id == job_id)
                .values(provider_job_id=provider_job_id, updated_at=_utcnow())
            )

    def record_poll_attempt(self, job_id: str) -> int:
        """Increment ``poll_attempts`` and return the new count."""

        table = sql_schema.bulk_jobs
        with self._session_scope() as session:
            session.execute(
                sa.update(table)
                .where(table.c.job_id == job_id)
                .values(poll_attempts=table.c.poll_attempts + 1, updated_at=_utcnow())
            )
            count = session.execute(sa.select(table.c.poll_attempts).where(table.c.job_id == job_id)).scalar_one()
        return int(count)

    def mark_completed(self, job_id: str, *, records_matched: int, total_charge: Decimal) -> bool:
        """Close a ``processing`` job; returns ``False`` if it was already closed."""

        table = sql_schema.bulk_jobs
        timestamp = _utcnow()
        with self._session_scope() as session:
            result = session.execute(
                sa.update(table)
                .where(table.c.job_id == job_id, table.c.status == JOB_PROCESSING)
                .values(
                    status=JOB_COMPLETED,
                    records_matched=records_matched,
                    total_charge=total_charge,
                    updated_at=timestamp,
                    completed_at=timestamp,
                )
            )
            return result.rowcount == 1

    def mark_failed(self, job_id: str, error_message: str) -> None:
        table = sql_schema.bulk_jobs
        timestamp = _utcnow()
        with self._session_scope() as session:
            session.execute(
                sa.update(table)
                .where(table.c.job_id == job_id)
                .values(status=JOB_FAILED, error_message=error_message, updated_at=timestamp, completed_at=timestamp)
            )
        LOGGER.warning("Bulk job failed job_id=%s error=%s", job_id, error_message)


__all__ = [
    "BulkJob",
    "BulkJobStore",
    "JOB_COMPLETED",
    "JOB_FAILED",
    "JOB_PENDING",
    "JOB_PROCESSING",
]

"""SQLAlchemy metadata and engine helpers for the trace engine tables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Engine
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import URL
from sqlalchemy.orm import sessionmaker

from proptrace.settings import Settings, get_settings

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
TIMESTAMP = sa.DateTime(timezone=True)
UUID_TYPE = sa.String(length=64)
MONEY = sa.Numeric(12, 4)

METADATA = sa.MetaData()

trace_records = sa.Table(
    "trace_records",
    METADATA,
    sa.Column("trace_id", UUID_TYPE, primary_key=True),
    sa.Column("caller_id", sa.Text(), nullable=False),
    sa.Column("address_fingerprint", sa.String(length=64), nullable=False),
    sa.Column("canonical_address", sa.Text(), nullable=False),
    sa.Column("address", sa.Text(), nullable=False),
    sa.Column("city", sa.Text(), nullable=False),
    sa.Column("state", sa.String(length=2), nullable=False),
    sa.Column("zip", sa.String(length=10), nullable=True),
    sa.Column("input_owner_name", sa.Text(), nullable=True),
    sa.Column("mailing_address", sa.Text(), nullable=True),
    sa.Column("status", sa.Text(), nullable=False, server_default="processing"),
    sa.Column("provider_job_id", sa.Text(), nullable=True),
    sa.Column("result_payload", JSON_TYPE, nullable=True),
    sa.Column("is_successful", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("phone_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("email_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("cost", MONEY, nullable=False, server_default="0"),
    sa.Column("charge", MONEY, nullable=False, server_default="0"),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.Column("updated_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.Column("completed_at", TIMESTAMP, nullable=True),
    sa.UniqueConstraint("caller_id", "address_fingerprint", name="uq_trace_records_caller_fingerprint"),
)
sa.Index("idx_trace_records_provider_job", trace_records.c.provider_job_id, trace_records.c.status)
sa.Index("idx_trace_records_caller_created", trace_records.c.caller_id, trace_records.c.created_at)

bulk_jobs = sa.Table(
    "bulk_jobs",
    METADATA,
    sa.Column("job_id", UUID_TYPE, primary_key=True),
    sa.Column("caller_id", sa.Text(), nullable=False),
    sa.Column("provider_job_id", sa.Text(), nullable=True),
    sa.Column("file_name", sa.Text(), nullable=True),
    sa.Column("total_records", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("dedupe_removed", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("records_submitted", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("records_matched", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("total_charge", MONEY, nullable=False, server_default="0"),
    sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("poll_attempts", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.Column("updated_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.Column("completed_at", TIMESTAMP, nullable=True),
)
sa.Index("idx_bulk_jobs_caller_created", bulk_jobs.c.caller_id, bulk_jobs.c.created_at)
sa.Index("idx_bulk_jobs_status", bulk_jobs.c.status)

wallet_accounts = sa.Table(
    "wallet_accounts",
    METADATA,
    sa.Column("caller_id", sa.Text(), primary_key=True),
    sa.Column("tier", sa.Text(), nullable=False, server_default="standard"),
    sa.Column("balance", MONEY, nullable=False, server_default="0"),
    sa.Column("low_balance_threshold", MONEY, nullable=False, server_default="10"),
    sa.Column("auto_rebill_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("auto_rebill_amount", MONEY, nullable=False, server_default="25"),
    sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.Column("updated_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.CheckConstraint("balance >= 0", name="ck_wallet_accounts_balance_nonnegative"),
)

ledger_entries = sa.Table(
    "ledger_entries",
    METADATA,
    sa.Column("entry_id", UUID_TYPE, primary_key=True),
    sa.Column("caller_id", sa.Text(), nullable=False),
    sa.Column("entry_type", sa.Text(), nullable=False),
    sa.Column("amount", MONEY, nullable=False),
    sa.Column("balance_before", MONEY, nullable=False),
    sa.Column("balance_after", MONEY, nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("trace_id", UUID_TYPE, nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.UniqueConstraint("trace_id", "entry_type", name="uq_ledger_entries_trace_entry_type"),
)
sa.Index("idx_ledger_entries_caller_created", ledger_entries.c.caller_id, ledger_entries.c.created_at)


def _resolve_database_url(settings: Settings | None = None) -> str:
    """Return the SQLAlchemy URL considering overrides and configured backend."""

    url_override = os.getenv("PROPTRACE_DATABASE_URL") or os.getenv("ALEMBIC_DATABASE_URL")
    if url_override:
        return url_override

    resolved = settings or get_settings()
    if resolved.storage.database_url:
        return resolved.storage.database_url
    sqlite_path = Path(resolved.storage.sqlite_path)
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return URL.create("sqlite", database=sqlite_path.as_posix()).render_as_string(hide_password=False)


def build_engine(*, echo: bool = False, settings: Settings | None = None) -> Engine:
    """Instantiate a SQLAlchemy engine aligned with project settings."""

    url = _resolve_database_url(settings)
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite:///"):
        connect_args["check_same_thread"] = False
    return sa.create_engine(url, echo=echo, future=True, pool_pre_ping=True, connect_args=connect_args)


def session_factory(*, settings: Settings | None = None) -> sessionmaker:
    """Return a configured sessionmaker bound to the active engine."""

    engine = build_engine(settings=settings)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def create_schema(*, settings: Settings | None = None) -> None:
    """Create every table on the configured database (local development helper)."""

    engine = build_engine(settings=settings)
    try:
        METADATA.create_all(engine)
    finally:
        engine.dispose()


__all__ = [
    "JSON_TYPE",
    "METADATA",
    "MONEY",
    "TIMESTAMP",
    "UUID_TYPE",
    "build_engine",
    "bulk_jobs",
    "create_schema",
    "ledger_entries",
    "session_factory",
    "trace_records",
    "wallet_accounts",
]

"""Trace engine baseline schema."""

from __future__ import annotations

from typing import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "20261019_01"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
UUID_TYPE = sa.String(length=64)
TIMESTAMP = sa.DateTime(timezone=True)
MONEY = sa.Numeric(12, 4)


def upgrade() -> None:
    """Create trace records, bulk jobs, wallets and the ledger."""

    op.create_table(
        "trace_records",
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
    op.create_index("idx_trace_records_provider_job", "trace_records", ["provider_job_id", "status"])
    op.create_index("idx_trace_records_caller_created", "trace_records", ["caller_id", "created_at"])

    op.create_table(
        "bulk_jobs",
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
    op.create_index("idx_bulk_jobs_caller_created", "bulk_jobs", ["caller_id", "created_at"])
    op.create_index("idx_bulk_jobs_status", "bulk_jobs", ["status"])

    op.create_table(
        "wallet_accounts",
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

    op.create_table(
        "ledger_entries",
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
    op.create_index("idx_ledger_entries_caller_created", "ledger_entries", ["caller_id", "created_at"])


def downgrade() -> None:
    """Drop trace engine tables."""

    op.drop_index("idx_ledger_entries_caller_created", table_name="ledger_entries")
    op.drop_table("ledger_entries")

    op.drop_table("wallet_accounts")

    op.drop_index("idx_bulk_jobs_status", table_name="bulk_jobs")
    op.drop_index("idx_bulk_jobs_caller_created", table_name="bulk_jobs")
    op.drop_table("bulk_jobs")

    op.drop_index("idx_trace_records_caller_created", table_name="trace_records")
    op.drop_index("idx_trace_records_provider_job", table_name="trace_records")
    op.drop_table("trace_records")

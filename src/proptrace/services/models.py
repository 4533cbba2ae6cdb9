"""Pydantic models exchanged between the trace services and their callers."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from proptrace.normalization.address import CanonicalAddress


class TraceRequest(BaseModel):
    """One property address submitted for tracing."""

    address: str
    city: str
    state: str
    zip: str = ""
    owner_name: str | None = None
    mailing_address: str | None = None
    mailing_city: str | None = None
    mailing_state: str | None = None


@dataclass(frozen=True, slots=True)
class PreparedRecord:
    """A request paired with its canonical address."""

    request: TraceRequest
    canonical: CanonicalAddress

    @property
    def fingerprint(self) -> str:
        return self.canonical.fingerprint


class SingleTraceOutcome(BaseModel):
    """Result of a single submission: a cached answer or a processing handle."""

    trace_id: str
    status: str
    is_cached: bool = False
    result: Dict[str, Any] | None = None
    charge: Decimal = Decimal("0")


class TraceStatusView(BaseModel):
    """Caller-facing view of one trace record."""

    trace_id: str
    status: str
    result: Dict[str, Any] | None = None
    charge: Decimal = Decimal("0")
    is_cached: bool = False
    timed_out: bool = False


class BulkSubmission(BaseModel):
    """Counts reported back for a bulk upload."""

    job_id: str | None = None
    total_records: int
    invalid_records: int = 0
    internal_duplicates: int = 0
    cached_count: int = 0
    in_progress_count: int = 0
    dedupe_removed: int = 0
    records_submitted: int = 0
    estimated_cost: Decimal = Decimal("0")
    cached_results: List[Dict[str, Any]] = Field(default_factory=list)
    message: str | None = None


class BulkJobView(BaseModel):
    """Caller-facing view of a bulk job."""

    job_id: str
    status: str
    file_name: str | None = None
    total_records: int = 0
    dedupe_removed: int = 0
    records_submitted: int = 0
    records_matched: int = 0
    total_charge: Decimal = Decimal("0")
    error_message: str | None = None
    poll_attempts: int = 0
    stalled: bool = False


class WalletSummary(BaseModel):
    """Balance snapshot returned to callers."""

    caller_id: str
    tier: str
    balance: Decimal
    rate: Decimal
    low_balance_threshold: Decimal
    auto_rebill_enabled: bool
    needs_rebill: bool


__all__ = [
    "BulkJobView",
    "BulkSubmission",
    "PreparedRecord",
    "SingleTraceOutcome",
    "TraceRequest",
    "TraceStatusView",
    "WalletSummary",
]

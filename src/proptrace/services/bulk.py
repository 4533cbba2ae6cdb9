"""Bulk trace jobs: one provider batch, many trace records.

Submission deduplicates the upload twice (inside the batch, then against the
cache), gates on the caller's balance for the remaining records, and sends them
to the provider as a single batch. Polling matches each returned row to one
open record of the job, settles it, sweeps whatever the provider left
unanswered to ``no_match``, and only then closes the job.
"""

from __future__ import annotations

import csv
import io
import logging
import time
from collections import defaultdict, deque
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from proptrace.errors import JobNotReady, NotFoundError, SubmissionError, ValidationError
from proptrace.normalization.address import canonicalize_address, normalize_street, validate_address_input
from proptrace.observability import Observability, get_observability
from proptrace.providers.tracer import SubmissionRecord, TracerClient
from proptrace.services.billing import BillingService
from proptrace.services.dedupe import DeduplicationCache
from proptrace.services.factories import build_job_store, build_trace_store, build_tracer_client
from proptrace.services.models import BulkJobView, BulkSubmission, PreparedRecord, TraceRequest
from proptrace.services.trace_lifecycle import TraceSettlement
from proptrace.settings import Settings, get_settings
from proptrace.store.job_store import JOB_COMPLETED, JOB_FAILED, BulkJob, BulkJobStore
from proptrace.store.trace_store import PROCESSING, SUCCESS, NewTrace, TraceRecord, TraceStore

LOGGER = logging.getLogger(__name__)

EXPORT_COLUMNS = (
    "address",
    "city",
    "state",
    "zip",
    "owner_name",
    "status",
    "phone_1",
    "phone_2",
    "phone_3",
    "email_1",
    "email_2",
    "email_3",
    "mailing_address",
    "mailing_city",
    "mailing_state",
    "charge",
)

MatchKey = Tuple[str, str, str]


def _match_key(address: Any, city: Any, state: Any) -> MatchKey:
    return (
        normalize_street(str(address or "")),
        str(city or "").upper().strip(),
        str(state or "").upper().strip(),
    )


def _job_view(job: BulkJob, *, stalled: bool = False) -> BulkJobView:
    return BulkJobView(
        job_id=job.job_id,
        status=job.status,
        file_name=job.file_name,
        total_records=job.total_records,
        dedupe_removed=job.dedupe_removed,
        records_submitted=job.records_submitted,
        records_matched=job.records_matched,
        total_charge=job.total_charge,
        error_message=job.error_message,
        poll_attempts=job.poll_attempts,
        stalled=stalled,
    )


class BulkTraceService:
    """Submit, poll and export bulk trace jobs."""

    def __init__(
        self,
        *,
        trace_store: Optional[TraceStore] = None,
        job_store: Optional[BulkJobStore] = None,
        tracer: Optional[TracerClient] = None,
        billing: Optional[BillingService] = None,
        dedupe: Optional[DeduplicationCache] = None,
        settings: Optional[Settings] = None,
        observability: Optional[Observability] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self._traces = trace_store or build_trace_store()
        self._jobs = job_store or build_job_store()
        self._tracer = tracer or build_tracer_client()
        self._billing = billing or BillingService(settings=self.settings)
        self._dedupe = dedupe or DeduplicationCache(store=self._traces, settings=self.settings)
        self._observability = observability or get_observability(component="bulk", settings=self.settings)
        self._settlement = TraceSettlement(
            store=self._traces,
            billing=self._billing,
            settings=self.settings,
            observability=self._observability,
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit_bulk(
        self,
        caller_id: str,
        records: Sequence[TraceRequest],
        file_name: str | None = None,
    ) -> BulkSubmission:
        """Deduplicate ``records``, gate on balance and submit the remainder as one job."""

        max_records = self.settings.bulk.max_records
        if not records:
            raise ValidationError("records", "No records provided")
        if len(records) > max_records:
            raise ValidationError("records", f"Maximum {max_records} records per upload")

        prepared: List[PreparedRecord] = []
        invalid = 0
        for index, request in enumerate(records):
            try:
                validate_address_input(request.address, request.city, request.state, request.zip or "00000")
            except ValidationError as exc:
                LOGGER.info("Skipping invalid bulk row index=%s field=%s", index, exc.field)
                invalid += 1
                continue
            canonical = canonicalize_address(request.address, request.city, request.state, request.zip)
            prepared.append(PreparedRecord(request=request, canonical=canonical))

        unique, internal_duplicates = self._dedupe.remove_internal_duplicates(prepared)
        lookup = self._dedupe.lookup_batch(caller_id, unique)
        dedupe_removed = internal_duplicates + len(lookup.cached) + len(lookup.in_progress)
        cached_results = [
            {"trace_id": hit.trace_id, "address": hit.address, "result": hit.result_payload}
            for hit in lookup.cached_results.values()
        ]

        if not lookup.new:
            return BulkSubmission(
                job_id=None,
                total_records=len(records),
                invalid_records=invalid,
                internal_duplicates=internal_duplicates,
                cached_count=len(lookup.cached),
                in_progress_count=len(lookup.in_progress),
                dedupe_removed=dedupe_removed,
                records_submitted=0,
                cached_results=cached_results,
                message="All records are duplicates of previous or in-flight traces",
            )

        estimated_cost = self._billing.ensure_funds(caller_id, len(lookup.new))
        job = self._jobs.create(
            caller_id=caller_id,
            file_name=file_name,
            total_records=len(records),
            dedupe_removed=dedupe_removed,
            records_submitted=len(lookup.new),
        )

        submission = [
            SubmissionRecord(
                address=item.request.address.strip(),
                city=item.request.city.strip(),
                state=item.request.state.strip().upper(),
                zip=item.canonical.zip5,
                owner_name=item.request.owner_name,
                mail_address=item.request.mailing_address,
                mail_city=item.request.mailing_city,
                mail_state=item.request.mailing_state,
            )
            for item in lookup.new
        ]
        try:
            handle = self._tracer.submit(submission, file_name=file_name or "bulk-trace.csv")
        except SubmissionError as exc:
            self._jobs.mark_failed(job.job_id, str(exc))
            self._observability.emit_event("bulk.submit_failed", caller_id=caller_id, job_id=job.job_id, error=str(exc))
            raise
        self._jobs.set_provider_job(job.job_id, handle)

        self._traces.upsert_processing(
            caller_id,
            [
                NewTrace(
                    address_fingerprint=item.fingerprint,
                    canonical_address=item.canonical.canonical,
                    address=item.request.address.strip(),
                    city=item.request.city,
                    state=item.request.state,
                    zip=item.canonical.zip5,
                    input_owner_name=item.request.owner_name,
                    mailing_address=item.request.mailing_address,
                )
                for item in lookup.new
            ],
            provider_job_id=handle,
            batch_size=self.settings.bulk.insert_batch_size,
        )
        self._observability.emit_event(
            "bulk.submitted",
            caller_id=caller_id,
            job_id=job.job_id,
            provider_job_id=handle,
            records_submitted=len(lookup.new),
            dedupe_removed=dedupe_removed,
        )
        self._observability.increment("bulk.records_submitted", value=len(lookup.new))
        return BulkSubmission(
            job_id=job.job_id,
            total_records=len(records),
            invalid_records=invalid,
            internal_duplicates=internal_duplicates,
            cached_count=len(lookup.cached),
            in_progress_count=len(lookup.in_progress),
            dedupe_removed=dedupe_removed,
            records_submitted=len(lookup.new),
            estimated_cost=estimated_cost,
            cached_results=cached_results,
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    def _get_job(self, caller_id: str, job_id: str) -> BulkJob:
        job = self._jobs.get(job_id, caller_id=caller_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def get_job(self, caller_id: str, job_id: str) -> BulkJobView:
        return _job_view(self._get_job(caller_id, job_id))

    def poll_job(self, caller_id: str, job_id: str) -> BulkJobView:
        """Poll the provider once and reconcile the job if results are ready."""

        job = self._get_job(caller_id, job_id)
        if job.status in (JOB_COMPLETED, JOB_FAILED) or not job.provider_job_id:
            return _job_view(job)

        self._jobs.record_poll_attempt(job.job_id)
        poll = self._tracer.poll(job.provider_job_id)
        if not poll.is_ready:
            return _job_view(self._get_job(caller_id, job_id))

        open_records: Dict[MatchKey, Deque[TraceRecord]] = defaultdict(deque)
        for record in self._traces.list_for_job(job.provider_job_id, caller_id=caller_id, status=PROCESSING):
            open_records[(record.street_key, record.city.upper(), record.state.upper())].append(record)

        unmatched = 0
        for row in poll.rows:
            if not self._apply_row(row, open_records, job):
                unmatched += 1

        swept = self._traces.sweep_processing(
            job.provider_job_id,
            caller_id=caller_id,
            cost=self.settings.billing.cost_per_record,
        )

        settled = self._traces.list_for_job(job.provider_job_id, caller_id=caller_id)
        matched = [record for record in settled if record.status == SUCCESS]
        total_charge = sum((record.charge for record in matched), Decimal("0"))
        self._jobs.mark_completed(job.job_id, records_matched=len(matched), total_charge=total_charge)
        self._observability.emit_event(
            "bulk.completed",
            caller_id=caller_id,
            job_id=job.job_id,
            rows=len(poll.rows),
            records_matched=len(matched),
            unmatched_rows=unmatched,
            swept=swept,
            total_charge=total_charge,
        )
        return _job_view(self._get_job(caller_id, job_id))

    def _apply_row(
        self,
        row: Mapping[str, Any],
        open_records: Dict[MatchKey, Deque[TraceRecord]],
        job: BulkJob,
    ) -> bool:
        key = _match_key(row.get("address"), row.get("city"), row.get("state"))
        queue = open_records.get(key)
        if not queue:
            LOGGER.info(
                "Provider row matched no open record job_id=%s address=%s city=%s state=%s",
                job.job_id,
                row.get("address"),
                row.get("city"),
                row.get("state"),
            )
            return False
        record = queue.popleft()
        contact = self._tracer.parse_result(row)
        self._settlement.settle(record, contact, description="Bulk skip trace - successful match")
        return True

    def poll_until_complete(
        self,
        caller_id: str,
        job_id: str,
        *,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> BulkJobView:
        """Poll until the job completes; past the attempt budget the job is reported as stalled."""

        polling = self.settings.polling
        attempts = max_attempts if max_attempts is not None else polling.bulk_max_attempts
        delay = interval if interval is not None else polling.bulk_interval_seconds
        view = self.get_job(caller_id, job_id)
        for attempt in range(attempts):
            if view.status in (JOB_COMPLETED, JOB_FAILED):
                return view
            if attempt:
                self._sleep(delay)
            try:
                view = self.poll_job(caller_id, job_id)
            except SubmissionError as exc:
                LOGGER.warning("Bulk poll failed job_id=%s attempt=%s error=%s", job_id, attempt + 1, exc)
        if view.status in (JOB_COMPLETED, JOB_FAILED):
            return view
        LOGGER.warning("Bulk job stalled job_id=%s attempts=%s", job_id, attempts)
        self._observability.emit_event("bulk.stalled", caller_id=caller_id, job_id=job_id, attempts=attempts)
        return view.model_copy(update={"stalled": True})

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------
    def export_results(self, caller_id: str, job_id: str) -> str:
        """Render a completed job's records as CSV."""

        job = self._get_job(caller_id, job_id)
        if job.status != JOB_COMPLETED or not job.provider_job_id:
            raise JobNotReady(f"Job {job_id} is {job.status}")
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, lineterminator="\n")
        writer.writeheader()
        for record in self._traces.list_for_job(job.provider_job_id, caller_id=caller_id):
            result = record.result_payload or {}
            phones = [phone.get("number", "") for phone in result.get("phones") or []]
            emails = list(result.get("emails") or [])
            writer.writerow(
                {
                    "address": record.address,
                    "city": record.city,
                    "state": record.state,
                    "zip": record.zip or "",
                    "owner_name": result.get("owner_name") or record.input_owner_name or "",
                    "status": record.status,
                    "phone_1": phones[0] if len(phones) > 0 else "",
                    "phone_2": phones[1] if len(phones) > 1 else "",
                    "phone_3": phones[2] if len(phones) > 2 else "",
                    "email_1": emails[0] if len(emails) > 0 else "",
                    "email_2": emails[1] if len(emails) > 1 else "",
                    "email_3": emails[2] if len(emails) > 2 else "",
                    "mailing_address": result.get("mailing_address") or "",
                    "mailing_city": result.get("mailing_city") or "",
                    "mailing_state": result.get("mailing_state") or "",
                    "charge": f"{record.charge:.2f}",
                }
            )
        return buffer.getvalue()


__all__ = ["BulkTraceService", "EXPORT_COLUMNS"]

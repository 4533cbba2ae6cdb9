"""Trace record state machine and the single-address trace flow.

A trace record moves ``pending -> processing -> {success | no_match | error}``
and never leaves a terminal state. Terminal transitions are conditional
updates on ``status = 'processing'``; the writer whose update lands is the only
one that bills, so repeated or concurrent status checks charge at most once.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, Optional

from proptrace.errors import InvalidTransition, NotFoundError, SubmissionError
from proptrace.normalization.address import canonicalize_address, validate_address_input
from proptrace.observability import Observability, get_observability
from proptrace.providers.tracer import ContactResult, SubmissionRecord, TracerClient
from proptrace.services.billing import BillingService
from proptrace.services.dedupe import DeduplicationCache
from proptrace.services.factories import build_job_store, build_trace_store, build_tracer_client
from proptrace.services.models import SingleTraceOutcome, TraceRequest, TraceStatusView
from proptrace.services.notifications import WebhookNotifier
from proptrace.settings import Settings, get_settings
from proptrace.store.job_store import BulkJobStore
from proptrace.store.trace_store import (
    ERROR,
    NO_MATCH,
    PENDING,
    PROCESSING,
    SUCCESS,
    NewTrace,
    TraceRecord,
    TraceStore,
)

LOGGER = logging.getLogger(__name__)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({PROCESSING, ERROR}),
    PROCESSING: frozenset({SUCCESS, NO_MATCH, ERROR}),
    SUCCESS: frozenset(),
    NO_MATCH: frozenset(),
    ERROR: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def assert_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def status_view(record: TraceRecord) -> TraceStatusView:
    return TraceStatusView(
        trace_id=record.trace_id,
        status=record.status,
        result=record.result_payload if record.is_terminal else None,
        charge=record.charge,
    )


class TraceSettlement:
    """Apply a parsed provider row to a ``processing`` record and bill it."""

    def __init__(
        self,
        *,
        store: TraceStore,
        billing: BillingService,
        settings: Settings,
        observability: Observability,
    ) -> None:
        self._store = store
        self._billing = billing
        self._cost = settings.billing.cost_per_record
        self._observability = observability

    def settle(self, record: TraceRecord, contact: ContactResult, *, description: str) -> Optional[TraceRecord]:
        """Move ``record`` to success/no_match and debit on success.

        Returns the updated record, or ``None`` when another writer closed the
        record first (in which case nothing is billed).
        """

        target = SUCCESS if contact.has_contact else NO_MATCH
        assert_transition(record.status, target)
        landed = self._store.complete(
            record.trace_id,
            status=target,
            result_payload=contact.to_payload(),
            phone_count=len(contact.phones),
            email_count=len(contact.emails),
            cost=self._cost,
        )
        if not landed:
            LOGGER.info("Trace already settled by another writer trace_id=%s", record.trace_id)
            return None
        charge = Decimal("0")
        if target == SUCCESS:
            charge = self._billing.charge_success(record.caller_id, record.trace_id, description=description)
            if charge:
                self._store.set_charge(record.trace_id, charge)
        self._observability.emit_event(
            "trace.transition",
            trace_id=record.trace_id,
            caller_id=record.caller_id,
            status=target,
            phones=len(contact.phones),
            emails=len(contact.emails),
            charge=charge,
        )
        self._observability.increment("trace.completed", tags={"status": target})
        return self._store.get(record.trace_id)


class TraceService:
    """Submit single addresses, poll their status and manage the result cache."""

    def __init__(
        self,
        *,
        store: Optional[TraceStore] = None,
        job_store: Optional[BulkJobStore] = None,
        tracer: Optional[TracerClient] = None,
        billing: Optional[BillingService] = None,
        dedupe: Optional[DeduplicationCache] = None,
        notifier: Optional[WebhookNotifier] = None,
        settings: Optional[Settings] = None,
        observability: Optional[Observability] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store or build_trace_store()
        self._jobs = job_store or build_job_store()
        self._tracer = tracer or build_tracer_client()
        self._billing = billing or BillingService(settings=self.settings)
        self._dedupe = dedupe or DeduplicationCache(store=self._store, settings=self.settings)
        self._notifier = notifier or WebhookNotifier(settings=self.settings)
        self._observability = observability or get_observability(component="traces", settings=self.settings)
        self._settlement = TraceSettlement(
            store=self._store,
            billing=self._billing,
            settings=self.settings,
            observability=self._observability,
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit_single(self, caller_id: str, request: TraceRequest) -> SingleTraceOutcome:
        """Return a cached result or open a ``processing`` record and submit it."""

        validate_address_input(request.address, request.city, request.state, request.zip)
        canonical = canonicalize_address(request.address, request.city, request.state, request.zip)
        self._billing.ensure_funds(caller_id, 1)

        cached = self._dedupe.lookup_single(caller_id, canonical.fingerprint)
        if cached is not None:
            self._observability.emit_event("trace.cache_hit", caller_id=caller_id, trace_id=cached.trace_id)
            self._observability.increment("trace.cache_hit")
            return SingleTraceOutcome(
                trace_id=cached.trace_id,
                status=cached.status,
                is_cached=True,
                result=cached.result_payload,
                charge=Decimal("0"),
            )

        self._dedupe.prepare_resubmission(caller_id, canonical.fingerprint)
        record, created = self._store.create_processing(
            caller_id,
            NewTrace(
                address_fingerprint=canonical.fingerprint,
                canonical_address=canonical.canonical,
                address=request.address.strip(),
                city=request.city,
                state=request.state,
                zip=canonical.zip5,
                input_owner_name=request.owner_name,
                mailing_address=request.mailing_address,
            ),
        )
        if not created:
            return SingleTraceOutcome(
                trace_id=record.trace_id,
                status=record.status,
                result=record.result_payload if record.is_terminal else None,
            )

        try:
            handle = self._tracer.submit(
                [
                    SubmissionRecord(
                        address=request.address.strip(),
                        city=request.city.strip(),
                        state=request.state.strip().upper(),
                        zip=canonical.zip5,
                        owner_name=request.owner_name,
                        mail_address=request.mailing_address,
                        mail_city=request.mailing_city,
                        mail_state=request.mailing_state,
                    )
                ]
            )
        except SubmissionError as exc:
            self._store.complete(record.trace_id, status=ERROR, error_message=str(exc))
            self._observability.emit_event(
                "trace.submit_failed",
                caller_id=caller_id,
                trace_id=record.trace_id,
                error=str(exc),
            )
            self._observability.increment("trace.submit_failed")
            raise

        self._store.set_provider_job(record.trace_id, handle)
        self._observability.emit_event(
            "trace.submitted",
            caller_id=caller_id,
            trace_id=record.trace_id,
            provider_job_id=handle,
        )
        self._observability.increment("trace.submitted")
        return SingleTraceOutcome(trace_id=record.trace_id, status=PROCESSING)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def check_status(self, caller_id: str, trace_id: str) -> TraceStatusView:
        """Poll the provider once and settle the record if its result is ready."""

        record = self._store.get(trace_id, caller_id=caller_id)
        if record is None:
            raise NotFoundError(f"Trace {trace_id} not found")
        if record.is_terminal or not record.provider_job_id:
            return status_view(record)
        bulk_job = self._jobs.find_by_provider_job(record.provider_job_id)
        if bulk_job is not None:
            # Rows of a bulk batch are matched to records by the bulk poller.
            LOGGER.info("Trace belongs to bulk job trace_id=%s job_id=%s", trace_id, bulk_job.job_id)
            return status_view(record)

        poll = self._tracer.poll(record.provider_job_id)
        if not poll.is_ready:
            return status_view(record)
        row = self._tracer.select_row(poll.rows, record.address)
        if row is None:
            return status_view(record)
        contact = self._tracer.parse_result(row)
        settled = self._settlement.settle(record, contact, description="Skip trace - successful match")
        if settled is None:
            current = self._store.get(trace_id, caller_id=caller_id)
            return status_view(current or record)

        self._notifier.trace_completed(
            caller_id,
            trace_id=settled.trace_id,
            status=settled.status,
            address=settled.address,
            city=settled.city,
            state=settled.state,
            zip_code=settled.zip,
            result=settled.result_payload,
            charge=settled.charge,
        )
        return status_view(settled)

    def wait_for_result(
        self,
        caller_id: str,
        trace_id: str,
        *,
        max_attempts: int | None = None,
        initial_delay: float | None = None,
        interval: float | None = None,
    ) -> TraceStatusView:
        """Poll until the record settles or the attempt budget runs out.

        Running out of attempts is not a failure: the record stays
        ``processing`` and the returned view has ``timed_out=True``.
        """

        polling = self.settings.polling
        attempts = max_attempts if max_attempts is not None else polling.single_max_attempts
        first_delay = initial_delay if initial_delay is not None else polling.single_initial_delay_seconds
        delay = interval if interval is not None else polling.single_interval_seconds

        self._sleep(first_delay)
        for attempt in range(attempts):
            if attempt:
                self._sleep(delay)
            try:
                view = self.check_status(caller_id, trace_id)
            except SubmissionError as exc:
                LOGGER.warning("Status poll failed trace_id=%s attempt=%s error=%s", trace_id, attempt + 1, exc)
                continue
            if view.status != PROCESSING:
                return view
        LOGGER.info("Trace still processing after %s attempts trace_id=%s", attempts, trace_id)
        return TraceStatusView(trace_id=trace_id, status=PROCESSING, timed_out=True)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    def clear_cache(self, caller_id: str, address: str, city: str, state: str, zip_code: str) -> int:
        """Delete every record the caller holds for the address; returns the count removed."""

        validate_address_input(address, city, state, zip_code)
        canonical = canonicalize_address(address, city, state, zip_code)
        deleted = self._store.delete_for_fingerprint(caller_id, canonical.fingerprint)
        self._observability.emit_event(
            "trace.cache_cleared",
            caller_id=caller_id,
            fingerprint=canonical.fingerprint,
            deleted=deleted,
        )
        return deleted


__all__ = [
    "TRANSITIONS",
    "TraceService",
    "TraceSettlement",
    "assert_transition",
    "can_transition",
    "status_view",
]

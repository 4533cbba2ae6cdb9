"""Result cache keyed by address fingerprint.

A successful trace with at least one phone or email is reused for the
configured window instead of going back to the provider. Everything else that
occupies the caller's fingerprint slot (no_match, error, empty or expired
successes) is cleared before a new submission so the one-row-per-fingerprint
constraint always holds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from proptrace.services.factories import build_trace_store
from proptrace.services.models import PreparedRecord
from proptrace.settings import Settings, get_settings
from proptrace.store.trace_store import ACTIVE_STATUSES, SUCCESS, TraceRecord, TraceStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchLookup:
    """Partition of a batch into cache hits, in-flight traces and records that need tracing."""

    cached: List[PreparedRecord] = field(default_factory=list)
    in_progress: List[PreparedRecord] = field(default_factory=list)
    new: List[PreparedRecord] = field(default_factory=list)
    cached_results: Dict[str, TraceRecord] = field(default_factory=dict)


class DeduplicationCache:
    """Look up and maintain reusable trace results."""

    def __init__(
        self,
        *,
        store: Optional[TraceStore] = None,
        settings: Optional[Settings] = None,
        window_days: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        resolved = settings or get_settings()
        self._store = store or build_trace_store()
        self.window_days = window_days if window_days is not None else resolved.dedupe.window_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def window_start(self) -> datetime:
        return self._clock() - timedelta(days=self.window_days)

    def is_authoritative(self, record: TraceRecord) -> bool:
        """True when ``record`` may be served as a cached answer."""

        if record.status != SUCCESS or not record.has_contact_data:
            return False
        return record.created_at is not None and record.created_at >= self.window_start()

    def lookup_single(self, caller_id: str, fingerprint: str) -> Optional[TraceRecord]:
        """Return a reusable result for ``fingerprint`` or ``None``."""

        found = self._store.find_successful(caller_id, [fingerprint], since=self.window_start())
        record = found.get(fingerprint)
        if record is None:
            return None
        if not record.has_contact_data:
            LOGGER.info("Removing empty cached result trace_id=%s caller_id=%s", record.trace_id, caller_id)
            self._store.delete(record.trace_id)
            return None
        return record

    def lookup_batch(self, caller_id: str, records: Sequence[PreparedRecord]) -> BatchLookup:
        """Split ``records`` into cache hits, in-flight traces and records that still need tracing.

        A fingerprint whose record is still ``pending``/``processing`` belongs
        to an earlier submission; it is neither resubmitted nor billed again.
        """

        fingerprints = [record.fingerprint for record in records]
        found = self._store.find_successful(caller_id, fingerprints, since=self.window_start())
        lookup = BatchLookup()
        for fingerprint, record in list(found.items()):
            if not record.has_contact_data:
                LOGGER.info("Removing empty cached result trace_id=%s caller_id=%s", record.trace_id, caller_id)
                self._store.delete(record.trace_id)
                del found[fingerprint]
        active = self._store.find_active(caller_id, fingerprints)
        for record in records:
            hit = found.get(record.fingerprint)
            if hit is not None:
                lookup.cached.append(record)
                lookup.cached_results[record.fingerprint] = hit
            elif record.fingerprint in active:
                lookup.in_progress.append(record)
            else:
                lookup.new.append(record)
        return lookup

    @staticmethod
    def remove_internal_duplicates(records: Sequence[PreparedRecord]) -> tuple[List[PreparedRecord], int]:
        """Collapse records sharing a fingerprint; the first occurrence wins."""

        seen: set[str] = set()
        unique: List[PreparedRecord] = []
        for record in records:
            if record.fingerprint in seen:
                continue
            seen.add(record.fingerprint)
            unique.append(record)
        return unique, len(records) - len(unique)

    def prepare_resubmission(self, caller_id: str, fingerprint: str) -> int:
        """Delete a non-authoritative terminal record occupying the fingerprint slot.

        Active records and valid cached successes are left untouched.
        """

        existing = self._store.find_by_fingerprint(caller_id, fingerprint)
        if existing is None or existing.status in ACTIVE_STATUSES or self.is_authoritative(existing):
            return 0
        LOGGER.info(
            "Clearing previous trace before resubmission trace_id=%s status=%s caller_id=%s",
            existing.trace_id,
            existing.status,
            caller_id,
        )
        self._store.delete(existing.trace_id)
        return 1


__all__ = ["BatchLookup", "DeduplicationCache"]

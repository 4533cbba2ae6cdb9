"""HTTP client for the batch skip-trace provider.

The provider only accepts CSV uploads, works asynchronously, and reports
results per queue. This module hides its quirks from the rest of the engine:

* single lookups are padded up to the provider's minimum batch size with
  synthetic rows, and those rows are filtered back out of every poll,
* an empty result set, or one holding only padding rows, means "still pending",
* raw rows are flattened into :class:`ContactResult` so numbered phone/email
  slots and placeholder values never reach the services.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Sequence

import httpx

from proptrace.errors import ProviderFormatError, RateLimited, SubmissionError
from proptrace.normalization.address import normalize_street
from proptrace.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

CSV_COLUMNS = (
    "address",
    "city",
    "state",
    "first_name",
    "last_name",
    "mail_address",
    "mail_city",
    "mail_state",
)
PHONE_SLOTS = (
    ("primary_phone", None),
    ("mobile_1", "mobile"),
    ("mobile_2", "mobile"),
    ("mobile_3", "mobile"),
    ("mobile_4", "mobile"),
    ("mobile_5", "mobile"),
    ("landline_1", "landline"),
    ("landline_2", "landline"),
    ("landline_3", "landline"),
)
EMAIL_SLOTS = tuple(f"email_{index}" for index in range(1, 6))
PHONE_TYPES = {"mobile", "landline", "voip", "unknown"}
PENDING_STATES = {"pending", "processing", "queued", "in_progress", "running"}
PLACEHOLDER_VALUES = {"", "n/a", "na", "none", "null", "nan", "-"}
MATCH_CONFIDENCE = 80


@dataclass(slots=True)
class SubmissionRecord:
    """One address as uploaded to the provider."""

    address: str
    city: str
    state: str
    zip: str | None = None
    owner_name: str | None = None
    mail_address: str | None = None
    mail_city: str | None = None
    mail_state: str | None = None


@dataclass(slots=True)
class ContactResult:
    """Contact data extracted from one provider row."""

    owner_name: str | None = None
    owner_name_2: str | None = None
    phones: List[Dict[str, str]] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    mailing_address: str | None = None
    mailing_city: str | None = None
    mailing_state: str | None = None
    mailing_zip: str | None = None
    match_confidence: int = 0

    @property
    def has_contact(self) -> bool:
        return bool(self.phones or self.emails)

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PollResult:
    """Outcome of one poll: ``pending`` or ``ready`` with the non-padding rows."""

    state: str
    rows: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        return self.state == "ready"


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in PLACEHOLDER_VALUES:
        return None
    return text


def _split_owner(owner_name: str | None) -> tuple[str, str]:
    parts = (owner_name or "").strip().split(" ", 1)
    first = parts[0] if parts else ""
    last = parts[1].strip() if len(parts) > 1 else ""
    return first, last


class TracerClient:
    """Thin wrapper around the provider's upload, queue and analytics endpoints."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
        api_key: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        provider = self.settings.provider
        self._api_key = api_key if api_key is not None else provider.api_key
        self._client = client or httpx.Client(base_url=provider.base_url, timeout=provider.timeout_seconds)
        self.min_batch_size = provider.min_batch_size
        self.max_phones = provider.max_phones
        self.max_emails = provider.max_emails
        self.padding_address = provider.padding_address

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "TracerClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise SubmissionError("Tracer API key not configured")
        return {"Authorization": f"Bearer {self._api_key}"}

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            LOGGER.warning("Provider request failed method=%s path=%s error=%s", method, path, exc)
            raise SubmissionError("Trace provider unavailable") from exc
        if response.status_code == 429:
            raise RateLimited(
                "Rate limit exceeded. Please wait a moment before trying again.",
                status_code=429,
            )
        if response.is_error:
            LOGGER.warning(
                "Provider rejected request method=%s path=%s status=%s body=%s",
                method,
                path,
                response.status_code,
                response.text[:500],
            )
            raise SubmissionError(
                f"Trace provider returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderFormatError("Provider response is not valid JSON") from exc

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def build_csv(self, records: Sequence[SubmissionRecord]) -> str:
        """Render the upload CSV, padding short batches with synthetic rows."""

        rows: List[Dict[str, str]] = []
        for record in records:
            first, last = _split_owner(record.owner_name)
            rows.append(
                {
                    "address": record.address,
                    "city": record.city,
                    "state": record.state,
                    "first_name": first,
                    "last_name": last,
                    "mail_address": record.mail_address or record.address,
                    "mail_city": record.mail_city or record.city,
                    "mail_state": record.mail_state or record.state,
                }
            )
        if records:
            template = records[0]
            while len(rows) < self.min_batch_size:
                rows.append(
                    {
                        "address": self.padding_address,
                        "city": template.city,
                        "state": template.state,
                        "first_name": "",
                        "last_name": "",
                        "mail_address": self.padding_address,
                        "mail_city": template.city,
                        "mail_state": template.state,
                    }
                )
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue()

    def submit(self, records: Sequence[SubmissionRecord], *, file_name: str = "trace.csv") -> str:
        """Upload ``records`` as one provider batch and return the provider job handle."""

        if not records:
            raise SubmissionError("Cannot submit an empty batch")
        payload = self.build_csv(records)
        form = {f"{column}_column": column for column in CSV_COLUMNS}
        response = self._request(
            "POST",
            "trace/",
            files={"csv_file": (file_name, payload.encode("utf-8"), "text/csv")},
            data=form,
        )
        try:
            body = self._json(response)
        except ProviderFormatError as exc:
            raise SubmissionError(str(exc), status_code=response.status_code) from exc
        handle = None
        if isinstance(body, Mapping):
            handle = body.get("queue_id") or body.get("job_id")
        if handle in (None, ""):
            raise SubmissionError("Provider response did not include a job handle", status_code=response.status_code)
        LOGGER.info("Submitted %s records to provider handle=%s", len(records), handle)
        return str(handle)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll(self, provider_job_id: str) -> PollResult:
        """Fetch the current result set for ``provider_job_id``."""

        response = self._request("GET", f"queue/{provider_job_id}")
        try:
            rows = self._extract_rows(self._json(response))
        except ProviderFormatError as exc:
            LOGGER.warning("Unexpected poll response handle=%s error=%s", provider_job_id, exc)
            return PollResult(state="pending")
        if rows is None:
            return PollResult(state="pending")
        real_rows = [row for row in rows if not self.is_padding(row)]
        if not real_rows:
            return PollResult(state="pending")
        return PollResult(state="ready", rows=real_rows)

    def _extract_rows(self, body: Any) -> List[Dict[str, Any]] | None:
        if isinstance(body, list):
            rows: Any = body
        elif isinstance(body, Mapping):
            if body.get("pending") is True:
                return None
            rows = body.get("results")
            if rows is None:
                rows = body.get("data")
            if rows is None:
                status = str(body.get("status") or "").lower()
                if status in PENDING_STATES:
                    return None
                raise ProviderFormatError("Poll response has neither results nor a pending status")
        else:
            raise ProviderFormatError(f"Poll response has unexpected type {type(body).__name__}")
        if not isinstance(rows, list) or not all(isinstance(row, Mapping) for row in rows):
            raise ProviderFormatError("Poll results are not a list of objects")
        return [dict(row) for row in rows]

    def is_padding(self, row: Mapping[str, Any]) -> bool:
        return str(row.get("address") or "").strip() == self.padding_address

    # ------------------------------------------------------------------
    # Result parsing
    # ------------------------------------------------------------------

    def parse_result(self, raw_row: Mapping[str, Any]) -> ContactResult:
        """Flatten one provider row into a :class:`ContactResult`."""

        phones: List[Dict[str, str]] = []
        seen_digits: set[str] = set()

        def add_phone(number: Any, phone_type: Any) -> None:
            cleaned = _clean(number)
            if not cleaned:
                return
            digits = re.sub(r"\D", "", cleaned)
            if not digits or digits in seen_digits:
                return
            seen_digits.add(digits)
            kind = (_clean(phone_type) or "unknown").lower()
            phones.append({"number": cleaned, "type": kind if kind in PHONE_TYPES else "unknown"})

        for slot, slot_type in PHONE_SLOTS:
            add_phone(raw_row.get(slot), slot_type or raw_row.get(f"{slot}_type"))
        for entry in raw_row.get("phones") or []:
            if isinstance(entry, Mapping):
                add_phone(entry.get("number"), entry.get("type"))
            else:
                add_phone(entry, None)

        emails: List[str] = []
        seen_emails: set[str] = set()
        for candidate in [raw_row.get(slot) for slot in EMAIL_SLOTS] + list(raw_row.get("emails") or []):
            cleaned = _clean(candidate)
            if not cleaned or "@" not in cleaned or cleaned.lower() in seen_emails:
                continue
            seen_emails.add(cleaned.lower())
            emails.append(cleaned)

        phones = phones[: self.max_phones]
        emails = emails[: self.max_emails]

        first = _clean(raw_row.get("first_name"))
        last = _clean(raw_row.get("last_name"))
        owner_name = " ".join(part for part in (first, last) if part) or _clean(raw_row.get("owner_name"))

        return ContactResult(
            owner_name=owner_name,
            owner_name_2=_clean(raw_row.get("owner_name_2")),
            phones=phones,
            emails=emails,
            mailing_address=_clean(raw_row.get("mail_address")) or _clean(raw_row.get("mailing_address")),
            mailing_city=_clean(raw_row.get("mail_city")),
            mailing_state=_clean(raw_row.get("mail_state")),
            mailing_zip=_clean(raw_row.get("mail_zip")),
            match_confidence=MATCH_CONFIDENCE if (phones or emails) else 0,
        )

    def select_row(self, rows: Iterable[Mapping[str, Any]], address: str | None = None) -> Dict[str, Any] | None:
        """Pick the row that best answers a single-address lookup.

        Preference order: the first row carrying any contact data, then the
        first row whose street matches ``address``, then the first row.
        """

        candidates = [dict(row) for row in rows if not self.is_padding(row)]
        if not candidates:
            return None
        for row in candidates:
            if self.parse_result(row).has_contact:
                return row
        if address:
            target = normalize_street(address)
            for row in candidates:
                if normalize_street(str(row.get("address") or "")) == target:
                    return row
        return candidates[0]

    # ------------------------------------------------------------------
    # Account helpers
    # ------------------------------------------------------------------

    def list_jobs(self) -> List[Dict[str, Any]]:
        """Return the provider's queue listing for this account."""

        body = self._json(self._request("GET", "queues/"))
        if isinstance(body, Mapping):
            body = body.get("results") or body.get("queues") or []
        if not isinstance(body, list):
            raise ProviderFormatError("Queue listing is not a list")
        return [dict(item) for item in body if isinstance(item, Mapping)]

    def get_analytics(self) -> Dict[str, Any]:
        """Return account usage and remaining credits as reported by the provider."""

        body = self._json(self._request("GET", "analytics/"))
        if not isinstance(body, Mapping):
            raise ProviderFormatError("Analytics response is not an object")
        return dict(body)


__all__ = [
    "CSV_COLUMNS",
    "ContactResult",
    "PollResult",
    "SubmissionRecord",
    "TracerClient",
]

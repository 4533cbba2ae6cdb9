"""Job entrypoint that polls one bulk trace job until it completes."""

from __future__ import annotations

import logging
import os
import sys

from proptrace.errors import TraceEngineError
from proptrace.services.bulk import BulkTraceService

LOGGER = logging.getLogger("proptrace.worker.jobs.bulk_poll")

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_STALLED = 2


def _configure_logging() -> None:
    level_name = os.getenv("PROPTRACE_RUNTIME__LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def _env_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _build_service() -> BulkTraceService:
    return BulkTraceService()


def main() -> int:
    """Entry point executed by the job container.

    Exit codes: 0 when the job completed, 1 on configuration errors or a failed
    job, 2 when polling gave up while the job was still processing.
    """

    _configure_logging()

    job_id = os.getenv("PROPTRACE_BULK__JOB_ID")
    caller_id = os.getenv("PROPTRACE_BULK__CALLER_ID")
    if not job_id or not caller_id:
        LOGGER.error("PROPTRACE_BULK__JOB_ID and PROPTRACE_BULK__CALLER_ID must be set")
        return EXIT_FAILED

    try:
        max_attempts = _env_int("PROPTRACE_BULK__MAX_ATTEMPTS")
    except ValueError as exc:
        LOGGER.error("Invalid bulk poll configuration: %s", exc)
        return EXIT_FAILED

    service = _build_service()
    LOGGER.info("Polling bulk job job_id=%s caller_id=%s", job_id, caller_id)
    try:
        view = service.poll_until_complete(caller_id, job_id, max_attempts=max_attempts)
    except TraceEngineError:
        LOGGER.exception("Bulk poll failed job_id=%s", job_id)
        return EXIT_FAILED

    if view.status == "completed":
        LOGGER.info(
            "Bulk job completed job_id=%s submitted=%s matched=%s charge=%s",
            view.job_id,
            view.records_submitted,
            view.records_matched,
            view.total_charge,
        )
        return EXIT_COMPLETED
    if view.status == "failed":
        LOGGER.error("Bulk job failed job_id=%s error=%s", view.job_id, view.error_message)
        return EXIT_FAILED
    LOGGER.warning("Bulk job stalled job_id=%s attempts=%s", view.job_id, view.poll_attempts)
    return EXIT_STALLED


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

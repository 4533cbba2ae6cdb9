"""Unit tests for the bulk poll job entrypoint."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

from proptrace.errors import SubmissionError
from proptrace.services.models import BulkJobView
from proptrace.worker.jobs import bulk_poll as bulk_job


def _view(status: str, *, stalled: bool = False) -> BulkJobView:
    return BulkJobView(
        job_id="job-1",
        status=status,
        records_submitted=3,
        records_matched=1,
        total_charge=Decimal("0.11"),
        poll_attempts=4,
        stalled=stalled,
    )


def _set_job_env(monkeypatch, *, max_attempts: str | None = None) -> None:
    monkeypatch.setenv("PROPTRACE_BULK__JOB_ID", "job-1")
    monkeypatch.setenv("PROPTRACE_BULK__CALLER_ID", "caller-1")
    if max_attempts is None:
        monkeypatch.delenv("PROPTRACE_BULK__MAX_ATTEMPTS", raising=False)
    else:
        monkeypatch.setenv("PROPTRACE_BULK__MAX_ATTEMPTS", max_attempts)


def test_main_requires_job_and_caller(monkeypatch):
    monkeypatch.delenv("PROPTRACE_BULK__JOB_ID", raising=False)
    monkeypatch.delenv("PROPTRACE_BULK__CALLER_ID", raising=False)
    builder = MagicMock()
    monkeypatch.setattr(bulk_job, "_build_service", builder)

    assert bulk_job.main() == bulk_job.EXIT_FAILED
    builder.assert_not_called()


def test_main_returns_zero_when_completed(monkeypatch):
    _set_job_env(monkeypatch, max_attempts="5")
    service = MagicMock()
    service.poll_until_complete.return_value = _view("completed")
    monkeypatch.setattr(bulk_job, "_build_service", lambda: service)

    assert bulk_job.main() == bulk_job.EXIT_COMPLETED
    service.poll_until_complete.assert_called_once_with("caller-1", "job-1", max_attempts=5)


def test_main_reports_stall(monkeypatch):
    _set_job_env(monkeypatch)
    service = MagicMock()
    service.poll_until_complete.return_value = _view("processing", stalled=True)
    monkeypatch.setattr(bulk_job, "_build_service", lambda: service)

    assert bulk_job.main() == bulk_job.EXIT_STALLED
    service.poll_until_complete.assert_called_once_with("caller-1", "job-1", max_attempts=None)


def test_main_fails_on_failed_job_or_engine_error(monkeypatch):
    _set_job_env(monkeypatch)
    service = MagicMock()
    service.poll_until_complete.return_value = _view("failed")
    monkeypatch.setattr(bulk_job, "_build_service", lambda: service)
    assert bulk_job.main() == bulk_job.EXIT_FAILED

    service.poll_until_complete.side_effect = SubmissionError("Trace provider unavailable")
    assert bulk_job.main() == bulk_job.EXIT_FAILED


def test_main_rejects_non_integer_attempts(monkeypatch):
    _set_job_env(monkeypatch, max_attempts="many")
    builder = MagicMock()
    monkeypatch.setattr(bulk_job, "_build_service", builder)

    assert bulk_job.main() == bulk_job.EXIT_FAILED
    builder.assert_not_called()

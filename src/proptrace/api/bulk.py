"""FastAPI router for bulk trace jobs."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from pydantic import BaseModel, Field

from proptrace.api.auth import require_token
from proptrace.api.errors import to_http_exception
from proptrace.errors import TraceEngineError
from proptrace.services.bulk import BulkTraceService
from proptrace.services.models import BulkJobView, BulkSubmission, TraceRequest

router = APIRouter(prefix="/bulk", tags=["bulk"])


class BulkUpload(BaseModel):
    records: List[TraceRequest] = Field(default_factory=list)
    file_name: Optional[str] = None


def get_service() -> BulkTraceService:
    return BulkTraceService()


@router.post("/", summary="Submit a bulk trace job", response_model=BulkSubmission)
def submit_bulk(
    payload: BulkUpload,
    user=Depends(require_token),
    service: BulkTraceService = Depends(get_service),
):
    try:
        return service.submit_bulk(user["caller_id"], payload.records, file_name=payload.file_name)
    except TraceEngineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{job_id}", summary="Poll a bulk job", response_model=BulkJobView)
def get_bulk_job(job_id: str, user=Depends(require_token), service: BulkTraceService = Depends(get_service)):
    try:
        return service.poll_job(user["caller_id"], job_id)
    except TraceEngineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{job_id}/download", summary="Download bulk results as CSV")
def download_bulk_job(job_id: str, user=Depends(require_token), service: BulkTraceService = Depends(get_service)):
    try:
        content = service.export_results(user["caller_id"], job_id)
    except TraceEngineError as exc:
        raise to_http_exception(exc) from exc
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="trace-results-{job_id}.csv"'},
    )

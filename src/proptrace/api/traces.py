"""FastAPI router for single-address traces."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from proptrace.api.auth import require_admin, require_token
from proptrace.api.errors import to_http_exception
from proptrace.errors import TraceEngineError
from proptrace.services.models import SingleTraceOutcome, TraceRequest, TraceStatusView
from proptrace.services.trace_lifecycle import TraceService

router = APIRouter(prefix="/traces", tags=["traces"])


class CacheClearRequest(BaseModel):
    address: str
    city: str
    state: str
    zip: str
    caller_id: str | None = None


def get_service() -> TraceService:
    return TraceService()


@router.post("/", summary="Submit a single address", response_model=SingleTraceOutcome)
def submit_trace(
    payload: TraceRequest,
    user=Depends(require_token),
    service: TraceService = Depends(get_service),
):
    try:
        return service.submit_single(user["caller_id"], payload)
    except TraceEngineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{trace_id}", summary="Check trace status", response_model=TraceStatusView)
def get_trace(
    trace_id: str,
    wait: bool = Query(False, description="Poll until settled or the attempt budget runs out"),
    user=Depends(require_token),
    service: TraceService = Depends(get_service),
):
    try:
        if wait:
            return service.wait_for_result(user["caller_id"], trace_id)
        return service.check_status(user["caller_id"], trace_id)
    except TraceEngineError as exc:
        raise to_http_exception(exc) from exc


@router.post("/cache/clear", summary="Delete cached results for an address")
def clear_cache(
    payload: CacheClearRequest,
    user=Depends(require_admin),
    service: TraceService = Depends(get_service),
):
    caller_id = payload.caller_id or user["caller_id"]
    try:
        deleted = service.clear_cache(caller_id, payload.address, payload.city, payload.state, payload.zip)
    except TraceEngineError as exc:
        raise to_http_exception(exc) from exc
    return {"caller_id": caller_id, "deleted": deleted}

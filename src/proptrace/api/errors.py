"""Translate engine errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from proptrace.errors import (
    InsufficientFunds,
    JobNotReady,
    NotFoundError,
    RateLimited,
    SubmissionError,
    TraceEngineError,
    ValidationError,
)


def to_http_exception(exc: TraceEngineError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "validation_error", "field": exc.field, "message": exc.message},
        )
    if isinstance(exc, InsufficientFunds):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "insufficient_funds",
                "message": str(exc),
                "required": str(exc.required),
                "available": str(exc.available),
            },
        )
    if isinstance(exc, RateLimited):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "rate_limited", "message": str(exc)},
        )
    if isinstance(exc, SubmissionError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "submission_failed", "message": str(exc)},
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, JobNotReady):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


__all__ = ["to_http_exception"]

"""Exception taxonomy shared by the trace engine, its stores and the API layer."""

from __future__ import annotations

from decimal import Decimal


class TraceEngineError(Exception):
    """Base class for errors raised by the trace engine."""


class ValidationError(TraceEngineError):
    """Caller input failed validation; ``field`` names the offending input."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class SubmissionError(TraceEngineError):
    """The provider rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimited(SubmissionError):
    """The provider throttled the request (HTTP 429); callers should back off."""


class ProviderFormatError(TraceEngineError):
    """The provider answered with a payload shape we do not understand."""


class InsufficientFunds(TraceEngineError):
    """Wallet balance does not cover the amount required for a submission."""

    def __init__(self, required: Decimal, available: Decimal) -> None:
        super().__init__(f"Insufficient wallet balance: need {required:.2f}, have {available:.2f}")
        self.required = required
        self.available = available


class InvalidTransition(TraceEngineError):
    """A trace record was asked to move to a state its current state does not allow."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move trace from {current!r} to {target!r}")
        self.current = current
        self.target = target


class NotFoundError(TraceEngineError):
    """Requested trace, job or account does not exist for the caller."""


class JobNotReady(TraceEngineError):
    """A bulk job was asked for output before it completed."""


__all__ = [
    "InsufficientFunds",
    "InvalidTransition",
    "JobNotReady",
    "NotFoundError",
    "ProviderFormatError",
    "RateLimited",
    "SubmissionError",
    "TraceEngineError",
    "ValidationError",
]

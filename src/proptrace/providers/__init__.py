"""Adapters for external skip-trace providers."""

from proptrace.providers.tracer import ContactResult, PollResult, SubmissionRecord, TracerClient

__all__ = ["ContactResult", "PollResult", "SubmissionRecord", "TracerClient"]

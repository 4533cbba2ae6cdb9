"""Structured events and StatsD counters for trace and billing activity.

Every state change the engine cares about (submissions, trace transitions,
debits, bulk job progress) is logged as one event line, JSON when structured
logging is on. Money values are written as strings so ledger amounts keep
their precision. Contact details stay out of the log stream: list or mapping
values under ``CONTACT_FIELDS`` are reduced to their size.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from proptrace.settings import Settings, get_settings

_LOGGER = logging.getLogger("proptrace.observability")
_COUNTER_LOCK = threading.Lock()
_SHARED_COUNTER: "StatsdCounter | None" = None

CONTACT_FIELDS = frozenset({"phones", "emails", "result", "result_payload"})


class Observability:
    """Event logger and counter bound to one engine component (traces, bulk, billing...)."""

    def __init__(
        self,
        *,
        settings: Settings,
        component: str | None = None,
        counter: "StatsdCounter | None" = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.component = component or "core"
        self._logger = logger or _LOGGER
        self._structured_logging = bool(settings.observability.structured_logging)
        self._counter = counter

    def emit_event(self, event: str, **fields: Any) -> None:
        payload = {
            "event": event,
            "component": self.component,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **_redact_contacts(fields),
        }
        if self._structured_logging:
            self._logger.info(json.dumps(payload, default=_serialize))
        else:
            self._logger.info("%s | %s", event, payload)

    def increment(self, metric: str, *, value: float = 1.0, tags: Mapping[str, Any] | None = None) -> None:
        """Bump a counter; the component is always sent as a tag."""

        if self._counter is None:
            return
        merged = {"component": self.component, **(tags or {})}
        self._counter.increment(metric, value=value, tags=merged)


@dataclass(slots=True)
class StatsdCounter:
    """Fire-and-forget StatsD counter over UDP."""

    host: str
    port: int
    prefix: str = ""
    _socket: socket.socket = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def packet(self, metric: str, *, value: float, tags: Mapping[str, Any] | None = None) -> bytes:
        name = f"{self.prefix}.{metric}" if self.prefix else metric
        line = f"{name}:{_format_number(value)}|c"
        tag_block = ",".join(f"{key}:{val}" for key, val in sorted((tags or {}).items()) if val is not None)
        if tag_block:
            line = f"{line}|#{tag_block}"
        return line.encode("utf-8")

    def increment(self, metric: str, *, value: float = 1.0, tags: Mapping[str, Any] | None = None) -> None:
        try:
            self._socket.sendto(self.packet(metric, value=value, tags=tags), (self.host, self.port))
        except OSError:
            _LOGGER.debug("StatsD send failed for metric %s", metric, exc_info=True)


def get_observability(*, component: str | None = None, settings: Settings | None = None) -> Observability:
    resolved = settings or get_settings()
    return Observability(settings=resolved, component=component, counter=_shared_counter(resolved), logger=_LOGGER)


def reset_observability_cache() -> None:
    """Forget the shared StatsD counter (tests and settings reloads)."""

    global _SHARED_COUNTER
    with _COUNTER_LOCK:
        _SHARED_COUNTER = None


def _shared_counter(settings: Settings) -> StatsdCounter | None:
    global _SHARED_COUNTER
    with _COUNTER_LOCK:
        if _SHARED_COUNTER is None and settings.observability.statsd_host:
            _SHARED_COUNTER = StatsdCounter(
                host=settings.observability.statsd_host,
                port=settings.observability.statsd_port,
                prefix=settings.observability.statsd_prefix,
            )
        return _SHARED_COUNTER


def _serialize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _serialize(val) for key, val in value.items()}
    return str(value)


def _redact_contacts(fields: Mapping[str, Any]) -> dict[str, Any]:
    redacted: dict[str, Any] = {}
    for key, value in fields.items():
        if key in CONTACT_FIELDS and isinstance(value, (list, tuple, Mapping)):
            redacted[key] = len(value)
        else:
            redacted[key] = value
    return redacted


def _format_number(value: float) -> str:
    return f"{value:.6f}".rstrip("0").rstrip(".") or "0"


__all__ = ["CONTACT_FIELDS", "Observability", "StatsdCounter", "get_observability", "reset_observability_cache"]

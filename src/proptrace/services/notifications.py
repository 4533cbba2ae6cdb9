"""Outbound ``trace.completed`` webhooks."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from proptrace.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


class WebhookNotifier:
    """Deliver completion events to the caller's configured webhook URL.

    Delivery is fire-and-forget: it runs on a daemon thread by default and any
    failure is logged and dropped.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        webhook_urls: Mapping[str, str] | None = None,
        client: httpx.Client | None = None,
        background: bool = True,
    ) -> None:
        resolved = settings or get_settings()
        self._urls = dict(webhook_urls if webhook_urls is not None else resolved.notifications.webhook_urls)
        self._timeout = resolved.notifications.timeout_seconds
        self._client = client
        self._background = background

    def url_for(self, caller_id: str) -> str | None:
        return self._urls.get(caller_id)

    def trace_completed(
        self,
        caller_id: str,
        *,
        trace_id: str,
        status: str,
        address: str,
        city: str,
        state: str,
        zip_code: str | None,
        result: Dict[str, Any] | None,
        charge: Decimal,
    ) -> bool:
        """Queue a ``trace.completed`` event; returns ``False`` when no URL is configured."""

        url = self.url_for(caller_id)
        if not url:
            return False
        payload = {
            "event": "trace.completed",
            "trace_id": trace_id,
            "status": status,
            "address": address,
            "city": city,
            "state": state,
            "zip": zip_code,
            "result": result,
            "charge": float(charge),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._background:
            threading.Thread(target=self._deliver, args=(url, payload), daemon=True).start()
        else:
            self._deliver(url, payload)
        return True

    def _deliver(self, url: str, payload: Dict[str, Any]) -> None:
        try:
            if self._client is not None:
                response = self._client.post(url, json=payload, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("Webhook delivery failed url=%s trace_id=%s error=%s", url, payload.get("trace_id"), exc)
        except Exception:
            LOGGER.exception("Webhook delivery crashed url=%s trace_id=%s", url, payload.get("trace_id"))


__all__ = ["WebhookNotifier"]

"""Outbound workflow events.

Dispatchers are fire-and-forget: ``dispatch`` returns immediately and delivery
failures are logged, never raised into the workflow that emitted the event.
Events are only dispatched after the state change they describe is committed.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

import httpx

from esgflow.config import Settings

log = logging.getLogger(__name__)

EVENT_TYPES = (
    "initiative.created",
    "datarequest.fanned_out",
    "contribution.submitted",
    "contribution.verified",
    "report.ready",
    "report.blocked",
)


class Dispatcher(Protocol):
    def dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        ...


class LogDispatcher:
    """Writes each event to the log; the default when no webhook is configured."""

    def dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        log.info("event %s %s", event_type, json.dumps(payload, default=str, sort_keys=True))


def build_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookDispatcher:
    """POSTs events as signed JSON from a background worker thread."""

    def __init__(
        self,
        url: str,
        secret: str | None = None,
        timeout: float = 2.0,
        client: httpx.Client | None = None,
        max_workers: int = 2,
    ):
        self.url = url
        self.secret = secret
        self._client = client or httpx.Client(timeout=timeout)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="esgflow-webhook")

    def dispatch(self, event_type: str, payload: dict[str, Any]) -> Future:
        future = self._executor.submit(self._deliver, event_type, payload)
        future.add_done_callback(self._log_failure)
        return future

    def _deliver(self, event_type: str, payload: dict[str, Any]) -> int:
        body = json.dumps({"type": event_type, "data": payload}, default=str, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-ESGFlow-Event": event_type}
        if self.secret:
            headers["X-ESGFlow-Signature"] = build_signature(self.secret, body)
        response = self._client.post(self.url, content=body, headers=headers)
        response.raise_for_status()
        return response.status_code

    @staticmethod
    def _log_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            log.warning("Webhook delivery failed: %s", exc)

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self._client.close()


def build_dispatcher(settings: Settings) -> Dispatcher:
    if settings.webhook_url:
        return WebhookDispatcher(
            settings.webhook_url, secret=settings.webhook_secret, timeout=settings.webhook_timeout_s,
        )
    return LogDispatcher()

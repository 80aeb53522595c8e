from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from urllib.parse import urlsplit, urlunsplit

import httpx

from chatrelay.core.config import get_settings
from chatrelay.core.errors import DispatchError
from chatrelay.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

# Request timeout and throttling are transient even under terminal-4xx classification.
_RETRYABLE_4XX = {408, 429}


def redact_endpoint(url: str) -> str:
    # Webhook URLs carry credentials in the query string; keep scheme, host and path only.
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<invalid-endpoint>"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _classify_status(status_code: int, *, terminal_4xx: bool) -> bool:
    # Returns whether a non-2xx response should be retried.
    if status_code >= 500:
        return True
    if status_code in _RETRYABLE_4XX:
        return True
    return not terminal_4xx


@dataclass(frozen=True)
class DispatchReceipt:
    status_code: int
    latency_ms: float


class ChatDispatcher:
    """POSTs rendered payloads to chat incoming-webhook endpoints."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float | None = None,
        terminal_4xx: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._timeout_s = float(timeout_s if timeout_s is not None else settings.dispatch_timeout_s)
        self._terminal_4xx = bool(terminal_4xx if terminal_4xx is not None else settings.dispatch_terminal_4xx)

    async def _post(self, client: httpx.AsyncClient, endpoint: str, payload: bytes) -> httpx.Response:
        return await client.post(
            endpoint,
            content=payload,
            headers={"Content-Type": "application/json; charset=UTF-8"},
            timeout=self._timeout_s,
        )

    async def post(self, endpoint: str, payload: bytes) -> DispatchReceipt:
        started = time.monotonic()
        try:
            if self._client is not None:
                response = await self._post(self._client, endpoint, payload)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, endpoint, payload)
        except httpx.TimeoutException as exc:
            latency_ms = (time.monotonic() - started) * 1000.0
            record_external_call(integration="chat", latency_ms=latency_ms, success=False)
            raise DispatchError(f"chat endpoint timed out after {self._timeout_s}s") from exc
        except httpx.HTTPError as exc:
            latency_ms = (time.monotonic() - started) * 1000.0
            record_external_call(integration="chat", latency_ms=latency_ms, success=False)
            raise DispatchError(f"chat endpoint unreachable: {type(exc).__name__}") from exc

        latency_ms = (time.monotonic() - started) * 1000.0
        if 200 <= response.status_code < 300:
            record_external_call(integration="chat", latency_ms=latency_ms, success=True)
            return DispatchReceipt(status_code=response.status_code, latency_ms=latency_ms)

        record_external_call(integration="chat", latency_ms=latency_ms, success=False)
        retryable = _classify_status(response.status_code, terminal_4xx=self._terminal_4xx)
        logger.warning(
            "chat_dispatch_rejected endpoint=%s status=%s retryable=%s",
            redact_endpoint(endpoint),
            response.status_code,
            retryable,
        )
        raise DispatchError(
            f"chat endpoint returned HTTP {response.status_code}",
            status_code=response.status_code,
            retryable=retryable,
        )

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from clients import ResponseMetrics


logger = logging.getLogger(__name__)

UPLOAD_PATH = "/model/perf/report/upload"
DEFAULT_USER_AGENT = "llm-bench"


def _ms(seconds: float) -> int:
    return int(seconds * 1000)


class Uploader:
    """Fire-and-forget sink for per-request results.

    Disabled unless both an http(s) ``base_url`` and an ``auth_token`` are
    given. Upload failures are logged at debug level and never raised.
    """

    def __init__(
        self,
        base_url: Optional[str],
        auth_token: Optional[str],
        user_agent: str = DEFAULT_USER_AGENT,
        timeout_s: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.auth_token = auth_token or ""
        self.user_agent = user_agent
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        if not self.auth_token or not self.base_url:
            return False
        try:
            url = httpx.URL(self.base_url)
        except httpx.InvalidURL:
            return False
        return url.scheme in ("http", "https") and bool(url.host)

    def build_item(
        self,
        task_id: str,
        metrics: ResponseMetrics,
        protocol: str,
        endpoint: str,
        model: str,
    ) -> dict[str, Any]:
        per_output_token_ms = 0.0
        if metrics.completion_tokens > 1:
            remaining_s = metrics.total_time_s - metrics.ttft_s
            per_output_token_ms = remaining_s * 1000 / (metrics.completion_tokens - 1)
        return {
            "taskId": task_id,
            "reporter": self.user_agent,
            "protocol": protocol,
            "endpoint": endpoint,
            "serviceIP": metrics.target_ip,
            "successful": metrics.error_message == "",
            "providerModelKey": model,
            "inputTokenCount": metrics.prompt_tokens,
            "outputTokenCount": metrics.completion_tokens,
            "totalTime": _ms(metrics.total_time_s),
            "dnsLookupTime": _ms(metrics.dns_time_s),
            "tcpConnectTime": _ms(metrics.connect_time_s),
            "tlsHandshakeTime": _ms(metrics.tls_time_s),
            "perOutputTokenTime": per_output_token_ms,
            "firstOutputTokenTime": _ms(metrics.ttft_s),
            "errorMessage": metrics.error_message,
        }

    async def upload(
        self,
        task_id: str,
        metrics: ResponseMetrics,
        protocol: str,
        endpoint: str,
        model: str,
    ) -> bool:
        """Send one result; returns whether the server accepted it."""
        if not self.enabled:
            return False
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)

        items = [self.build_item(task_id, metrics, protocol, endpoint, model)]
        headers = {
            "User-Agent": self.user_agent,
            "Authorization": f"Bearer {self.auth_token}",
        }
        try:
            response = await self._client.post(f"{self.base_url}{UPLOAD_PATH}", json=items, headers=headers)
        except httpx.HTTPError as exc:
            logger.debug("Report upload failed: %s", exc)
            return False
        if not response.is_success:
            logger.debug("Report upload rejected with HTTP %s", response.status_code)
            return False
        return True

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Protocol, Union

import httpx

from errors import (
    BenchError,
    BodyReadError,
    ConfigError,
    DecodeError,
    EmptyResponseError,
    HTTPStatusError,
    RequestBuildError,
    TransportError,
)
from request_log import RequestLogger
from streams import (
    AnthropicStreamDecoder,
    OpenAIStreamDecoder,
    StreamEnd,
    Usage,
    anthropic_usage,
    openai_usage,
)
from tracing import NetworkTracer


logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_TIMEOUT_S = 300.0
DEFAULT_MAX_TOKENS = 4096

SUPPORTED_PROTOCOLS = ("openai", "anthropic")

Decoder = Union[OpenAIStreamDecoder, AnthropicStreamDecoder]


@dataclass
class ResponseMetrics:
    """Observations for one request. Durations are seconds.

    Network fields are filled as far as the request got, whatever the outcome.
    """

    ttft_s: float = 0.0
    total_time_s: float = 0.0
    dns_time_s: float = 0.0
    connect_time_s: float = 0.0
    tls_time_s: float = 0.0
    target_ip: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    thinking_tokens: int = 0
    error_message: str = ""

    def is_valid(self) -> bool:
        return self.error_message == "" and self.completion_tokens > 0

    def apply_usage(self, usage: Usage) -> None:
        # later usage reports replace earlier ones
        if usage.prompt_tokens is not None:
            self.prompt_tokens = usage.prompt_tokens
        if usage.completion_tokens is not None:
            self.completion_tokens = usage.completion_tokens
        if usage.thinking_tokens is not None:
            self.thinking_tokens = usage.thinking_tokens

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


RequestResult = tuple[ResponseMetrics, Optional[BenchError]]


class ModelClient(Protocol):
    protocol: str
    model: str

    async def request(self, prompt: str, stream: bool) -> RequestResult:
        ...

    async def aclose(self) -> None:
        ...


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def provider_error(status_code: int, raw: bytes) -> HTTPStatusError:
    """Build the error for a non-2xx reply, preferring the provider's own message."""
    message = f"HTTP {status_code}"
    error_type = None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        error = data["error"]
        detail = error.get("message")
        if isinstance(detail, str) and detail:
            error_type = error.get("type") if isinstance(error.get("type"), str) else None
            message = f"[{error_type}] {detail}" if error_type else detail
    return HTTPStatusError(message, status_code=status_code, error_type=error_type)


class HTTPExchange:
    """One traced POST with streaming or whole-body decoding.

    Shared by the protocol clients. Connections are never kept alive, so
    each request pays its own DNS, connect and TLS cost.
    """

    def __init__(
        self,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        request_logger: Optional[RequestLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.request_logger = request_logger
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=None, max_keepalive_connections=0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def run(
        self,
        *,
        model: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        stream: bool,
        decoder: Decoder,
        parse_body: Callable[[dict[str, Any]], Usage],
    ) -> RequestResult:
        metrics = ResponseMetrics()
        tracer = NetworkTracer()
        started = time.perf_counter()
        error: Optional[BenchError] = None
        try:
            await asyncio.wait_for(
                self._exchange(model, url, headers, payload, stream, decoder, parse_body, metrics, tracer, started),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            error = TransportError(f"Network error: request timed out after {self.timeout_s:g}s")
        except BenchError as exc:
            error = exc

        if error is not None or metrics.total_time_s == 0.0:
            metrics.total_time_s = time.perf_counter() - started
        if not stream:
            metrics.ttft_s = metrics.total_time_s
        metrics.dns_time_s = tracer.timings.dns_time_s
        metrics.connect_time_s = tracer.timings.connect_time_s
        metrics.tls_time_s = tracer.timings.tls_time_s
        metrics.target_ip = tracer.timings.target_ip

        if error is not None:
            metrics.error_message = str(error)
            if self.request_logger is not None:
                self.request_logger.error(model, type(error).__name__, error)
        elif self.request_logger is not None:
            self.request_logger.test_end(
                model,
                {
                    "total_time_s": metrics.total_time_s,
                    "ttft_s": metrics.ttft_s,
                    "prompt_tokens": metrics.prompt_tokens,
                    "completion_tokens": metrics.completion_tokens,
                    "thinking_tokens": metrics.thinking_tokens,
                },
            )
        return metrics, error

    async def _exchange(
        self,
        model: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        stream: bool,
        decoder: Decoder,
        parse_body: Callable[[dict[str, Any]], Usage],
        metrics: ResponseMetrics,
        tracer: NetworkTracer,
        started: float,
    ) -> None:
        try:
            target = httpx.URL(url)
            if target.scheme not in ("http", "https") or not target.host:
                raise ValueError(f"unsupported URL {url!r}")
            body = json.dumps(payload, ensure_ascii=False)
        except (httpx.InvalidURL, ValueError, TypeError) as exc:
            raise RequestBuildError(f"Request creation error: {_describe(exc)}") from exc

        if self.request_logger is not None:
            self.request_logger.request(model, "POST", url, headers, body)

        try:
            resolved = await tracer.resolve(target)
        except OSError as exc:
            raise TransportError(f"Network error: {_describe(exc)}") from exc

        try:
            request = self._client.build_request(
                "POST",
                resolved,
                headers={**headers, "Host": tracer.host_header(target), "Connection": "close"},
                content=body.encode("utf-8"),
                extensions=tracer.extensions(),
            )
        except (httpx.InvalidURL, ValueError, TypeError) as exc:
            raise RequestBuildError(f"Request creation error: {_describe(exc)}") from exc

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            raise TransportError(f"Network error: {_describe(exc)}") from exc

        try:
            if not 200 <= response.status_code < 300:
                try:
                    raw = await response.aread()
                except httpx.HTTPError:
                    raw = b""
                if self.request_logger is not None:
                    self.request_logger.response(
                        model,
                        response.status_code,
                        headers=response.headers,
                        body=raw.decode("utf-8", errors="replace"),
                        error=f"HTTP {response.status_code} Error",
                    )
                raise provider_error(response.status_code, raw)

            if stream:
                await self._read_stream(model, response, decoder, metrics, started)
            else:
                await self._read_body(model, response, parse_body, metrics, started)
        finally:
            await response.aclose()

    async def _read_stream(
        self,
        model: str,
        response: httpx.Response,
        decoder: Decoder,
        metrics: ResponseMetrics,
        started: float,
    ) -> None:
        got_first = False
        try:
            async for line in response.aiter_lines():
                for event in decoder.decode_line(line):
                    if isinstance(event, Usage):
                        metrics.apply_usage(event)
                    elif isinstance(event, StreamEnd):
                        continue
                    elif not got_first and event.has_content():
                        metrics.ttft_s = time.perf_counter() - started
                        got_first = True
                if decoder.done:
                    break
        except httpx.TimeoutException as exc:
            raise TransportError(f"Network error: {_describe(exc)}") from exc
        except httpx.HTTPError as exc:
            raise BodyReadError(f"Stream read error: {_describe(exc)}") from exc
        metrics.total_time_s = time.perf_counter() - started

        if self.request_logger is not None:
            self.request_logger.response(model, response.status_code, stream_chunks=decoder.chunks)

    async def _read_body(
        self,
        model: str,
        response: httpx.Response,
        parse_body: Callable[[dict[str, Any]], Usage],
        metrics: ResponseMetrics,
        started: float,
    ) -> None:
        try:
            raw = await response.aread()
        except httpx.TimeoutException as exc:
            raise TransportError(f"Network error: {_describe(exc)}") from exc
        except httpx.HTTPError as exc:
            raise BodyReadError(f"Response body read error: {_describe(exc)}") from exc
        # the whole answer arrives at once
        metrics.total_time_s = time.perf_counter() - started
        metrics.ttft_s = metrics.total_time_s

        if self.request_logger is not None:
            self.request_logger.response(
                model,
                response.status_code,
                headers=response.headers,
                body=raw.decode("utf-8", errors="replace"),
            )

        if not raw.strip():
            raise EmptyResponseError("Empty response body")
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError(f"JSON parsing error: {exc}") from exc
        if not isinstance(data, dict):
            raise DecodeError("JSON parsing error: expected an object")
        metrics.apply_usage(parse_body(data))


def _openai_body_usage(data: dict[str, Any]) -> Usage:
    usage = data.get("usage")
    return openai_usage(usage) if isinstance(usage, dict) else Usage()


def _anthropic_body_usage(data: dict[str, Any]) -> Usage:
    usage = data.get("usage")
    return anthropic_usage(usage) if isinstance(usage, dict) else Usage()


class OpenAIClient:
    """Client for ``POST {base_url}/chat/completions`` with bearer auth."""

    protocol = "openai"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        request_logger: Optional[RequestLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        self.api_key = api_key
        self.model = model
        self.request_logger = request_logger
        self._exchange = HTTPExchange(timeout_s, request_logger, transport)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, prompt: str, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def request(self, prompt: str, stream: bool) -> RequestResult:
        if self.request_logger is not None:
            self.request_logger.test_start(
                self.model, prompt, {"stream": stream, "protocol": self.protocol, "base_url": self.base_url}
            )
        return await self._exchange.run(
            model=self.model,
            url=f"{self.base_url}/chat/completions",
            headers=self._headers(),
            payload=self._payload(prompt, stream),
            stream=stream,
            decoder=OpenAIStreamDecoder(),
            parse_body=_openai_body_usage,
        )

    async def aclose(self) -> None:
        await self._exchange.aclose()


class AnthropicClient:
    """Client for ``POST {base_url}/v1/messages`` with ``x-api-key`` auth."""

    protocol = "anthropic"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        request_logger: Optional[RequestLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or DEFAULT_ANTHROPIC_BASE_URL).rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.request_logger = request_logger
        self._exchange = HTTPExchange(timeout_s, request_logger, transport)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _payload(self, prompt: str, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
        }

    async def request(self, prompt: str, stream: bool) -> RequestResult:
        if self.request_logger is not None:
            self.request_logger.test_start(
                self.model, prompt, {"stream": stream, "protocol": self.protocol, "base_url": self.base_url}
            )
        return await self._exchange.run(
            model=self.model,
            url=f"{self.base_url}/v1/messages",
            headers=self._headers(),
            payload=self._payload(prompt, stream),
            stream=stream,
            decoder=AnthropicStreamDecoder(),
            parse_body=_anthropic_body_usage,
        )

    async def aclose(self) -> None:
        await self._exchange.aclose()


def new_client(
    protocol: str,
    base_url: str,
    api_key: str,
    model: str,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    request_logger: Optional[RequestLogger] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ModelClient:
    if protocol == "openai":
        return OpenAIClient(
            base_url,
            api_key,
            model,
            timeout_s=timeout_s,
            request_logger=request_logger,
            transport=transport,
        )
    if protocol == "anthropic":
        return AnthropicClient(
            base_url,
            api_key,
            model,
            timeout_s=timeout_s,
            max_tokens=max_tokens,
            request_logger=request_logger,
            transport=transport,
        )
    raise ConfigError(f"Unsupported protocol: {protocol!r} (expected one of {', '.join(SUPPORTED_PROTOCOLS)})")

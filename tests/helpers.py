"""Synthetic wire traffic and fake collaborators shared by the tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import httpx

from clients import ResponseMetrics
from errors import BenchError


TEST_MODEL = "test-model"
TEST_PROMPT = "test prompt"
TEST_API_KEY = "sk-test-key"
OPENAI_BASE_URL = "http://127.0.0.1:8000/v1"
ANTHROPIC_BASE_URL = "http://127.0.0.1:8001"


def sse(payload: Any) -> bytes:
    if isinstance(payload, str):
        return f"data: {payload}\n\n".encode("utf-8")
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


def anthropic_event(name: str, payload: dict[str, Any]) -> bytes:
    return f"event: {name}\ndata: {json.dumps(payload)}\n\n".encode("utf-8")


def openai_chunk(content: Optional[str] = None, reasoning: Optional[str] = None) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    return {"id": "chatcmpl-1", "choices": [{"index": 0, "delta": delta}]}


class SlowStream(httpx.AsyncByteStream):
    """Yields ``(delay_s, chunk)`` pairs, sleeping before each chunk.

    A chunk that is an exception instance is raised instead of yielded.
    """

    def __init__(self, parts: list[tuple[float, Any]]) -> None:
        self.parts = parts

    async def __aiter__(self):
        for delay_s, chunk in self.parts:
            if delay_s:
                await asyncio.sleep(delay_s)
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    async def aclose(self) -> None:
        pass


class Recorder:
    """MockTransport handler that records requests and replays one response factory."""

    def __init__(self, respond) -> None:
        self.respond = respond
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        self.requests.append(request)
        response = self.respond(request)
        if asyncio.iscoroutine(response):
            response = await response
        return response

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def last_json(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)


class FakeClient:
    """ModelClient stand-in with scripted outcomes and in-flight tracking."""

    protocol = "openai"
    model = TEST_MODEL

    def __init__(
        self,
        outcomes: Optional[list[tuple[ResponseMetrics, Optional[BenchError]]]] = None,
        delay_s: float = 0.0,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.delay_s = delay_s
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def request(self, prompt: str, stream: bool):
        index = self.calls
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            if index < len(self.outcomes):
                return self.outcomes[index]
            return (
                ResponseMetrics(ttft_s=0.01, total_time_s=0.1, completion_tokens=10, prompt_tokens=5),
                None,
            )
        finally:
            self.in_flight -= 1

    async def aclose(self) -> None:
        self.closed = True


class LocalHTTPServer:
    """Keep-alive HTTP/1.1 server on 127.0.0.1 answering every request with ``body``.

    It serves any number of requests per connection, so ``connections``
    only grows when the client opens a new one.
    """

    def __init__(self, body: bytes) -> None:
        self.body = body
        self.connections = 0
        self.requests = 0
        self.port = 0
        self._server: Optional[asyncio.AbstractServer] = None

    async def __aenter__(self) -> LocalHTTPServer:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc_info) -> None:
        assert self._server is not None
        self._server.close()
        await self._server.wait_closed()

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}/v1"

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        try:
            while True:
                try:
                    head = await reader.readuntil(b"\r\n\r\n")
                except (asyncio.IncompleteReadError, ConnectionError):
                    break
                length = 0
                for line in head.decode("latin-1").split("\r\n"):
                    name, _, value = line.partition(":")
                    if name.strip().lower() == "content-length":
                        length = int(value.strip())
                if length:
                    await reader.readexactly(length)
                self.requests += 1
                writer.write(
                    b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
                    + f"Content-Length: {len(self.body)}\r\n\r\n".encode("ascii")
                    + self.body
                )
                await writer.drain()
        finally:
            writer.close()

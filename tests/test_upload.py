"""Tests for the result upload sink."""

import json

import httpx
import pytest

from clients import ResponseMetrics
from upload import UPLOAD_PATH, Uploader

from .helpers import Recorder


def _metrics():
    return ResponseMetrics(
        ttft_s=0.2,
        total_time_s=1.2,
        dns_time_s=0.005,
        connect_time_s=0.01,
        tls_time_s=0.02,
        target_ip="10.0.0.1",
        prompt_tokens=12,
        completion_tokens=11,
    )


class TestUploaderEnabled:
    """Test when uploads are active."""

    @pytest.mark.parametrize(
        "base_url, token, expected",
        [
            ("https://reports.example.com", "tok", True),
            ("http://127.0.0.1:9000", "tok", True),
            ("https://reports.example.com", "", False),
            ("", "tok", False),
            (None, None, False),
            ("ftp://reports.example.com", "tok", False),
        ],
    )
    def test_enabled(self, base_url, token, expected):
        """Test both an http(s) URL and a token are required."""
        assert Uploader(base_url, token).enabled is expected

    @pytest.mark.asyncio
    async def test_disabled_is_a_no_op(self):
        """Test nothing is sent when disabled."""
        recorder = Recorder(lambda request: httpx.Response(200))
        uploader = Uploader("https://reports.example.com", "", transport=recorder.transport())
        assert await uploader.upload("task", _metrics(), "openai", "http://x", "m") is False
        assert recorder.requests == []
        await uploader.aclose()


class TestBuildItem:
    """Test the uploaded record."""

    def test_fields(self):
        """Test millisecond conversion and per-output-token time."""
        item = Uploader("https://r.example.com", "tok", user_agent="bench/1").build_item(
            "task-1", _metrics(), "openai", "https://api.example.com/v1", "gpt-x"
        )
        assert item["taskId"] == "task-1"
        assert item["reporter"] == "bench/1"
        assert item["serviceIP"] == "10.0.0.1"
        assert item["successful"] is True
        assert item["providerModelKey"] == "gpt-x"
        assert item["inputTokenCount"] == 12
        assert item["outputTokenCount"] == 11
        assert item["totalTime"] == 1200
        assert item["firstOutputTokenTime"] == 200
        assert item["tlsHandshakeTime"] == 20
        assert item["perOutputTokenTime"] == pytest.approx(100.0)
        assert item["errorMessage"] == ""

    def test_single_token_has_no_per_token_time(self):
        """Test per-output-token time is zero below two tokens."""
        metrics = ResponseMetrics(ttft_s=0.5, total_time_s=0.5, completion_tokens=1)
        item = Uploader("https://r.example.com", "tok").build_item("t", metrics, "anthropic", "e", "m")
        assert item["perOutputTokenTime"] == 0.0


class TestUpload:
    """Test the HTTP side of uploads."""

    @pytest.mark.asyncio
    async def test_posts_json_array(self):
        """Test one item is posted with auth and user agent."""
        recorder = Recorder(lambda request: httpx.Response(200, json={"ok": True}))
        uploader = Uploader("https://r.example.com/", "tok", user_agent="bench/1", transport=recorder.transport())
        try:
            accepted = await uploader.upload("task-1", _metrics(), "openai", "https://api.example.com/v1", "gpt-x")
        finally:
            await uploader.aclose()

        assert accepted is True
        request = recorder.requests[0]
        assert str(request.url) == "https://r.example.com" + UPLOAD_PATH
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["User-Agent"] == "bench/1"
        body = json.loads(request.content)
        assert isinstance(body, list) and len(body) == 1
        assert body[0]["taskId"] == "task-1"

    @pytest.mark.asyncio
    async def test_rejection_is_swallowed(self):
        """Test a server error returns False instead of raising."""
        recorder = Recorder(lambda request: httpx.Response(500))
        uploader = Uploader("https://r.example.com", "tok", transport=recorder.transport())
        try:
            assert await uploader.upload("t", _metrics(), "openai", "e", "m") is False
        finally:
            await uploader.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_is_swallowed(self):
        """Test a network failure returns False instead of raising."""

        def respond(request):
            raise httpx.ConnectError("refused", request=request)

        uploader = Uploader("https://r.example.com", "tok", transport=httpx.MockTransport(respond))
        try:
            assert await uploader.upload("t", _metrics(), "openai", "e", "m") is False
        finally:
            await uploader.aclose()

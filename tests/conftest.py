"""Shared test configuration and fixtures for all tests."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from loadgen import FixedPromptSource
from runner import BenchmarkConfig

from .helpers import OPENAI_BASE_URL, TEST_API_KEY, TEST_MODEL, TEST_PROMPT, FakeClient


@pytest.fixture
def prompt_source():
    """Single fixed prompt."""
    return FixedPromptSource([TEST_PROMPT])


@pytest.fixture
def make_config(prompt_source):
    """Factory for BenchmarkConfig with test defaults."""

    def _make(**overrides):
        values = dict(
            protocol="openai",
            base_url=OPENAI_BASE_URL,
            api_key=TEST_API_KEY,
            model=TEST_MODEL,
            prompt_source=prompt_source,
            concurrency=2,
            count=4,
            stream=True,
            timeout_s=5.0,
        )
        values.update(overrides)
        return BenchmarkConfig(**values)

    return _make


@pytest.fixture
def fake_client():
    """Client that succeeds instantly with 10 completion tokens."""
    return FakeClient()


@pytest.fixture
def mock_uploader():
    """Uploader double recording every upload call."""
    uploader = MagicMock()
    uploader.upload = AsyncMock(return_value=True)
    uploader.aclose = AsyncMock()
    return uploader

from __future__ import annotations

from typing import Optional


class BenchError(Exception):
    """Base class for every failure the benchmark reports."""


class ConfigError(BenchError):
    """Invalid run configuration, detected before any request is sent."""


class RequestBuildError(BenchError):
    pass


class TransportError(BenchError):
    """DNS, connect, TLS or timeout failure below the HTTP layer."""


class HTTPStatusError(BenchError):
    def __init__(
        self,
        message: str,
        status_code: int,
        error_type: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


class BodyReadError(BenchError):
    pass


class DecodeError(BenchError):
    pass


class EmptyResponseError(BenchError):
    pass

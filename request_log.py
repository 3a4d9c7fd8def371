from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional


REDACTED_HEADERS = {"authorization", "x-api-key"}


def default_log_path() -> Path:
    return Path(f"llm-bench-{datetime.now().strftime('%y-%m-%d-%H-%M-%S')}.log")


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {
        key: ("***" if key.lower() in REDACTED_HEADERS else value)
        for key, value in headers.items()
    }


class RequestLogger:
    """Writes request/response payloads as JSON lines to a dedicated file.

    The underlying ``logging.Logger`` does not propagate, so payloads never
    reach the console handlers.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or default_log_path()
        self._logger = logging.getLogger(f"llm_bench.requests.{id(self)}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False
        self._handler = logging.FileHandler(self.path, encoding="utf-8")
        self._handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(self._handler)

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()

    def _write(self, level: str, model: str, message: str, details: Any = None) -> None:
        entry: dict[str, Any] = {
            "timestamp": datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
            "level": level,
            "model": model,
            "message": message,
        }
        if details is not None:
            entry["details"] = details
        self._logger.info(json.dumps(entry, ensure_ascii=False, default=str))

    def test_start(self, model: str, prompt: str, config: dict[str, Any]) -> None:
        self._write("INFO", model, "Test Started", {"prompt": prompt, "config": config})

    def request(self, model: str, method: str, url: str, headers: Mapping[str, str], body: str) -> None:
        self._write(
            "REQUEST",
            model,
            "HTTP Request",
            {"method": method, "url": url, "headers": redact_headers(headers), "body": body},
        )

    def response(
        self,
        model: str,
        status_code: int,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[str] = None,
        stream_chunks: Optional[list[str]] = None,
        error: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {"status_code": status_code}
        if headers is not None:
            details["headers"] = dict(headers)
        if body:
            details["body"] = body
        if stream_chunks:
            details["stream_chunks"] = stream_chunks
        if error:
            details["error"] = error
        self._write("RESPONSE", model, "HTTP Response", details)

    def error(self, model: str, message: str, exc: BaseException) -> None:
        self._write("ERROR", model, message, {"error": str(exc)})

    def test_end(self, model: str, stats: dict[str, Any]) -> None:
        self._write("INFO", model, "Test Completed", stats)

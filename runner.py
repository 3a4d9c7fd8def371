from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from clients import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TIMEOUT_S,
    SUPPORTED_PROTOCOLS,
    ModelClient,
    ResponseMetrics,
    new_client,
)
from errors import BenchError, ConfigError
from loadgen import PromptSource
from report import AggregateReport, compute_report
from request_log import RequestLogger
from upload import Uploader


logger = logging.getLogger(__name__)

PROGRESS_INTERVAL_S = 0.5


@dataclass(frozen=True)
class BenchmarkConfig:
    protocol: str
    base_url: str
    api_key: str
    model: str
    prompt_source: PromptSource
    concurrency: int = 1
    count: int = 1
    stream: bool = True
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_tokens: int = DEFAULT_MAX_TOKENS
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    log_requests: bool = False

    def validate(self) -> None:
        if self.protocol not in SUPPORTED_PROTOCOLS:
            raise ConfigError(
                f"Unsupported protocol: {self.protocol!r} (expected one of {', '.join(SUPPORTED_PROTOCOLS)})"
            )
        if not self.model:
            raise ConfigError("model is required")
        if self.base_url and not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"base URL must be an http(s) URL, got {self.base_url!r}")
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.count < 1:
            raise ConfigError(f"count must be >= 1, got {self.count}")
        if self.timeout_s <= 0:
            raise ConfigError(f"timeout must be > 0, got {self.timeout_s}")
        if self.max_tokens < 1:
            raise ConfigError(f"max_tokens must be >= 1, got {self.max_tokens}")


@dataclass
class LiveStats:
    """Running observations shared by all workers; guarded by the runner's lock."""

    completed_count: int = 0
    failed_count: int = 0
    ttfts_s: list[float] = field(default_factory=list)
    total_times_s: list[float] = field(default_factory=list)
    dns_times_s: list[float] = field(default_factory=list)
    connect_times_s: list[float] = field(default_factory=list)
    tls_times_s: list[float] = field(default_factory=list)
    completion_token_counts: list[int] = field(default_factory=list)
    prompt_token_counts: list[int] = field(default_factory=list)
    thinking_token_counts: list[int] = field(default_factory=list)
    error_messages: list[str] = field(default_factory=list)
    start_time: float = 0.0
    elapsed_s: float = 0.0

    def add_metrics(self, metrics: ResponseMetrics) -> None:
        self.ttfts_s.append(metrics.ttft_s)
        self.total_times_s.append(metrics.total_time_s)
        self.dns_times_s.append(metrics.dns_time_s)
        self.connect_times_s.append(metrics.connect_time_s)
        self.tls_times_s.append(metrics.tls_time_s)
        self.completion_token_counts.append(metrics.completion_tokens)
        self.prompt_token_counts.append(metrics.prompt_tokens)
        self.thinking_token_counts.append(metrics.thinking_tokens)

    def snapshot(self, elapsed_s: float) -> LiveStats:
        stats = copy.deepcopy(self)
        stats.elapsed_s = elapsed_s
        return stats


class BenchmarkRunner:
    """Runs ``config.count`` requests with at most ``config.concurrency`` in flight.

    Every request is its own task with a fixed slot in ``results``, so slot
    order follows scheduling order. Per-request failures are counted, never
    raised; only configuration errors abort a run, and they surface from the
    constructor before anything is sent.
    """

    def __init__(
        self,
        config: BenchmarkConfig,
        client: Optional[ModelClient] = None,
        uploader: Optional[Uploader] = None,
        progress_interval_s: float = PROGRESS_INTERVAL_S,
    ) -> None:
        config.validate()
        self.config = config
        self.uploader = uploader
        self.progress_interval_s = progress_interval_s
        self.request_logger: Optional[RequestLogger] = None
        self._owns_client = client is None
        if client is None:
            if config.log_requests:
                self.request_logger = RequestLogger()
            client = new_client(
                config.protocol,
                config.base_url,
                config.api_key,
                config.model,
                timeout_s=config.timeout_s,
                max_tokens=config.max_tokens,
                request_logger=self.request_logger,
            )
        self.client = client
        self.results: list[Optional[ResponseMetrics]] = []
        self.stats = LiveStats()
        self._lock = asyncio.Lock()
        self._uploads: set[asyncio.Task[bool]] = set()

    async def run(self) -> AggregateReport:
        return await self._execute(None)

    async def run_with_progress(self, on_progress: Callable[[LiveStats], None]) -> AggregateReport:
        """Like ``run``, calling ``on_progress`` with a LiveStats copy every interval.

        One last snapshot is delivered after every request has finished.
        """
        return await self._execute(on_progress)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
        if self.uploader is not None:
            await self.uploader.aclose()
        if self.request_logger is not None:
            self.request_logger.close()

    async def _execute(self, on_progress: Optional[Callable[[LiveStats], None]]) -> AggregateReport:
        config = self.config
        self.results = [None] * config.count
        self.stats = LiveStats(start_time=time.time())
        started = time.perf_counter()
        gate = asyncio.Semaphore(config.concurrency)
        logger.info(
            "Starting %d %s requests to %s (model=%s, concurrency=%d, stream=%s)",
            config.count,
            config.protocol,
            config.base_url,
            config.model,
            config.concurrency,
            config.stream,
        )

        stop_event = asyncio.Event()
        reporter: Optional[asyncio.Task[None]] = None
        if on_progress is not None:
            reporter = asyncio.create_task(self._report_progress(on_progress, stop_event, started))

        workers = [asyncio.create_task(self._run_one(index, gate)) for index in range(config.count)]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            stop_event.set()
            if reporter is not None:
                await reporter
        wall_time_s = time.perf_counter() - started

        if on_progress is not None:
            async with self._lock:
                final_stats = self.stats.snapshot(wall_time_s)
            on_progress(final_stats)

        if self._uploads:
            await asyncio.gather(*self._uploads, return_exceptions=True)

        logger.info(
            "Finished in %.2fs: %d completed, %d failed",
            wall_time_s,
            self.stats.completed_count,
            self.stats.failed_count,
        )
        return compute_report(
            self.results,
            wall_time_s,
            concurrency=config.concurrency,
            is_stream=config.stream,
            protocol=config.protocol,
            model=config.model,
            base_url=config.base_url,
        )

    async def _run_one(self, index: int, gate: asyncio.Semaphore) -> None:
        async with gate:
            try:
                prompt = self.config.prompt_source.get_content()
                metrics, error = await self.client.request(prompt, self.config.stream)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Request %d raised unexpectedly", index)
                metrics, error = ResponseMetrics(error_message=str(exc) or type(exc).__name__), exc

        self.results[index] = metrics
        async with self._lock:
            if error is not None:
                self.stats.failed_count += 1
                self.stats.error_messages.append(str(error) or type(error).__name__)
            else:
                self.stats.completed_count += 1
            if metrics is not None:
                self.stats.add_metrics(metrics)

        if error is not None:
            kind = type(error).__name__ if isinstance(error, BenchError) else "Error"
            logger.warning("Request %d failed (%s): %s", index, kind, error)
        elif self.uploader is not None and metrics.error_message == "":
            self._schedule_upload(metrics)

    def _schedule_upload(self, metrics: ResponseMetrics) -> None:
        assert self.uploader is not None
        task = asyncio.create_task(
            self.uploader.upload(
                self.config.task_id,
                metrics,
                protocol=self.config.protocol,
                endpoint=self.config.base_url,
                model=self.config.model,
            )
        )
        self._uploads.add(task)
        task.add_done_callback(self._upload_done)

    def _upload_done(self, task: asyncio.Task[bool]) -> None:
        self._uploads.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Report upload raised: %s", exc)

    async def _report_progress(
        self,
        on_progress: Callable[[LiveStats], None],
        stop_event: asyncio.Event,
        started: float,
    ) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.progress_interval_s)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                return
            async with self._lock:
                stats = self.stats.snapshot(time.perf_counter() - started)
            on_progress(stats)

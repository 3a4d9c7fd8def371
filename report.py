from __future__ import annotations

import statistics
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from clients import ResponseMetrics


@dataclass(frozen=True)
class AggregateReport:
    """Final statistics for one run. Durations are seconds."""

    total_requests: int
    concurrency: int
    is_stream: bool
    total_time_s: float
    protocol: str = ""
    model: str = ""
    base_url: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    valid_count: int = 0
    error_rate: float = 0.0
    success_rate: float = 0.0

    min_total_time_s: float = 0.0
    avg_total_time_s: float = 0.0
    max_total_time_s: float = 0.0

    min_dns_time_s: float = 0.0
    avg_dns_time_s: float = 0.0
    max_dns_time_s: float = 0.0
    min_connect_time_s: float = 0.0
    avg_connect_time_s: float = 0.0
    max_connect_time_s: float = 0.0
    min_tls_time_s: float = 0.0
    avg_tls_time_s: float = 0.0
    max_tls_time_s: float = 0.0
    target_ip: str = ""

    min_ttft_s: float = 0.0
    avg_ttft_s: float = 0.0
    max_ttft_s: float = 0.0
    min_tpot_s: float = 0.0
    avg_tpot_s: float = 0.0
    max_tpot_s: float = 0.0
    min_tps: float = 0.0
    avg_tps: float = 0.0
    max_tps: float = 0.0

    min_completion_tokens: int = 0
    avg_completion_tokens: float = 0.0
    max_completion_tokens: int = 0
    min_prompt_tokens: int = 0
    avg_prompt_tokens: float = 0.0
    max_prompt_tokens: int = 0
    min_thinking_tokens: int = 0
    avg_thinking_tokens: float = 0.0
    max_thinking_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _stat_triplet(values: Sequence[float]) -> tuple[float, float, float]:
    if not values:
        return 0.0, 0.0, 0.0
    return float(min(values)), float(statistics.fmean(values)), float(max(values))


def _token_triplet(values: Sequence[int]) -> tuple[int, float, int]:
    if not values:
        return 0, 0.0, 0
    return min(values), float(statistics.fmean(values)), max(values)


def _has_network_timing(result: ResponseMetrics) -> bool:
    return result.dns_time_s > 0 or result.connect_time_s > 0 or result.tls_time_s > 0


def per_sample_tps(result: ResponseMetrics) -> Optional[float]:
    if result.total_time_s <= 0:
        return None
    return result.completion_tokens / result.total_time_s


def per_sample_tpot(result: ResponseMetrics) -> Optional[float]:
    """Time per output token after the first; undefined below two tokens."""
    if result.completion_tokens <= 1:
        return None
    return (result.total_time_s - result.ttft_s) / (result.completion_tokens - 1)


def compute_report(
    results: Sequence[Optional[ResponseMetrics]],
    wall_time_s: float,
    *,
    concurrency: int = 1,
    is_stream: bool = True,
    protocol: str = "",
    model: str = "",
    base_url: str = "",
) -> AggregateReport:
    """Reduce a completed result set into an AggregateReport.

    ``results`` holds one slot per requested call; empty slots count as
    failures. Business metrics use the valid samples (no error, at least one
    completion token), falling back to any sample with a measured total time.

    TPS is the mean of per-request ratios. Dividing summed tokens by summed
    time would give batch throughput instead, skewed towards slow requests.
    """
    requested = len(results)
    recorded = [result for result in results if result is not None]
    selected = [result for result in recorded if result.is_valid()]
    valid_count = len(selected)
    if not selected:
        selected = [result for result in recorded if result.total_time_s > 0]

    error_rate = (requested - valid_count) / requested * 100 if requested else 0.0
    base = dict(
        total_requests=requested,
        concurrency=concurrency,
        is_stream=is_stream,
        total_time_s=wall_time_s,
        protocol=protocol,
        model=model,
        base_url=base_url,
        valid_count=valid_count,
        error_rate=error_rate,
        success_rate=100.0 - error_rate if requested else 0.0,
    )
    if not selected:
        return AggregateReport(**base)

    network_samples = [result for result in recorded if _has_network_timing(result)] or selected

    min_total, avg_total, max_total = _stat_triplet([r.total_time_s for r in selected])
    min_ttft, avg_ttft, max_ttft = _stat_triplet([r.ttft_s for r in selected])
    min_dns, avg_dns, max_dns = _stat_triplet([r.dns_time_s for r in network_samples])
    min_connect, avg_connect, max_connect = _stat_triplet([r.connect_time_s for r in network_samples])
    min_tls, avg_tls, max_tls = _stat_triplet([r.tls_time_s for r in network_samples])

    tps_values = [tps for tps in (per_sample_tps(r) for r in selected) if tps is not None]
    tpot_values = [tpot for tpot in (per_sample_tpot(r) for r in selected) if tpot is not None]
    min_tps, avg_tps, max_tps = _stat_triplet(tps_values)
    min_tpot, avg_tpot, max_tpot = _stat_triplet(tpot_values)

    min_completion, avg_completion, max_completion = _token_triplet([r.completion_tokens for r in selected])
    min_prompt, avg_prompt, max_prompt = _token_triplet([r.prompt_tokens for r in selected])
    min_thinking, avg_thinking, max_thinking = _token_triplet([r.thinking_tokens for r in selected])

    target_ip = next((r.target_ip for r in recorded if r.is_valid() and r.target_ip), "")

    return AggregateReport(
        **base,
        min_total_time_s=min_total,
        avg_total_time_s=avg_total,
        max_total_time_s=max_total,
        min_dns_time_s=min_dns,
        avg_dns_time_s=avg_dns,
        max_dns_time_s=max_dns,
        min_connect_time_s=min_connect,
        avg_connect_time_s=avg_connect,
        max_connect_time_s=max_connect,
        min_tls_time_s=min_tls,
        avg_tls_time_s=avg_tls,
        max_tls_time_s=max_tls,
        target_ip=target_ip,
        min_ttft_s=min_ttft,
        avg_ttft_s=avg_ttft,
        max_ttft_s=max_ttft,
        min_tpot_s=min_tpot,
        avg_tpot_s=avg_tpot,
        max_tpot_s=max_tpot,
        min_tps=min_tps,
        avg_tps=avg_tps,
        max_tps=max_tps,
        min_completion_tokens=min_completion,
        avg_completion_tokens=avg_completion,
        max_completion_tokens=max_completion,
        min_prompt_tokens=min_prompt,
        avg_prompt_tokens=avg_prompt,
        max_prompt_tokens=max_prompt,
        min_thinking_tokens=min_thinking,
        avg_thinking_tokens=avg_thinking,
        max_thinking_tokens=max_thinking,
    )


def summarize_errors(messages: Iterable[str]) -> list[tuple[str, int]]:
    """Distinct error messages with occurrence counts, most frequent first."""
    return Counter(message for message in messages if message).most_common()

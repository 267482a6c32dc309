from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status; webhook ack latency is read from these samples.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture provider call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(sorted(_counters.items()))


def _percentile(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    index = max(0, min(len(ordered) - 1, math.ceil(pct / 100.0 * len(ordered)) - 1))
    return ordered[index]


def latency_summary(*, path_prefix: str, window_s: int = 300) -> dict[str, float | int | None]:
    # Summarize recent latency for one route family (e.g. the webhook receiver).
    cutoff = time.time() - window_s
    latencies = [
        sample.latency_ms
        for sample in _request_samples
        if sample.ts >= cutoff and sample.path.startswith(path_prefix)
    ]
    return {
        "count": len(latencies),
        "p50_ms": _percentile(latencies, 50),
        "p95_ms": _percentile(latencies, 95),
    }


def external_call_summary(*, window_s: int = 300) -> dict[str, dict[str, int]]:
    cutoff = time.time() - window_s
    summary: dict[str, dict[str, int]] = {}
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        bucket = summary.setdefault(sample.integration, {"success": 0, "failure": 0})
        bucket["success" if sample.success else "failure"] += 1
    return summary


def reset_telemetry() -> None:
    # Tests reset process-wide counters between cases.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()

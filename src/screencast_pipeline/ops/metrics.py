from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

REGISTRY = CollectorRegistry()

# Latency buckets (seconds) for transcode-heavy stages; compose may run for minutes.
PIPELINE_BUCKETS = (
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    900.0,
)

jobs_started = Counter(
    "screencast_jobs_started_total", "Job attempts started", registry=REGISTRY
)
jobs_finished = Counter(
    "screencast_jobs_finished_total",
    "Job attempts finished by outcome",
    labelnames=("state",),
    registry=REGISTRY,
)
stage_errors = Counter(
    "screencast_stage_errors_total",
    "Stage failures by stage and error kind",
    labelnames=("stage", "kind"),
    registry=REGISTRY,
)
transcription_failures = Counter(
    "screencast_transcription_failures_total",
    "Best-effort transcription failures (swallowed)",
    registry=REGISTRY,
)
heartbeat_failures = Counter(
    "screencast_heartbeat_failures_total", "Heartbeat publish failures", registry=REGISTRY
)
stage_seconds = Histogram(
    "screencast_stage_seconds",
    "Stage latency (seconds)",
    labelnames=("stage",),
    registry=REGISTRY,
    buckets=PIPELINE_BUCKETS,
)


@contextmanager
def time_stage(stage: str) -> Iterator[Callable[[], float]]:
    """
    Time a block into `screencast_stage_seconds{stage=...}`.
    Usage:
        with time_stage("compose") as elapsed:
            ...
        dt = elapsed()
    """
    t0 = time.perf_counter()
    dt: float | None = None

    def elapsed() -> float:
        return float(dt if dt is not None else time.perf_counter() - t0)

    try:
        yield elapsed
    finally:
        dt = max(0.0, time.perf_counter() - t0)
        with suppress(Exception):
            stage_seconds.labels(stage=str(stage)).observe(dt)


def render_latest() -> bytes:
    return generate_latest(REGISTRY)

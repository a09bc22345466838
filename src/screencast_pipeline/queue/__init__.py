"""
Queue backends (Redis + local fallback).

Single integration point used by:
- the web tier / CLI to enqueue processing for a video
- the worker runtime to run claimed jobs in bounded worker slots

Both backends share one contract: deterministic job identity `video-{id}`,
attempts with exponential backoff, and bounded completed/failed history.
"""

from __future__ import annotations

from screencast_pipeline.config import get_settings
from screencast_pipeline.utils.log import logger

from .interfaces import ClaimedJob, JobRecord, JobState, QueueBackend, QueueStatus, backoff_ms, job_id_for


def build_queue_backend() -> QueueBackend:
    s = get_settings()
    backend = str(s.queue_backend or "auto").strip().lower()
    redis_url = str(s.redis_url or "").strip()
    if backend == "redis" or (backend == "auto" and redis_url):
        from .redis_queue import RedisQueue

        logger.info("queue_backend_selected", queue_mode="redis")
        return RedisQueue.from_settings()

    from .local_queue import LocalQueue

    logger.info("queue_backend_selected", queue_mode="local")
    return LocalQueue.from_settings()


__all__ = [
    "ClaimedJob",
    "JobRecord",
    "JobState",
    "QueueBackend",
    "QueueStatus",
    "backoff_ms",
    "build_queue_backend",
    "job_id_for",
]

from __future__ import annotations

import asyncio
import uuid

import pytest

from screencast_pipeline.config import get_settings
from screencast_pipeline.queue.interfaces import JobState
from screencast_pipeline.queue.redis_queue import RedisQueue
from tests._helpers.redis import redis_available, redis_url

pytestmark = pytest.mark.skipif(not redis_available(), reason="redis not available")


@pytest.fixture
def queue(monkeypatch: pytest.MonkeyPatch) -> RedisQueue:
    monkeypatch.setenv("REDIS_URL", redis_url())
    monkeypatch.setenv("QUEUE_BACKEND", "redis")
    monkeypatch.setenv("QUEUE_NAME", f"test-{uuid.uuid4().hex[:8]}")
    monkeypatch.setenv("QUEUE_BACKOFF_MS", "0")
    monkeypatch.setenv("QUEUE_KEEP_COMPLETED", "1")
    get_settings.cache_clear()
    return RedisQueue.from_settings()


def test_enqueue_dedupes_and_completes(queue: RedisQueue) -> None:
    async def run() -> None:
        try:
            assert await queue.enqueue("v1") is True
            assert await queue.enqueue("v1") is False
            job = await queue.claim()
            assert job is not None and job.job_id == "video-v1" and job.attempt == 1
            assert await queue.enqueue("v1") is False
            await queue.complete(job)
            assert (await queue.get_job("video-v1")).state == JobState.COMPLETED
            assert await queue.enqueue("v1") is True
        finally:
            await queue.stop()

    asyncio.run(run())


def test_attempts_exhaust_into_failed_history(queue: RedisQueue) -> None:
    async def run() -> None:
        try:
            await queue.enqueue("v2")
            outcomes = []
            for _ in range(3):
                job = None
                for _ in range(50):
                    job = await queue.claim()
                    if job is not None:
                        break
                    await queue.promote_due()
                    await asyncio.sleep(0.05)
                assert job is not None
                outcomes.append(await queue.fail(job, "boom"))
            assert outcomes == [JobState.DELAYED, JobState.DELAYED, JobState.FAILED]
            rec = await queue.get_job("video-v2")
            assert rec.state == JobState.FAILED and rec.attempts == 3
        finally:
            await queue.stop()

    asyncio.run(run())


def test_history_trim(queue: RedisQueue) -> None:
    async def run() -> None:
        try:
            for vid in ("a", "b"):
                await queue.enqueue(vid)
                job = await queue.claim()
                await queue.complete(job)
            assert await queue.get_job("video-a") is None
            assert (await queue.get_job("video-b")).state == JobState.COMPLETED
        finally:
            await queue.stop()

    asyncio.run(run())


def test_exhausted_redelivery_is_handed_out_then_dead_letters(
    queue: RedisQueue, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "1")
    get_settings.cache_clear()
    q = RedisQueue.from_settings()

    async def run() -> None:
        try:
            await q.enqueue("v3")
            first = await q.claim()
            assert first is not None and first.attempt == 1
            # Worker died: its lease is gone.
            await q._redis().delete(q._lock_key(first.job_id))
            assert await q.recover_stalled() == 1
            job = await q.claim()
            assert job is not None and job.attempt == 2 and job.is_exhausted
            assert (await q.get_job("video-v3")).state == JobState.ACTIVE
            assert await q.fail(job, "worker crashed on final attempt") == JobState.FAILED
            assert (await q.get_job("video-v3")).state == JobState.FAILED
        finally:
            await q.stop()

    asyncio.run(run())

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from screencast_pipeline.queue import build_queue_backend
from screencast_pipeline.queue.interfaces import ClaimedJob, JobState, backoff_ms, job_id_for
from screencast_pipeline.queue.local_queue import LocalQueue, LocalQueueConfig


def _queue(tmp_path: Path, **overrides) -> LocalQueue:
    cfg = dict(
        max_attempts=3,
        base_backoff_ms=0,
        backoff_cap_ms=0,
        keep_completed=100,
        keep_failed=50,
        concurrency=2,
        poll_interval_s=0.05,
    )
    cfg.update(overrides)
    return LocalQueue(db_path=tmp_path / "queue.db", cfg=LocalQueueConfig(**cfg))


def test_job_identity() -> None:
    assert job_id_for("abc") == "video-abc"
    with pytest.raises(ValueError):
        job_id_for("  ")


def test_backoff_is_exponential_and_capped() -> None:
    assert [backoff_ms(a, base_ms=5000, cap_ms=600_000) for a in (1, 2, 3)] == [5000, 10000, 20000]
    assert backoff_ms(20, base_ms=5000, cap_ms=600_000) == 600_000


def test_enqueue_dedupes_outstanding_jobs(tmp_path: Path) -> None:
    async def run() -> None:
        q = _queue(tmp_path)
        assert await q.enqueue("v1") is True
        assert await q.enqueue("v1") is False
        job = await q.claim()
        assert job is not None and job.job_id == "video-v1"
        # Active still counts as outstanding.
        assert await q.enqueue("v1") is False
        await q.complete(job)
        rec = await q.get_job("video-v1")
        assert rec is not None and rec.state == JobState.COMPLETED
        # Finished jobs do not block a new one; it replaces the history entry.
        assert await q.enqueue("v1") is True
        rec = await q.get_job("video-v1")
        assert rec.state == JobState.WAITING and rec.attempts == 0

    asyncio.run(run())


def test_failed_attempts_back_off_then_dead_letter(tmp_path: Path) -> None:
    async def run() -> None:
        q = _queue(tmp_path)
        await q.enqueue("v1")
        states = []
        for expected_attempt in (1, 2, 3):
            job = await q.claim()
            assert job is not None
            assert job.attempt == expected_attempt
            assert job.is_retry is (expected_attempt > 1)
            states.append(await q.fail(job, RuntimeError(f"boom {expected_attempt}")))
        assert states == [JobState.DELAYED, JobState.DELAYED, JobState.FAILED]
        assert await q.claim() is None
        rec = await q.get_job("video-v1")
        assert rec.state == JobState.FAILED
        assert rec.attempts == 3
        assert rec.last_error == "RuntimeError: boom 3"
        assert [r.job_id for r in await q.recent(JobState.FAILED)] == ["video-v1"]

    asyncio.run(run())


def test_delayed_job_waits_for_backoff(tmp_path: Path) -> None:
    async def run() -> None:
        q = _queue(tmp_path, base_backoff_ms=60_000, backoff_cap_ms=600_000)
        await q.enqueue("v1")
        job = await q.claim()
        assert await q.fail(job, "transient") == JobState.DELAYED
        rec = await q.get_job("video-v1")
        assert rec.due_ms - rec.updated_ms == 60_000
        assert await q.claim() is None
        # Still outstanding while delayed.
        assert await q.enqueue("v1") is False

    asyncio.run(run())


def test_history_is_bounded(tmp_path: Path) -> None:
    async def run() -> None:
        q = _queue(tmp_path, keep_completed=2, keep_failed=1, max_attempts=1)
        for vid in ("a", "b", "c"):
            await q.enqueue(vid)
            job = await q.claim()
            await q.complete(job)
            await asyncio.sleep(0.002)
        counts = await q.counts()
        assert counts["completed"] == 2
        assert await q.get_job("video-a") is None

        for vid in ("x", "y"):
            await q.enqueue(vid)
            job = await q.claim()
            assert await q.fail(job, "bad") == JobState.FAILED
            await asyncio.sleep(0.002)
        assert (await q.counts())["failed"] == 1
        assert await q.get_job("video-y") is not None

    asyncio.run(run())


def test_stale_token_cannot_finish(tmp_path: Path) -> None:
    async def run() -> None:
        q = _queue(tmp_path)
        await q.enqueue("v1")
        job = await q.claim()
        forged = ClaimedJob(job.job_id, job.video_id, job.attempt, job.max_attempts, token="nope")
        await q.complete(forged)
        assert (await q.get_job("video-v1")).state == JobState.ACTIVE
        await q.complete(job)
        assert (await q.get_job("video-v1")).state == JobState.COMPLETED

    asyncio.run(run())


def test_crashed_active_job_is_recovered_and_counts_an_attempt(tmp_path: Path) -> None:
    async def run() -> None:
        q1 = _queue(tmp_path, lease_ttl_ms=50)
        await q1.enqueue("v1")
        job = await q1.claim()
        assert job.attempt == 1
        # Process dies here; its lease runs out and a fresh worker picks the job back up.
        await asyncio.sleep(0.1)
        q2 = _queue(tmp_path)
        assert await q2.recover_stalled() == 1
        job2 = await q2.claim()
        assert job2 is not None
        assert job2.attempt == 2
        # The dead delivery can no longer finish the job.
        await q1.complete(job)
        assert (await q2.get_job("video-v1")).state == JobState.ACTIVE

    asyncio.run(run())


def test_live_lease_survives_other_instances_starting(tmp_path: Path) -> None:
    async def run() -> None:
        worker = _queue(tmp_path)
        await worker.enqueue("v1")
        job = await worker.claim()
        assert job is not None and job.attempt == 1

        # Status API process opening the same table.
        api = _queue(tmp_path)
        await api.start(None)
        await api.stop()
        # Second worker process starting while the first still runs the job.
        other = _queue(tmp_path)

        async def never(job: ClaimedJob) -> None:
            raise AssertionError(f"{job.job_id} delivered twice")

        await other.start(never)
        await asyncio.sleep(0.2)
        await other.stop()

        assert await worker.claim() is None
        rec = await worker.get_job("video-v1")
        assert rec.state == JobState.ACTIVE and rec.attempts == 1
        await worker.complete(job)
        assert (await worker.get_job("video-v1")).state == JobState.COMPLETED

    asyncio.run(run())


def test_lease_refresh_keeps_long_job_owned(tmp_path: Path) -> None:
    async def run() -> None:
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow(job: ClaimedJob) -> None:
            started.set()
            await release.wait()

        worker = _queue(tmp_path, lease_ttl_ms=200, lease_refresh_ms=50, concurrency=1)
        await worker.start(slow)
        await worker.enqueue("v1")
        await asyncio.wait_for(started.wait(), timeout=5)
        await asyncio.sleep(0.5)
        assert await _queue(tmp_path).recover_stalled() == 0
        release.set()
        for _ in range(100):
            if (await worker.get_job("video-v1")).state == JobState.COMPLETED:
                break
            await asyncio.sleep(0.02)
        await worker.stop(drain_timeout_s=1.0)
        assert (await worker.get_job("video-v1")).state == JobState.COMPLETED

    asyncio.run(run())


def test_redelivery_past_max_attempts_reaches_handler_then_dead_letters(tmp_path: Path) -> None:
    async def run() -> None:
        q = _queue(tmp_path, max_attempts=1, lease_ttl_ms=50)
        await q.enqueue("v1")
        await q.claim()
        await asyncio.sleep(0.1)
        q2 = _queue(tmp_path, max_attempts=1)
        await q2.recover_stalled()
        job = await q2.claim()
        assert job is not None
        assert job.attempt == 2 and job.is_exhausted
        assert await q2.fail(job, "worker crashed on final attempt") == JobState.FAILED
        assert (await q2.get_job("video-v1")).state == JobState.FAILED

    asyncio.run(run())


def test_worker_slots_retry_until_success(tmp_path: Path) -> None:
    seen: list[int] = []

    async def run() -> None:
        done = asyncio.Event()

        async def handler(job: ClaimedJob) -> None:
            seen.append(job.attempt)
            if job.attempt < 3:
                raise RuntimeError("flaky")
            done.set()

        q = _queue(tmp_path)
        await q.start(handler)
        await q.enqueue("v1")
        await asyncio.wait_for(done.wait(), timeout=10)
        for _ in range(100):
            rec = await q.get_job("video-v1")
            if rec.state == JobState.COMPLETED:
                break
            await asyncio.sleep(0.02)
        await q.stop(drain_timeout_s=1.0)
        assert seen == [1, 2, 3]
        assert rec.state == JobState.COMPLETED

    asyncio.run(run())


def test_one_job_per_video_at_a_time(tmp_path: Path) -> None:
    running: dict[str, int] = {}
    peak: dict[str, int] = {}
    finished: list[str] = []

    async def handler(job: ClaimedJob) -> None:
        running[job.video_id] = running.get(job.video_id, 0) + 1
        peak[job.video_id] = max(peak.get(job.video_id, 0), running[job.video_id])
        await asyncio.sleep(0.3)
        running[job.video_id] -= 1
        finished.append(job.video_id)

    async def run() -> None:
        q = _queue(tmp_path, concurrency=4)
        await q.start(handler)
        for vid in ("a", "a", "b", "a", "c"):
            await q.enqueue(vid)
        for _ in range(200):
            if len(finished) >= 3:
                break
            await asyncio.sleep(0.02)
        await q.stop(drain_timeout_s=1.0)

    asyncio.run(run())
    assert sorted(finished) == ["a", "b", "c"]
    assert all(v == 1 for v in peak.values())


def test_build_queue_backend_defaults_to_local(tmp_path: Path) -> None:
    q = build_queue_backend()
    assert isinstance(q, LocalQueue)
    assert q.status().mode == "local"

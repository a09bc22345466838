from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from screencast_pipeline.errors import RetryNotAllowed
from screencast_pipeline.queue.interfaces import JobState
from screencast_pipeline.queue.local_queue import LocalQueue
from screencast_pipeline.videos.models import Segment, VideoStatus
from screencast_pipeline.videos.service import VideoNotFound, delete_video, enqueue_processing, request_retry
from tests._helpers.videos import add_video, new_objects, new_store


def test_enqueue_processing_is_idempotent(tmp_path: Path) -> None:
    q = LocalQueue.from_settings()

    async def run() -> None:
        assert await enqueue_processing(q, "v1") is True
        assert await enqueue_processing(q, "v1") is False
        assert (await q.counts())["waiting"] == 1

    asyncio.run(run())


def test_retry_from_processing_while_job_outstanding(tmp_path: Path) -> None:
    store = new_store(tmp_path)
    q = LocalQueue.from_settings()
    v = add_video(store)
    store.mark_processing(v.id)

    async def run() -> None:
        await q.enqueue(v.id)
        got = await request_retry(store, q, v.id)
        assert got.status == VideoStatus.PROCESSING
        # Still one job for the video.
        assert (await q.counts())["waiting"] == 1

    asyncio.run(run())


def test_retry_from_failed_requeues(tmp_path: Path) -> None:
    store = new_store(tmp_path)
    q = LocalQueue.from_settings()
    v = add_video(store)
    store.mark_processing(v.id)
    store.mark_failed(v.id, error="boom", kind="fatal")

    async def run() -> None:
        got = await request_retry(store, q, v.id)
        assert got.status == VideoStatus.PROCESSING
        assert got.last_error is None
        rec = await q.get_job(f"video-{v.id}")
        assert rec.state == JobState.WAITING

    asyncio.run(run())


def test_retry_rejections(tmp_path: Path) -> None:
    store = new_store(tmp_path)
    q = LocalQueue.from_settings()
    v = add_video(store, owner_id="alice")

    with pytest.raises(RetryNotAllowed):
        asyncio.run(request_retry(store, q, v.id))
    with pytest.raises(VideoNotFound):
        asyncio.run(request_retry(store, q, "missing"))
    store.mark_processing(v.id)
    with pytest.raises(VideoNotFound):
        asyncio.run(request_retry(store, q, v.id, owner_id="mallory"))


def test_delete_removes_artifacts_and_rows(tmp_path: Path) -> None:
    store = new_store(tmp_path)
    objects = new_objects(tmp_path)
    v = add_video(store, screen_key="raw/s.webm", mic_key="raw/m.webm")
    for key in ("raw/s.webm", "raw/m.webm"):
        objects.put(key, b"data", "video/webm")
    store.mark_processing(v.id)
    store.mark_ready(v.id, output_key="videos/x/output.mp4", duration=1, thumb_key="videos/x/thumb.jpg")
    objects.put("videos/x/output.mp4", b"mp4", "video/mp4")
    store.save_transcript(v.id, [Segment(0.0, 1.0, "hi")], "videos/x/subtitles.vtt")

    deleted = delete_video(store, objects, v.id)

    assert deleted.id == v.id
    assert store.get(v.id) is None
    assert store.segments(v.id) == []
    for key in ("raw/s.webm", "raw/m.webm", "videos/x/output.mp4"):
        assert not objects.exists(key)
    with pytest.raises(VideoNotFound):
        delete_video(store, objects, v.id)

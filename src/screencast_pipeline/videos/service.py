"""
Web-tier seam: the operations the surrounding product calls into the pipeline with.
"""

from __future__ import annotations

from screencast_pipeline.errors import PipelineError, RetryNotAllowed
from screencast_pipeline.queue.interfaces import QueueBackend
from screencast_pipeline.storage.object_store import ObjectStore
from screencast_pipeline.utils.log import logger

from .models import Video, VideoStatus
from .store import VideoStore

RETRYABLE = frozenset({VideoStatus.PROCESSING, VideoStatus.FAILED})


class VideoNotFound(PipelineError):
    pass


def _owned(store: VideoStore, video_id: str, owner_id: str | None) -> Video:
    v = store.get(video_id)
    if v is None or (owner_id is not None and v.owner_id != owner_id):
        raise VideoNotFound(video_id)
    return v


async def enqueue_processing(queue: QueueBackend, video_id: str) -> bool:
    """
    Called once all raw tracks are uploaded. A no-op while a job for the video is outstanding.
    """
    return await queue.enqueue(video_id)


async def request_retry(
    store: VideoStore,
    queue: QueueBackend,
    video_id: str,
    *,
    owner_id: str | None = None,
) -> Video:
    """
    User-initiated retry: only from PROCESSING or FAILED; resets to PROCESSING and
    re-enqueues under the same job identity.
    """
    v = _owned(store, video_id, owner_id)
    if v.status not in RETRYABLE:
        raise RetryNotAllowed(f"cannot retry a video in status {v.status.value}")
    v = store.mark_processing(v.id, retry=True)
    admitted = await queue.enqueue(v.id)
    logger.info("retry_requested", video_id=v.id, admitted=admitted)
    return v


def delete_video(
    store: VideoStore,
    objects: ObjectStore,
    video_id: str,
    *,
    owner_id: str | None = None,
) -> Video:
    """
    Remove every artifact (raw tracks and produced files), then the row and its segments.
    """
    v = _owned(store, video_id, owner_id)
    for key in v.artifact_keys():
        try:
            objects.delete(key)
        except PipelineError as ex:
            logger.warning("artifact_delete_failed", video_id=v.id, key=key, error=str(ex))
    store.delete(v.id)
    return v

from __future__ import annotations

from pathlib import Path

from screencast_pipeline.storage.object_store import LocalObjectStore
from screencast_pipeline.videos.models import Video, VideoStatus, new_id, now_utc
from screencast_pipeline.videos.store import VideoStore


def new_store(tmp_path: Path) -> VideoStore:
    return VideoStore(tmp_path / "videos.db")


def new_objects(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects")


def add_video(
    store: VideoStore,
    *,
    status: VideoStatus = VideoStatus.UPLOADING,
    screen_key: str | None = "raw/screen.webm",
    camera_key: str | None = None,
    mic_key: str | None = None,
    owner_id: str = "u1",
) -> Video:
    ts = now_utc()
    v = Video(
        id=new_id(),
        owner_id=owner_id,
        title="demo",
        status=status,
        created_at=ts,
        updated_at=ts,
        screen_key=screen_key,
        camera_key=camera_key,
        mic_key=mic_key,
    )
    return store.create(v)

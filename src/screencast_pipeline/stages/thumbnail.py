from __future__ import annotations

from pathlib import Path

from screencast_pipeline.config import get_settings
from screencast_pipeline.errors import FatalMediaError
from screencast_pipeline.storage.object_store import ObjectStore
from screencast_pipeline.utils.ffmpeg_safe import run_ffmpeg
from screencast_pipeline.utils.io import file_size
from screencast_pipeline.utils.log import logger
from screencast_pipeline.videos.models import thumb_key


def thumbnail_offset(duration: float | None, *, preferred_s: float) -> float:
    """
    Seek offset for the still frame: a fixed early offset (skips black frames at 0),
    pulled back to the middle for clips shorter than twice the offset.
    """
    off = max(0.0, float(preferred_s))
    if duration is not None and float(duration) > 0:
        off = min(off, float(duration) / 2.0)
    return off


def build_thumbnail_argv(
    src: Path,
    dst: Path,
    *,
    offset_s: float,
    width: int,
    height: int,
    quality: int,
    ffmpeg_bin: str = "ffmpeg",
) -> list[str]:
    return [
        str(ffmpeg_bin),
        "-hide_banner",
        "-y",
        "-ss",
        f"{float(offset_s):.3f}",
        "-i",
        str(src),
        "-frames:v",
        "1",
        "-vf",
        f"scale={int(width)}:{int(height)}:force_original_aspect_ratio=decrease",
        "-q:v",
        str(int(quality)),
        str(dst),
    ]


def generate_thumbnail(
    video_id: str,
    source_key: str,
    objects: ObjectStore,
    work_dir: Path,
    *,
    local_source: Path | None = None,
    duration: float | None = None,
) -> str:
    """
    Extract one JPEG frame from the deliverable and upload it. Returns the thumbnail key.

    `local_source` lets the caller hand over the just-composed file instead of
    downloading the deliverable again.
    """
    s = get_settings()
    if local_source is not None and file_size(local_source) > 0:
        src = local_source
    else:
        src = objects.download(source_key, work_dir / "deliverable.mp4")
    dst = work_dir / "thumb.jpg"
    offset = thumbnail_offset(duration, preferred_s=float(s.thumbnail_offset_s))
    argv = build_thumbnail_argv(
        src,
        dst,
        offset_s=offset,
        width=int(s.thumbnail_width),
        height=int(s.thumbnail_height),
        quality=int(s.thumbnail_quality),
        ffmpeg_bin=str(s.ffmpeg_bin),
    )
    run_ffmpeg(argv, timeout_s=int(s.thumbnail_timeout_s))
    if file_size(dst) <= 0:
        raise FatalMediaError(f"thumbnail for {video_id} is empty (offset={offset:.3f}s)")

    key = thumb_key(video_id)
    objects.put_file(key, dst, "image/jpeg")
    logger.info("thumbnail_done", thumb_key=key, offset_s=offset, bytes=file_size(dst))
    return key

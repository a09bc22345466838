from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class VideoStatus(str, Enum):
    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


# Raw tracks uploaded by the recorder, mapped to their key column.
TRACK_COLUMNS = {
    "screen": "screen_key",
    "camera": "camera_key",
    "mic": "mic_key",
}


def now_utc() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def output_key(video_id: str) -> str:
    return f"videos/{video_id}/output.mp4"


def thumb_key(video_id: str) -> str:
    return f"videos/{video_id}/thumb.jpg"


def subtitle_key(video_id: str) -> str:
    return f"videos/{video_id}/subtitles.vtt"


@dataclass(slots=True)
class Video:
    id: str
    owner_id: str
    title: str
    status: VideoStatus
    created_at: str
    updated_at: str
    screen_key: str | None = None
    camera_key: str | None = None
    mic_key: str | None = None
    output_key: str | None = None
    thumb_key: str | None = None
    subtitle_key: str | None = None
    duration: int | None = None
    views: int = 0
    last_error: str | None = None
    error_kind: str | None = None

    @property
    def has_camera(self) -> bool:
        return bool(self.camera_key)

    @property
    def has_mic(self) -> bool:
        return bool(self.mic_key)

    def artifact_keys(self) -> list[str]:
        """
        Every object-store key owned by this video (raw tracks and produced artifacts).
        """
        keys = [
            self.screen_key,
            self.camera_key,
            self.mic_key,
            self.output_key,
            self.thumb_key,
            self.subtitle_key,
        ]
        return [k for k in keys if k]

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_row(cls, row: Any) -> Video:
        d = dict(row)
        d["status"] = VideoStatus(str(d["status"]))
        if d.get("duration") is not None:
            d["duration"] = int(d["duration"])
        d["views"] = int(d.get("views") or 0)
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in names})


@dataclass(frozen=True, slots=True)
class Segment:
    start: float
    end: float
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"start": float(self.start), "end": float(self.end), "text": self.text}

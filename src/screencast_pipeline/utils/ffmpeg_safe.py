from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from screencast_pipeline.config import get_settings
from screencast_pipeline.errors import FatalMediaError, ToolTimeoutError

_FORBIDDEN_FLAGS = {
    "-filter_script",
    "-filter_script:v",
    "-filter_script:a",
    "-stats_file",
}

# stderr lines worth keeping in structured logs when a transcode misbehaves
_DIAG_MARKERS = ("Stream #", "Stream mapping", "Error", "error", "Invalid", "does not contain", "matches no streams")


class FFmpegError(FatalMediaError):
    pass


class FFmpegTimeout(FFmpegError, ToolTimeoutError):
    pass


@dataclass(frozen=True, slots=True)
class StreamInventory:
    """
    What ffprobe found inside a media file.
    """

    video_streams: int
    audio_streams: int
    duration_s: float
    format_name: str = ""
    width: int = 0
    height: int = 0
    codecs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "video_streams": int(self.video_streams),
            "audio_streams": int(self.audio_streams),
            "duration_s": float(self.duration_s),
            "format_name": self.format_name,
            "width": int(self.width),
            "height": int(self.height),
            "codecs": list(self.codecs),
        }


def _validate_args(argv: list[str]) -> None:
    for a in argv:
        if a in _FORBIDDEN_FLAGS:
            raise FFmpegError(f"Forbidden ffmpeg/ffprobe flag: {a}")


def _tail(s: str, n: int = 4000) -> str:
    s = str(s or "")
    if len(s) <= n:
        return s
    return s[-n:]


def _decode(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    return str(v)


def diagnostic_lines(stderr: str, *, limit: int = 30) -> list[str]:
    out = [ln.strip() for ln in str(stderr or "").splitlines() if any(m in ln for m in _DIAG_MARKERS)]
    return out[:limit]


def run_ffmpeg(
    argv: list[str],
    *,
    timeout_s: int | None = None,
    tool: str = "ffmpeg",
) -> subprocess.CompletedProcess[str]:
    """
    Run an ffmpeg-family command (list argv, never a shell string).

    Always captures output so callers can log diagnostics.
    A timeout is a failure of this attempt, never a hang.
    """
    _validate_args(argv)
    try:
        return subprocess.run(
            argv,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as ex:
        raise FFmpegTimeout(f"{tool} timed out after {timeout_s}s") from ex
    except subprocess.CalledProcessError as ex:
        stderr = _decode(ex.stderr)
        raise FFmpegError(
            f"{tool} failed "
            f"(exit={ex.returncode})\n"
            f"argv={argv}\n"
            f"stderr_tail={_tail(stderr)}"
        ) from ex
    except OSError as ex:
        raise FFmpegError(f"{tool} could not be started: {ex} (argv={argv})") from ex


def ffprobe_json(path: Path, *, timeout_s: int | None = None) -> dict[str, Any]:
    s = get_settings()
    argv = [
        str(s.ffprobe_bin),
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    p = run_ffmpeg(argv, timeout_s=int(timeout_s or s.probe_timeout_s), tool="ffprobe")
    try:
        data = json.loads(p.stdout) if p.stdout else {}
    except ValueError as ex:
        raise FFmpegError(f"ffprobe returned invalid JSON: {ex}") from ex
    return data if isinstance(data, dict) else {}


def ffprobe_streams(path: Path, *, timeout_s: int | None = None) -> StreamInventory:
    """
    Count video/audio streams and read the container duration.
    """
    data = ffprobe_json(path, timeout_s=timeout_s)
    fmt = data.get("format") or {}
    streams = data.get("streams") or []

    n_video = 0
    n_audio = 0
    width = 0
    height = 0
    codecs: list[str] = []
    for st in streams:
        if not isinstance(st, dict):
            continue
        kind = str(st.get("codec_type") or "")
        codecs.append(f"{kind}:{st.get('codec_name') or '?'}")
        if kind == "video":
            # Cover art in mp4/mov shows up as a video stream; it is not a picture track.
            if (st.get("disposition") or {}).get("attached_pic"):
                continue
            n_video += 1
            if not width:
                width = int(st.get("width") or 0)
                height = int(st.get("height") or 0)
        elif kind == "audio":
            n_audio += 1

    try:
        duration_s = float(fmt.get("duration") or 0.0)
    except (TypeError, ValueError):
        duration_s = 0.0

    return StreamInventory(
        video_streams=n_video,
        audio_streams=n_audio,
        duration_s=duration_s,
        format_name=str(fmt.get("format_name") or "").strip(),
        width=width,
        height=height,
        codecs=codecs,
    )


def extract_audio_mono_16k(*, src: Path, dst: Path, timeout_s: int = 120) -> None:
    s = get_settings()
    argv = [
        str(s.ffmpeg_bin),
        "-y",
        "-i",
        str(src),
        "-vn",
        "-acodec",
        "pcm_s16le",
        "-ar",
        "16000",
        "-ac",
        "1",
        str(dst),
    ]
    run_ffmpeg(argv, timeout_s=timeout_s)

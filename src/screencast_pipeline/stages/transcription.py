from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, Protocol

from screencast_pipeline.config import get_settings
from screencast_pipeline.errors import PipelineError, ToolTimeoutError, short_error
from screencast_pipeline.ops import metrics
from screencast_pipeline.storage.object_store import ObjectStore
from screencast_pipeline.utils.ffmpeg_safe import extract_audio_mono_16k
from screencast_pipeline.utils.io import file_size
from screencast_pipeline.utils.log import logger
from screencast_pipeline.utils.subtitles import parse_engine_timestamp, render_vtt
from screencast_pipeline.videos.models import Segment, subtitle_key
from screencast_pipeline.videos.store import VideoStore


class TranscriptionError(PipelineError):
    pass


class TranscriptionEngine(Protocol):
    name: str

    def transcribe(self, wav_path: Path, work_dir: Path) -> list[Segment]: ...


def _segment_bounds(item: dict[str, Any]) -> tuple[float, float]:
    # whisper.cpp JSON carries both millisecond offsets and "HH:MM:SS,mmm" strings.
    offsets = item.get("offsets")
    if isinstance(offsets, dict) and "from" in offsets and "to" in offsets:
        return float(offsets["from"]) / 1000.0, float(offsets["to"]) / 1000.0
    ts = item.get("timestamps")
    if isinstance(ts, dict):
        return parse_engine_timestamp(str(ts.get("from"))), parse_engine_timestamp(str(ts.get("to")))
    return float(item.get("start") or 0.0), float(item.get("end") or 0.0)


def parse_whisper_cpp_json(data: dict[str, Any]) -> list[Segment]:
    items = data.get("transcription")
    if not isinstance(items, list):
        raise TranscriptionError("whisper output has no 'transcription' list")
    out: list[Segment] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        start, end = _segment_bounds(item)
        out.append(Segment(start=start, end=end, text=str(item.get("text") or "")))
    return out


def normalize_segments(segments: list[Segment]) -> list[Segment]:
    """
    Trim text, drop empty cues, clamp end >= start, order by start.
    """
    out: list[Segment] = []
    for seg in segments:
        text = str(seg.text or "").strip()
        if not text:
            continue
        start = max(0.0, float(seg.start))
        end = max(start, float(seg.end))
        out.append(Segment(start=start, end=end, text=text))
    out.sort(key=lambda s: (s.start, s.end))
    return out


class WhisperCppEngine:
    """
    whisper.cpp command-line binary, JSON output (`-oj`).
    """

    name = "whisper_cpp"

    def __init__(self, *, bin: str, model_path: Path, language: str = "auto", timeout_s: int = 600) -> None:
        self.bin = str(bin)
        self.model_path = Path(model_path)
        self.language = str(language or "auto")
        self.timeout_s = int(timeout_s)

    @classmethod
    def from_settings(cls) -> WhisperCppEngine:
        s = get_settings()
        return cls(
            bin=str(s.whisper_bin),
            model_path=Path(s.whisper_models_dir) / f"ggml-{s.whisper_model}.bin",
            language=str(s.whisper_language),
            timeout_s=int(s.transcribe_timeout_s),
        )

    def build_argv(self, wav_path: Path, out_base: Path) -> list[str]:
        return [
            self.bin,
            "-m",
            str(self.model_path),
            "-f",
            str(wav_path),
            "-oj",
            "-of",
            str(out_base),
            "-l",
            self.language,
        ]

    def transcribe(self, wav_path: Path, work_dir: Path) -> list[Segment]:
        if not self.model_path.exists():
            raise TranscriptionError(f"whisper model not found: {self.model_path}")
        out_base = work_dir / "transcript"
        argv = self.build_argv(wav_path, out_base)
        try:
            subprocess.run(argv, check=True, capture_output=True, text=True, timeout=self.timeout_s)
        except subprocess.TimeoutExpired as ex:
            raise ToolTimeoutError(f"whisper timed out after {self.timeout_s}s") from ex
        except subprocess.CalledProcessError as ex:
            tail = str(ex.stderr or "")[-2000:]
            raise TranscriptionError(f"whisper failed (exit={ex.returncode}): {tail}") from ex
        except OSError as ex:
            raise TranscriptionError(f"whisper could not be started: {ex}") from ex

        json_path = out_base.with_suffix(".json")
        try:
            data = json.loads(json_path.read_text(encoding="utf-8", errors="replace"))
        except (OSError, ValueError) as ex:
            raise TranscriptionError(f"whisper output unreadable: {ex}") from ex
        return parse_whisper_cpp_json(data if isinstance(data, dict) else {})


class FasterWhisperEngine:
    """
    In-process engine via the optional `faster-whisper` package.
    """

    name = "faster_whisper"

    def __init__(self, *, model_name: str, language: str = "auto") -> None:
        self.model_name = str(model_name)
        self.language = None if str(language or "auto").lower() == "auto" else str(language)
        self._model = None

    def _load(self):
        if self._model is None:
            try:
                from faster_whisper import WhisperModel  # type: ignore
            except ImportError as ex:  # pragma: no cover
                raise TranscriptionError(
                    "Python package 'faster-whisper' is required for WHISPER_ENGINE=faster_whisper. "
                    "Install the 'faster-whisper' extra or use WHISPER_ENGINE=whisper_cpp."
                ) from ex
            self._model = WhisperModel(self.model_name, device="auto", compute_type="int8")
        return self._model

    def transcribe(self, wav_path: Path, work_dir: Path) -> list[Segment]:
        segments, _info = self._load().transcribe(str(wav_path), language=self.language)
        return [Segment(start=float(s.start), end=float(s.end), text=str(s.text)) for s in segments]


def build_engine() -> TranscriptionEngine:
    s = get_settings()
    name = str(s.whisper_engine or "whisper_cpp").strip().lower()
    if name == "faster_whisper":
        return FasterWhisperEngine(model_name=str(s.whisper_model), language=str(s.whisper_language))
    if name != "whisper_cpp":
        raise TranscriptionError(f"unknown WHISPER_ENGINE: {name!r}")
    return WhisperCppEngine.from_settings()


def transcribe_video(
    video_id: str,
    source_key: str,
    objects: ObjectStore,
    store: VideoStore,
    work_dir: Path,
    *,
    engine: TranscriptionEngine | None = None,
    local_source: Path | None = None,
) -> int:
    """
    Transcribe the deliverable and persist segments + subtitle key together.

    Returns the number of segments saved. With zero segments nothing is written,
    so earlier segments (if any) are kept.
    """
    s = get_settings()
    eng = engine or build_engine()
    if local_source is not None and file_size(local_source) > 0:
        src = local_source
    else:
        src = objects.download(source_key, work_dir / "deliverable.mp4")

    wav = work_dir / "audio.wav"
    extract_audio_mono_16k(src=src, dst=wav, timeout_s=int(s.audio_extract_timeout_s))

    with metrics.time_stage("transcribe"):
        segments = normalize_segments(eng.transcribe(wav, work_dir))
    if not segments:
        logger.info("transcription_empty", engine=eng.name)
        return 0

    key = subtitle_key(video_id)
    objects.put(key, render_vtt(segments).encode("utf-8"), "text/vtt")
    n = store.save_transcript(video_id, segments, key)
    logger.info("transcription_done", engine=eng.name, segments=n, subtitle_key=key)
    return n


def transcribe_video_best_effort(
    video_id: str,
    source_key: str,
    objects: ObjectStore,
    store: VideoStore,
    work_dir: Path,
    *,
    engine: TranscriptionEngine | None = None,
    local_source: Path | None = None,
) -> bool:
    """
    Never raises: captions are an enhancement, playback does not depend on them.
    """
    try:
        transcribe_video(
            video_id,
            source_key,
            objects,
            store,
            work_dir,
            engine=engine,
            local_source=local_source,
        )
        return True
    except Exception as ex:
        metrics.transcription_failures.inc()
        logger.warning("transcription_failed", error=short_error(ex), error_type=type(ex).__name__)
        return False

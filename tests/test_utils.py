from __future__ import annotations

import subprocess

import pytest

from screencast_pipeline.errors import (
    EmptyInputError,
    MissingAudioStreamError,
    TransientError,
    classify_error,
    short_error,
)
from screencast_pipeline.ops import metrics
from screencast_pipeline.utils import ffmpeg_safe
from screencast_pipeline.utils.ffmpeg_safe import FFmpegError, FFmpegTimeout, diagnostic_lines, run_ffmpeg
from screencast_pipeline.utils.io import atomic_write_text, prune_stale_scratch, scratch_dir


def test_classify_error() -> None:
    assert classify_error(TransientError("s3 503")) == "transient"
    assert classify_error(ConnectionResetError()) == "transient"
    assert classify_error(MissingAudioStreamError("x")) == "fatal"
    assert classify_error(EmptyInputError("x")) == "fatal"
    assert classify_error(ValueError("x")) == "fatal"


def test_short_error_is_one_bounded_line() -> None:
    msg = short_error(RuntimeError("first line\nsecond line"))
    assert msg == "RuntimeError: first line"
    assert len(short_error(RuntimeError("x" * 2000))) == 500
    assert short_error(KeyError()) == "KeyError: KeyError"


def test_run_ffmpeg_missing_binary() -> None:
    with pytest.raises(FFmpegError) as ei:
        run_ffmpeg(["definitely-not-ffmpeg-binary", "-version"], timeout_s=5)
    assert ei.value.kind == "fatal"


def test_run_ffmpeg_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def slow(argv, **kw):
        raise subprocess.TimeoutExpired(argv, kw.get("timeout"))

    monkeypatch.setattr(ffmpeg_safe.subprocess, "run", slow)
    with pytest.raises(FFmpegTimeout) as ei:
        run_ffmpeg(["ffmpeg", "-i", "x"], timeout_s=1)
    assert classify_error(ei.value) == "fatal"


def test_run_ffmpeg_rejects_script_flags() -> None:
    with pytest.raises(FFmpegError):
        run_ffmpeg(["ffmpeg", "-filter_script", "/etc/passwd"])


def test_ffprobe_streams_skips_cover_art(monkeypatch: pytest.MonkeyPatch) -> None:
    data = {
        "format": {"duration": "12.48", "format_name": "mov,mp4"},
        "streams": [
            {"codec_type": "video", "codec_name": "h264", "width": 1280, "height": 720},
            {"codec_type": "video", "codec_name": "mjpeg", "disposition": {"attached_pic": 1}},
            {"codec_type": "audio", "codec_name": "aac"},
        ],
    }
    monkeypatch.setattr(ffmpeg_safe, "ffprobe_json", lambda path, timeout_s=None: data)
    inv = ffmpeg_safe.ffprobe_streams("x.mp4")
    assert (inv.video_streams, inv.audio_streams) == (1, 1)
    assert inv.duration_s == pytest.approx(12.48)
    assert (inv.width, inv.height) == (1280, 720)


def test_diagnostic_lines() -> None:
    stderr = "ffmpeg version 6\n  Stream #0:0: Video: h264\nStream map '2:a:0' matches no streams.\nframe=1"
    assert diagnostic_lines(stderr) == ["Stream #0:0: Video: h264", "Stream map '2:a:0' matches no streams."]


def test_scratch_dir_removed_on_error() -> None:
    with pytest.raises(RuntimeError):
        with scratch_dir("video-abc") as p:
            (p / "big.bin").write_bytes(b"0" * 10)
            raise RuntimeError("stage failed")
    assert not p.exists()


def test_prune_stale_scratch_only_touches_marked_dirs(tmp_path) -> None:
    from screencast_pipeline.config import get_settings

    root = get_settings().resolved_scratch_dir()
    foreign = root / "not-ours"
    foreign.mkdir(parents=True)
    with scratch_dir("video-1") as p:
        assert prune_stale_scratch() == 1
        assert not p.exists()
    assert foreign.exists()


def test_atomic_write_text(tmp_path) -> None:
    target = tmp_path / "a" / "b.json"
    atomic_write_text(target, "{}")
    atomic_write_text(target, '{"x": 1}')
    assert target.read_text(encoding="utf-8") == '{"x": 1}'
    assert [p.name for p in target.parent.iterdir()] == ["b.json"]


def test_time_stage_records_histogram() -> None:
    before = metrics.REGISTRY.get_sample_value("screencast_stage_seconds_count", {"stage": "unit"}) or 0.0
    with metrics.time_stage("unit") as elapsed:
        assert elapsed() >= 0.0
    after = metrics.REGISTRY.get_sample_value("screencast_stage_seconds_count", {"stage": "unit"})
    assert after == before + 1
    assert b"screencast_stage_seconds" in metrics.render_latest()

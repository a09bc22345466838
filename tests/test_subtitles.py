from __future__ import annotations

import pytest

from screencast_pipeline.utils.subtitles import format_vtt_timestamp, parse_engine_timestamp, render_vtt
from screencast_pipeline.videos.models import Segment


def test_format_vtt_timestamp() -> None:
    assert format_vtt_timestamp(0) == "00:00:00.000"
    assert format_vtt_timestamp(1.5) == "00:00:01.500"
    assert format_vtt_timestamp(3661.007) == "01:01:01.007"
    assert format_vtt_timestamp(-2) == "00:00:00.000"
    # Rounds to the nearest millisecond instead of truncating.
    assert format_vtt_timestamp(0.0996) == "00:00:00.100"


@pytest.mark.parametrize(
    ("value", "seconds"),
    [
        ("00:00:01,250", 1.25),
        ("00:01:02.500", 62.5),
        ("01:00:00,000", 3600.0),
        ("02:03.5", 123.5),
        ("00:00:07", 7.0),
    ],
)
def test_parse_engine_timestamp(value: str, seconds: float) -> None:
    assert parse_engine_timestamp(value) == pytest.approx(seconds)


def test_parse_engine_timestamp_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_engine_timestamp("soon")


def test_render_vtt() -> None:
    segs = [
        Segment(start=0.0, end=1.2, text="hello"),
        {"start": 1.2, "end": 2.0, "text": "two\n\nlines"},
    ]
    out = render_vtt(segs)
    assert out.startswith("WEBVTT\n\n")
    assert "00:00:00.000 --> 00:00:01.200\nhello\n\n" in out
    assert "00:00:01.200 --> 00:00:02.000\ntwo\nlines\n\n" in out


def test_render_vtt_empty() -> None:
    assert render_vtt([]) == "WEBVTT\n\n"

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

_TS_RE = re.compile(r"^\s*(?:(\d+):)?(\d{1,2}):(\d{1,2})(?:[.,](\d{1,3}))?\s*$")


def format_vtt_timestamp(seconds: float) -> str:
    """
    WebVTT timestamp: HH:MM:SS.mmm
    """
    total_ms = int(round(max(0.0, float(seconds)) * 1000.0))
    hh, rem = divmod(total_ms, 3_600_000)
    mm, rem = divmod(rem, 60_000)
    ss, ms = divmod(rem, 1000)
    return f"{hh:02d}:{mm:02d}:{ss:02d}.{ms:03d}"


def parse_engine_timestamp(value: str) -> float:
    """
    Parse a speech engine timestamp into seconds.

    Accepts `HH:MM:SS,mmm` (whisper.cpp JSON), `HH:MM:SS.mmm` and `MM:SS.mmm`.
    """
    m = _TS_RE.match(str(value or ""))
    if not m:
        raise ValueError(f"unrecognized timestamp: {value!r}")
    hh = int(m.group(1) or 0)
    mm = int(m.group(2))
    ss = int(m.group(3))
    frac = m.group(4) or "0"
    ms = int(frac.ljust(3, "0"))
    return hh * 3600 + mm * 60 + ss + ms / 1000.0


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def render_vtt(segments: Iterable[Any]) -> str:
    """
    Build a WebVTT document from items with `start`, `end`, `text`
    (dicts or objects).

    Notes:
    - WebVTT allows cue identifiers; we omit them.
    - Blank lines inside cue text would end the cue early; they are collapsed.
    """
    parts = ["WEBVTT\n\n"]
    for seg in segments:
        st = format_vtt_timestamp(float(_field(seg, "start") or 0.0))
        en = format_vtt_timestamp(float(_field(seg, "end") or 0.0))
        txt = "\n".join(ln for ln in str(_field(seg, "text") or "").strip().splitlines() if ln.strip())
        parts.append(f"{st} --> {en}\n{txt}\n\n")
    return "".join(parts)

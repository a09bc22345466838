from __future__ import annotations

from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from screencast_pipeline.errors import EmptyInputError, TransientError
from screencast_pipeline.storage.object_store import (
    LocalObjectStore,
    S3ObjectStore,
    _translate,
    build_object_store,
)


def test_local_store_put_get_delete(tmp_path: Path) -> None:
    st = LocalObjectStore(tmp_path / "objects")
    st.put("videos/v1/subtitles.vtt", b"WEBVTT\n\n", "text/vtt")
    assert st.exists("videos/v1/subtitles.vtt")
    assert st.get("videos/v1/subtitles.vtt").read() == b"WEBVTT\n\n"
    dest = st.download("videos/v1/subtitles.vtt", tmp_path / "dl" / "s.vtt")
    assert dest.read_bytes() == b"WEBVTT\n\n"
    st.delete("videos/v1/subtitles.vtt")
    st.delete("videos/v1/subtitles.vtt")
    assert not st.exists("videos/v1/subtitles.vtt")
    with pytest.raises(EmptyInputError):
        st.download("videos/v1/subtitles.vtt", tmp_path / "x")


def test_local_store_rejects_escaping_keys(tmp_path: Path) -> None:
    st = LocalObjectStore(tmp_path / "objects")
    with pytest.raises(ValueError):
        st.put("../../etc/passwd", b"x", "text/plain")


def test_client_errors_are_classified() -> None:
    missing = ClientError({"Error": {"Code": "NoSuchKey", "Message": "gone"}}, "GetObject")
    throttled = ClientError({"Error": {"Code": "SlowDown", "Message": "later"}}, "GetObject")
    assert isinstance(_translate(missing, op="get", key="k"), EmptyInputError)
    assert isinstance(_translate(throttled, op="get", key="k"), TransientError)
    assert _translate(throttled, op="get", key="k").kind == "transient"


def test_build_object_store(monkeypatch: pytest.MonkeyPatch) -> None:
    from screencast_pipeline.config import get_settings

    assert isinstance(build_object_store(), LocalObjectStore)
    monkeypatch.setenv("STORAGE_BACKEND", "s3")
    monkeypatch.setenv("S3_ENDPOINT", "http://minio:9000")
    get_settings.cache_clear()
    st = build_object_store()
    assert isinstance(st, S3ObjectStore)
    assert st.bucket == "screencasts"


def test_local_presign_points_at_the_object(tmp_path: Path) -> None:
    st = LocalObjectStore(tmp_path / "objects")
    url = st.presign_put("videos/v1/screen.webm", "video/webm")
    assert url.startswith("file://")
    assert url.endswith("/videos/v1/screen.webm")

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

# The structlog file handler is bound at import time; keep it out of the repo.
os.environ.setdefault("SCREENCAST_LOG_DIR", str(Path(tempfile.mkdtemp(prefix="sp_logs_"))))

from screencast_pipeline.config import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Iterator[None]:
    root = tmp_path_factory.mktemp("sp_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)
    (root / "_state").mkdir(parents=True, exist_ok=True)
    (root / "scratch").mkdir(parents=True, exist_ok=True)
    (root / "objects").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("SCREENCAST_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("SCREENCAST_STATE_DIR", str(root / "_state"))
    monkeypatch.setenv("SCREENCAST_SCRATCH_DIR", str(root / "scratch"))
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_DIR", str(root / "objects"))
    monkeypatch.setenv("QUEUE_BACKEND", "local")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("STRICT_SECRETS", raising=False)
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()

from __future__ import annotations

import os
import re
import secrets
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from screencast_pipeline.config import get_settings

from .log import logger

_SAFE_RE = re.compile(r"[^A-Za-z0-9_.-]+")
# Marker file written into every scratch dir so pruning never touches foreign dirs.
_SCRATCH_MARKER = ".screencast-scratch"


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_text(path: Path, text: str) -> None:
    ensure_dir(path.parent)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def file_size(path: Path) -> int:
    try:
        return int(path.stat().st_size)
    except OSError:
        return 0


@contextmanager
def scratch_dir(prefix: str) -> Iterator[Path]:
    """
    Private working directory for one job attempt.

    Removed on every exit path (success, exception, cancellation).
    """
    root = ensure_dir(get_settings().resolved_scratch_dir())
    safe = _SAFE_RE.sub("_", str(prefix or "job"))[:80] or "job"
    path = root / f"{safe}-{secrets.token_hex(4)}"
    path.mkdir(parents=False, exist_ok=False)
    (path / _SCRATCH_MARKER).write_text(str(os.getpid()), encoding="utf-8")
    logger.debug("scratch_created", path=str(path))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("scratch_removed", path=str(path), exists=path.exists())


def prune_stale_scratch(*, older_than_s: float = 0.0) -> int:
    """
    Remove scratch dirs left behind by a crashed worker process.

    Only called at worker start, before any job is claimed, so every marked dir is stale.
    """
    root = get_settings().resolved_scratch_dir()
    if not root.exists():
        return 0
    now = time.time()
    removed = 0
    for p in root.iterdir():
        if not p.is_dir() or not (p / _SCRATCH_MARKER).exists():
            continue
        try:
            age = now - p.stat().st_mtime
        except OSError:
            continue
        if age < float(older_than_s):
            continue
        shutil.rmtree(p, ignore_errors=True)
        removed += 1
    if removed:
        logger.info("scratch_pruned", removed=removed, root=str(root))
    return removed

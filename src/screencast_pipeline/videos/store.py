from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

from screencast_pipeline.errors import InvalidTransition
from screencast_pipeline.utils.log import logger

from .models import TRACK_COLUMNS, Segment, Video, VideoStatus, now_utc

# status -> statuses a pipeline write may move it to
_TRANSITIONS: dict[VideoStatus, set[VideoStatus]] = {
    VideoStatus.UPLOADING: {VideoStatus.PROCESSING},
    VideoStatus.PROCESSING: {VideoStatus.PROCESSING, VideoStatus.READY, VideoStatus.FAILED},
    # Leaving FAILED needs retry=True (explicit user retry or a queue re-attempt).
    VideoStatus.FAILED: {VideoStatus.PROCESSING},
    VideoStatus.READY: set(),
}

_VIDEO_COLUMNS = (
    "id",
    "owner_id",
    "title",
    "status",
    "screen_key",
    "camera_key",
    "mic_key",
    "output_key",
    "thumb_key",
    "subtitle_key",
    "duration",
    "views",
    "last_error",
    "error_kind",
    "created_at",
    "updated_at",
)
_MUTABLE = set(_VIDEO_COLUMNS) - {"id", "owner_id", "created_at", "status"}


class VideoStore:
    """
    Primary store for `Video` and `Segment` rows (one SQLite file).

    Status changes go through `transition()` only: a compare-and-set inside an
    IMMEDIATE transaction, so a stale writer can never move a video backwards.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    def _conn(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON;")
        with suppress(sqlite3.DatabaseError):
            con.execute("PRAGMA journal_mode = WAL;")
        return con

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """
        Write transaction (BEGIN IMMEDIATE takes the DB write lock up front).
        """
        with self._lock:
            con = self._conn()
            try:
                con.execute("BEGIN IMMEDIATE;")
                try:
                    yield con
                except BaseException:
                    con.execute("ROLLBACK;")
                    raise
                con.execute("COMMIT;")
            finally:
                con.close()

    def _init_schema(self) -> None:
        with self._tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS videos (
                  id TEXT PRIMARY KEY,
                  owner_id TEXT NOT NULL DEFAULT '',
                  title TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL,
                  screen_key TEXT,
                  camera_key TEXT,
                  mic_key TEXT,
                  output_key TEXT,
                  thumb_key TEXT,
                  subtitle_key TEXT,
                  duration INTEGER,
                  views INTEGER NOT NULL DEFAULT 0,
                  last_error TEXT,
                  error_kind TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS segments (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  video_id TEXT NOT NULL,
                  start REAL NOT NULL,
                  "end" REAL NOT NULL,
                  text TEXT NOT NULL,
                  FOREIGN KEY(video_id) REFERENCES videos(id) ON DELETE CASCADE
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_segments_video_start ON segments(video_id, start);")
            con.execute("CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);")

    def ping(self) -> bool:
        con = self._conn()
        try:
            con.execute("SELECT 1;").fetchone()
            return True
        finally:
            con.close()

    # --- reads ---

    def get(self, id: str) -> Video | None:
        con = self._conn()
        try:
            row = con.execute("SELECT * FROM videos WHERE id = ?;", (str(id),)).fetchone()
        finally:
            con.close()
        return Video.from_row(row) if row is not None else None

    def list(self, *, status: VideoStatus | str | None = None, limit: int = 100) -> list[Video]:
        lim = max(1, min(1000, int(limit)))
        con = self._conn()
        try:
            if status:
                rows = con.execute(
                    "SELECT * FROM videos WHERE status = ? ORDER BY created_at DESC LIMIT ?;",
                    (VideoStatus(status).value, lim),
                ).fetchall()
            else:
                rows = con.execute(
                    "SELECT * FROM videos ORDER BY created_at DESC LIMIT ?;", (lim,)
                ).fetchall()
        finally:
            con.close()
        return [Video.from_row(r) for r in rows]

    def segments(self, video_id: str) -> list[Segment]:
        con = self._conn()
        try:
            rows = con.execute(
                'SELECT start, "end", text FROM segments WHERE video_id = ? ORDER BY start ASC, id ASC;',
                (str(video_id),),
            ).fetchall()
        finally:
            con.close()
        return [Segment(start=float(r["start"]), end=float(r["end"]), text=str(r["text"])) for r in rows]

    # --- upload-flow writes ---

    def create(self, video: Video) -> Video:
        d = video.to_dict()
        cols = ", ".join(_VIDEO_COLUMNS)
        marks = ", ".join("?" for _ in _VIDEO_COLUMNS)
        with self._tx() as con:
            con.execute(f"INSERT INTO videos ({cols}) VALUES ({marks});", [d.get(c) for c in _VIDEO_COLUMNS])
        logger.info("video_created", video_id=video.id, status=video.status.value)
        return video

    def attach_track(self, id: str, track: str, key: str) -> Video | None:
        col = TRACK_COLUMNS.get(str(track))
        if col is None:
            raise ValueError(f"unknown track: {track!r}")
        with self._tx() as con:
            con.execute(
                f"UPDATE videos SET {col} = ?, updated_at = ? WHERE id = ?;",
                (str(key), now_utc(), str(id)),
            )
        return self.get(id)

    def increment_views(self, id: str) -> None:
        with self._tx() as con:
            con.execute("UPDATE videos SET views = views + 1 WHERE id = ?;", (str(id),))

    # --- pipeline writes ---

    def transition(
        self,
        id: str,
        to: VideoStatus,
        *,
        retry: bool = False,
        **fields: Any,
    ) -> Video:
        """
        Move `id` to status `to`, writing `fields` in the same statement.

        Raises InvalidTransition if the current status does not allow it.
        """
        to = VideoStatus(to)
        bad = set(fields) - _MUTABLE
        if bad:
            raise ValueError(f"not writable: {sorted(bad)}")
        with self._tx() as con:
            row = con.execute("SELECT status FROM videos WHERE id = ?;", (str(id),)).fetchone()
            if row is None:
                raise KeyError(id)
            cur = VideoStatus(str(row["status"]))
            if to not in _TRANSITIONS[cur]:
                raise InvalidTransition(f"{id}: {cur.value} -> {to.value} not allowed")
            if cur == VideoStatus.FAILED and not retry:
                raise InvalidTransition(f"{id}: leaving FAILED requires a retry")
            sets = ["status = ?", "updated_at = ?"]
            vals: list[Any] = [to.value, now_utc()]
            for k, v in fields.items():
                sets.append(f"{k} = ?")
                vals.append(v)
            vals.extend([str(id), cur.value])
            # status in WHERE makes this a compare-and-set
            cursor = con.execute(f"UPDATE videos SET {', '.join(sets)} WHERE id = ? AND status = ?;", vals)
            if cursor.rowcount != 1:
                raise InvalidTransition(f"{id}: status changed concurrently")
        logger.info("video_status", video_id=str(id), from_status=cur.value, to_status=to.value)
        out = self.get(id)
        if out is None:
            raise KeyError(id)
        return out

    def mark_processing(self, id: str, *, retry: bool = False) -> Video:
        return self.transition(id, VideoStatus.PROCESSING, retry=retry, last_error=None, error_kind=None)

    def mark_failed(self, id: str, *, error: str, kind: str) -> Video:
        return self.transition(id, VideoStatus.FAILED, last_error=str(error)[:500], error_kind=str(kind))

    def mark_ready(self, id: str, *, output_key: str, duration: int, thumb_key: str) -> Video:
        return self.transition(
            id,
            VideoStatus.READY,
            output_key=str(output_key),
            duration=int(duration),
            thumb_key=str(thumb_key),
            last_error=None,
            error_kind=None,
        )

    def save_transcript(self, video_id: str, segments: Iterable[Segment], subtitle_key: str | None) -> int:
        """
        Replace the video's segments and set `subtitle_key` in one transaction.

        With no segments the key is cleared too, so the key exists iff segments exist.
        """
        segs = list(segments)
        key = str(subtitle_key) if (segs and subtitle_key) else None
        if segs and not key:
            raise ValueError("segments require a subtitle key")
        with self._tx() as con:
            row = con.execute("SELECT id FROM videos WHERE id = ?;", (str(video_id),)).fetchone()
            if row is None:
                raise KeyError(video_id)
            con.execute("DELETE FROM segments WHERE video_id = ?;", (str(video_id),))
            con.executemany(
                'INSERT INTO segments (video_id, start, "end", text) VALUES (?, ?, ?, ?);',
                [(str(video_id), float(s.start), float(s.end), str(s.text)) for s in segs],
            )
            con.execute(
                "UPDATE videos SET subtitle_key = ?, updated_at = ? WHERE id = ?;",
                (key, now_utc(), str(video_id)),
            )
        logger.info("transcript_saved", video_id=str(video_id), segments=len(segs))
        return len(segs)

    def delete(self, id: str) -> Video | None:
        """
        Delete the row (segments cascade). Returns what was deleted so the
        caller can remove the object-store artifacts.
        """
        v = self.get(id)
        if v is None:
            return None
        with self._tx() as con:
            con.execute("DELETE FROM videos WHERE id = ?;", (str(id),))
        logger.info("video_deleted", video_id=str(id))
        return v

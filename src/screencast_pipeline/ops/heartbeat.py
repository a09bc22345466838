from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import redis.asyncio as redis

from screencast_pipeline.config import get_settings
from screencast_pipeline.utils.io import atomic_write_text
from screencast_pipeline.utils.log import logger

from . import metrics


def now_ms() -> int:
    return int(time.time() * 1000)


class HeartbeatSink(Protocol):
    async def publish(self, ts_ms: int) -> None: ...
    async def read(self) -> int | None: ...


class RedisHeartbeatSink:
    """
    `SET <key> <epoch ms> EX <ttl>`: the key disappears on its own if the worker dies.
    """

    def __init__(self, client: redis.Redis, *, key: str, ttl_s: int) -> None:
        self._client = client
        self.key = str(key)
        self.ttl_s = max(1, int(ttl_s))

    async def publish(self, ts_ms: int) -> None:
        await self._client.set(self.key, str(int(ts_ms)), ex=self.ttl_s)

    async def read(self) -> int | None:
        v = await self._client.get(self.key)
        return int(v) if v else None


class FileHeartbeatSink:
    """
    Single-host variant (no Redis): a small JSON file in the state dir.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def publish(self, ts_ms: int) -> None:
        await asyncio.to_thread(atomic_write_text, self.path, json.dumps({"ts_ms": int(ts_ms)}))

    async def read(self) -> int | None:
        try:
            raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return int(json.loads(raw).get("ts_ms"))
        except (ValueError, TypeError, AttributeError):
            return None


def build_heartbeat_sink(client: redis.Redis | None = None) -> HeartbeatSink:
    s = get_settings()
    redis_url = str(s.redis_url or "").strip()
    if client is None and redis_url:
        client = redis.Redis.from_url(redis_url, decode_responses=True)
    if client is not None:
        prefix = str(s.redis_queue_prefix or "screencast").strip().strip(":") or "screencast"
        return RedisHeartbeatSink(client, key=f"{prefix}:{s.heartbeat_key}", ttl_s=int(s.heartbeat_ttl_s))
    return FileHeartbeatSink(s.public.resolved_state_dir() / "worker_heartbeat.json")


@dataclass(frozen=True, slots=True)
class WorkerLiveness:
    up: bool
    last_seen_ms: int | None
    age_s: float | None

    def to_dict(self) -> dict:
        return {"up": self.up, "last_seen_ms": self.last_seen_ms, "age_s": self.age_s}


def evaluate_liveness(last_seen_ms: int | None, *, now: int, stale_s: float) -> WorkerLiveness:
    if last_seen_ms is None:
        return WorkerLiveness(up=False, last_seen_ms=None, age_s=None)
    age_s = max(0.0, (int(now) - int(last_seen_ms)) / 1000.0)
    return WorkerLiveness(up=age_s <= float(stale_s), last_seen_ms=int(last_seen_ms), age_s=round(age_s, 3))


async def check_worker(sink: HeartbeatSink, *, now: int | None = None, stale_s: float | None = None) -> WorkerLiveness:
    stale = float(stale_s if stale_s is not None else get_settings().heartbeat_stale_s)
    last = await sink.read()
    return evaluate_liveness(last, now=now if now is not None else now_ms(), stale_s=stale)


class HeartbeatPublisher:
    """
    Publishes worker liveness every `interval_s`. Publish failures are logged and
    counted; they never stop the worker.
    """

    def __init__(self, sink: HeartbeatSink, *, interval_s: float) -> None:
        self.sink = sink
        self.interval_s = max(0.1, float(interval_s))
        self._task: asyncio.Task | None = None

    async def beat(self) -> bool:
        try:
            await self.sink.publish(now_ms())
            return True
        except (redis.RedisError, OSError) as ex:
            metrics.heartbeat_failures.inc()
            logger.warning("heartbeat_failed", error=str(ex))
            return False

    async def _loop(self) -> None:
        while True:
            await self.beat()
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="heartbeat")
            logger.info("heartbeat_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from screencast_pipeline.queue.interfaces import QueueBackend
from screencast_pipeline.storage.object_store import ObjectStore
from screencast_pipeline.utils.log import logger
from screencast_pipeline.videos.store import VideoStore

from .heartbeat import HeartbeatSink, check_worker


@dataclass(frozen=True, slots=True)
class ServiceStatus:
    name: str
    up: bool
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"status": "up" if self.up else "down"}
        if self.detail:
            d["detail"] = self.detail
        return d


async def check_db(store: VideoStore) -> ServiceStatus:
    try:
        ok = await asyncio.to_thread(store.ping)
        return ServiceStatus("db", bool(ok))
    except Exception as ex:
        logger.warning("health_db_down", error=str(ex))
        return ServiceStatus("db", False, detail=type(ex).__name__)


async def check_storage(objects: ObjectStore) -> ServiceStatus:
    try:
        ok = await asyncio.to_thread(objects.ping)
        return ServiceStatus("storage", bool(ok))
    except Exception as ex:
        logger.warning("health_storage_down", error=str(ex))
        return ServiceStatus("storage", False, detail=type(ex).__name__)


async def check_redis(queue: QueueBackend) -> ServiceStatus:
    st = queue.status()
    if st.mode != "redis":
        return ServiceStatus("redis", True, detail="not configured")
    try:
        ok = await queue.ping()
        return ServiceStatus("redis", bool(ok))
    except Exception as ex:
        logger.warning("health_redis_down", error=str(ex))
        return ServiceStatus("redis", False, detail=type(ex).__name__)


async def check_worker_status(sink: HeartbeatSink, *, stale_s: float | None = None) -> ServiceStatus:
    try:
        live = await check_worker(sink, stale_s=stale_s)
    except Exception as ex:
        logger.warning("health_worker_unknown", error=str(ex))
        return ServiceStatus("worker", False, detail=type(ex).__name__)
    if live.age_s is None:
        return ServiceStatus("worker", False, detail="no heartbeat")
    return ServiceStatus("worker", live.up, detail=f"last heartbeat {live.age_s:.1f}s ago")


async def collect_health(
    *,
    store: VideoStore,
    objects: ObjectStore,
    queue: QueueBackend,
    heartbeat: HeartbeatSink,
    stale_s: float | None = None,
) -> dict[str, Any]:
    """
    Aggregate health: {"ok": bool, "services": {db, storage, redis, worker}}.
    """
    results = await asyncio.gather(
        check_db(store),
        check_storage(objects),
        check_redis(queue),
        check_worker_status(heartbeat, stale_s=stale_s),
    )
    return {
        "ok": all(r.up for r in results),
        "services": {r.name: r.to_dict() for r in results},
    }

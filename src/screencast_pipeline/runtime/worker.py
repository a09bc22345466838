from __future__ import annotations

import asyncio
import signal
from contextlib import suppress
from dataclasses import dataclass

from prometheus_client import start_http_server

from screencast_pipeline.config import get_settings
from screencast_pipeline.jobs.processor import VideoProcessor
from screencast_pipeline.ops import metrics
from screencast_pipeline.ops.heartbeat import HeartbeatPublisher, HeartbeatSink, build_heartbeat_sink
from screencast_pipeline.queue import QueueBackend, build_queue_backend
from screencast_pipeline.storage.object_store import ObjectStore, build_object_store
from screencast_pipeline.utils.io import prune_stale_scratch
from screencast_pipeline.utils.log import logger
from screencast_pipeline.videos.store import VideoStore


def build_video_store() -> VideoStore:
    s = get_settings()
    return VideoStore(s.public.resolved_state_dir() / str(s.videos_db_name))


@dataclass(slots=True)
class WorkerComponents:
    store: VideoStore
    objects: ObjectStore
    queue: QueueBackend
    heartbeat: HeartbeatSink


def build_components() -> WorkerComponents:
    return WorkerComponents(
        store=build_video_store(),
        objects=build_object_store(),
        queue=build_queue_backend(),
        heartbeat=build_heartbeat_sink(),
    )


class WorkerRuntime:
    """
    Worker process: queue consumers (WORKER_CONCURRENCY slots) + heartbeat.

    SIGTERM/SIGINT begin draining: no new claims, in-flight jobs get
    DRAIN_TIMEOUT_SEC to finish before they are cancelled.
    """

    def __init__(self, components: WorkerComponents | None = None) -> None:
        self.c = components or build_components()
        s = get_settings()
        self.processor = VideoProcessor(store=self.c.store, objects=self.c.objects)
        self.publisher = HeartbeatPublisher(self.c.heartbeat, interval_s=float(s.heartbeat_interval_s))
        self.drain_timeout_s = float(s.drain_timeout_sec)
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.warning("worker_drain_begin", timeout_s=self.drain_timeout_s)
        self._stop.set()

    async def run(self) -> None:
        s = get_settings()
        prune_stale_scratch()
        if int(s.worker_metrics_port) > 0:
            start_http_server(int(s.worker_metrics_port), registry=metrics.REGISTRY)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            # Not available on every platform/event loop (e.g. Windows).
            with suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop)

        await self.c.queue.start(self.processor)
        self.publisher.start()
        logger.info(
            "worker_started",
            concurrency=int(s.worker_concurrency),
            queue_mode=self.c.queue.status().mode,
            transcription=self.processor.transcription_enabled,
        )
        try:
            await self._stop.wait()
        finally:
            await self.c.queue.stop(drain_timeout_s=self.drain_timeout_s)
            await self.publisher.stop()
            logger.info("worker_stopped")


def run_worker() -> None:
    asyncio.run(WorkerRuntime().run())

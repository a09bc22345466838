from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from screencast_pipeline.errors import RetryNotAllowed
from screencast_pipeline.ops import metrics
from screencast_pipeline.ops.health import collect_health
from screencast_pipeline.queue.interfaces import JobState, job_id_for
from screencast_pipeline.runtime.worker import WorkerComponents, build_components
from screencast_pipeline.utils.log import logger
from screencast_pipeline.videos.service import VideoNotFound, request_retry


def create_app(components: WorkerComponents | None = None) -> FastAPI:
    """
    Status surface: health, metrics, video status readback and retry.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        c = components or build_components()
        app.state.c = c
        # Enqueue-only: no handler, this process never runs jobs.
        await c.queue.start(None)
        logger.info("status_api_started", queue_mode=c.queue.status().mode)
        try:
            yield
        finally:
            await c.queue.stop()

    app = FastAPI(title="screencast-pipeline", lifespan=lifespan)

    @app.get("/healthz")
    async def healthz():
        # Liveness: process is up.
        return {"ok": True}

    @app.get("/health")
    async def health(request: Request):
        c: WorkerComponents = request.app.state.c
        report = await collect_health(store=c.store, objects=c.objects, queue=c.queue, heartbeat=c.heartbeat)
        return JSONResponse(report, status_code=200 if report["ok"] else 503)

    @app.get("/metrics")
    async def prometheus_metrics():
        return Response(content=metrics.render_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/videos/{video_id}")
    async def get_video(video_id: str, request: Request):
        c: WorkerComponents = request.app.state.c
        v = c.store.get(video_id)
        if v is None:
            raise HTTPException(status_code=404, detail="video not found")
        job = await c.queue.get_job(job_id_for(video_id))
        return {
            "video": v.to_dict(),
            "segments": [seg.to_dict() for seg in c.store.segments(video_id)],
            "job": job.to_dict() if job is not None else None,
        }

    @app.post("/videos/{video_id}/retry")
    async def retry_video(video_id: str, request: Request):
        c: WorkerComponents = request.app.state.c
        try:
            v = await request_retry(c.store, c.queue, video_id)
        except VideoNotFound:
            raise HTTPException(status_code=404, detail="video not found") from None
        except RetryNotAllowed as ex:
            raise HTTPException(status_code=409, detail=str(ex)) from None
        return {"ok": True, "status": v.status.value}

    @app.get("/queue/recent")
    async def queue_recent(request: Request, state: JobState = JobState.FAILED, limit: int = 20):
        c: WorkerComponents = request.app.state.c
        items = await c.queue.recent(state, limit=max(1, min(200, int(limit))))
        return {"state": state.value, "items": [j.to_dict() for j in items], "counts": await c.queue.counts()}

    return app

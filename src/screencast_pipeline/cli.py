from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from screencast_pipeline.config import get_settings
from screencast_pipeline.errors import RetryNotAllowed
from screencast_pipeline.utils.log import set_log_level


def _echo_json(obj) -> None:
    click.echo(json.dumps(obj, indent=2, sort_keys=True, default=str))


@click.group()
@click.option("--log-level", type=str, default=None, help="Override LOG_LEVEL for this invocation")
def cli(log_level: str | None) -> None:
    """screencast-pipeline: worker, status API and operator commands."""
    if log_level:
        set_log_level(log_level)


@cli.command()
def worker() -> None:
    """Run the processing worker (queue consumers + heartbeat)."""
    from screencast_pipeline.runtime.worker import run_worker

    run_worker()


@cli.command()
@click.option("--host", type=str, default=None)
@click.option("--port", type=int, default=None)
def serve(host: str | None, port: int | None) -> None:
    """Run the status API (health, metrics, video status, retry)."""
    import uvicorn

    from screencast_pipeline.server import create_app

    s = get_settings()
    uvicorn.run(create_app(), host=host or str(s.host), port=int(port or s.port))


@cli.command()
@click.argument("video_id", type=str)
def enqueue(video_id: str) -> None:
    """Enqueue processing for VIDEO_ID (no-op while a job is outstanding)."""
    from screencast_pipeline.queue import build_queue_backend

    async def _run() -> bool:
        q = build_queue_backend()
        try:
            return await q.enqueue(video_id)
        finally:
            await q.stop()

    click.echo("enqueued" if asyncio.run(_run()) else "already queued")


@cli.command()
@click.argument("video_id", type=str)
def retry(video_id: str) -> None:
    """Retry a PROCESSING/FAILED video."""
    from screencast_pipeline.queue import build_queue_backend
    from screencast_pipeline.runtime.worker import build_video_store
    from screencast_pipeline.videos.service import VideoNotFound, request_retry

    async def _run():
        q = build_queue_backend()
        try:
            return await request_retry(build_video_store(), q, video_id)
        finally:
            await q.stop()

    try:
        v = asyncio.run(_run())
    except VideoNotFound:
        raise click.ClickException(f"video not found: {video_id}") from None
    except RetryNotAllowed as ex:
        raise click.ClickException(str(ex)) from None
    click.echo(f"{v.id} {v.status.value}")


@cli.command()
@click.argument("video_id", type=str)
def show(video_id: str) -> None:
    """Print a video's status, artifact keys and transcript segments."""
    from screencast_pipeline.runtime.worker import build_video_store

    store = build_video_store()
    v = store.get(video_id)
    if v is None:
        raise click.ClickException(f"video not found: {video_id}")
    _echo_json({"video": v.to_dict(), "segments": [s.to_dict() for s in store.segments(video_id)]})


@cli.command()
@click.option("--screen", "screen", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@click.option("--camera", "camera", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
@click.option("--mic", "mic", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
@click.option("--title", type=str, default="")
@click.option("--owner", type=str, default="local")
@click.option("--no-enqueue", is_flag=True, default=False)
def ingest(screen: Path, camera: Path | None, mic: Path | None, title: str, owner: str, no_enqueue: bool) -> None:
    """Upload local raw tracks as a new video and enqueue it (development helper)."""
    from screencast_pipeline.queue import build_queue_backend
    from screencast_pipeline.runtime.worker import build_video_store
    from screencast_pipeline.storage.object_store import build_object_store
    from screencast_pipeline.videos.models import Video, VideoStatus, new_id, now_utc

    store = build_video_store()
    objects = build_object_store()
    vid = new_id()
    ts = now_utc()
    store.create(Video(id=vid, owner_id=owner, title=title, status=VideoStatus.UPLOADING, created_at=ts, updated_at=ts))
    for track, path in (("screen", screen), ("camera", camera), ("mic", mic)):
        if path is None:
            continue
        key = f"videos/{vid}/{track}{path.suffix or '.webm'}"
        objects.put_file(key, path, "video/webm")
        store.attach_track(vid, track, key)
    click.echo(vid)
    if no_enqueue:
        return

    async def _run() -> bool:
        q = build_queue_backend()
        try:
            return await q.enqueue(vid)
        finally:
            await q.stop()

    asyncio.run(_run())


@cli.command()
def health() -> None:
    """Check db/storage/redis/worker; exit 1 if anything is down."""
    from screencast_pipeline.ops.health import collect_health
    from screencast_pipeline.runtime.worker import build_components

    c = build_components()

    async def _run():
        try:
            return await collect_health(store=c.store, objects=c.objects, queue=c.queue, heartbeat=c.heartbeat)
        finally:
            await c.queue.stop()

    report = asyncio.run(_run())
    _echo_json(report)
    if not report["ok"]:
        raise SystemExit(1)


@cli.command("config-report")
def config_report() -> None:
    """Print effective configuration (secrets shown only as SET/UNSET)."""
    from config.settings import get_safe_config_report

    _echo_json(get_safe_config_report())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

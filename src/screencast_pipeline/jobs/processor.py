from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from screencast_pipeline.config import get_settings
from screencast_pipeline.errors import AttemptsExhausted, InvalidTransition, classify_error, short_error
from screencast_pipeline.ops import metrics
from screencast_pipeline.queue.interfaces import ClaimedJob
from screencast_pipeline.stages.compose import ComposeResult, compose_video
from screencast_pipeline.stages.thumbnail import generate_thumbnail
from screencast_pipeline.stages.transcription import TranscriptionEngine, transcribe_video_best_effort
from screencast_pipeline.storage.object_store import ObjectStore
from screencast_pipeline.utils.io import scratch_dir
from screencast_pipeline.utils.log import bind_job, logger
from screencast_pipeline.videos.models import Video, VideoStatus
from screencast_pipeline.videos.store import VideoStore


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    state: str  # "ready" | "skipped"
    detail: str = ""


class VideoProcessor:
    """
    Runs one claimed job end-to-end:

      1. status -> PROCESSING
      2. compose (any error: FAILED, re-raise to the queue)
      3. thumbnail (same as compose)
      4. write output key + duration, status -> READY
      5. transcription, best-effort (never raises, never touches status)

    A re-delivery past the attempt limit skips the stages: the video is marked
    FAILED and AttemptsExhausted goes back to the queue.

    The ClaimedJob is the ownership token: the queue hands a video's job to one
    slot at a time, so the row is only written from here while the job runs.
    Blocking work (downloads, ffmpeg, uploads) runs in worker threads.
    """

    def __init__(
        self,
        *,
        store: VideoStore,
        objects: ObjectStore,
        transcription_enabled: bool | None = None,
        engine: TranscriptionEngine | None = None,
    ) -> None:
        self.store = store
        self.objects = objects
        if transcription_enabled is None:
            transcription_enabled = bool(get_settings().transcription_enabled)
        self.transcription_enabled = bool(transcription_enabled)
        self.engine = engine

    async def __call__(self, job: ClaimedJob) -> ProcessOutcome:
        return await self.process(job)

    async def process(self, job: ClaimedJob) -> ProcessOutcome:
        with bind_job(job_id=job.job_id, video_id=job.video_id):
            video = self.store.get(job.video_id)
            if video is None:
                logger.info("job_skipped", reason="video_deleted")
                return ProcessOutcome(state="skipped", detail="video_deleted")
            if video.status == VideoStatus.READY:
                # Duplicate delivery after success; READY is terminal.
                logger.info("job_skipped", reason="already_ready")
                return ProcessOutcome(state="skipped", detail="already_ready")
            if job.is_exhausted:
                self._record_exhausted(job, video)
                raise AttemptsExhausted(f"worker crashed on final attempt ({job.max_attempts} attempts)")

            try:
                video = self.store.mark_processing(video.id, retry=job.is_retry)
            except KeyError:
                logger.info("job_skipped", reason="video_deleted")
                return ProcessOutcome(state="skipped", detail="video_deleted")
            except InvalidTransition as ex:
                logger.warning("job_skipped", reason="status_refused", error=str(ex))
                return ProcessOutcome(state="skipped", detail="status_refused")

            metrics.jobs_started.inc()
            logger.info("job_started", attempt=job.attempt, max_attempts=job.max_attempts)
            with scratch_dir(job.job_id) as work_dir:
                await self._run_stages(job, video, work_dir)
            return ProcessOutcome(state="ready")

    async def _run_stages(self, job: ClaimedJob, video: Video, work_dir: Path) -> None:
        stage = "compose"
        try:
            with metrics.time_stage("compose"):
                composed: ComposeResult = await asyncio.to_thread(
                    compose_video, video, self.objects, work_dir
                )
            stage = "thumbnail"
            with metrics.time_stage("thumbnail"):
                thumb = await asyncio.to_thread(
                    generate_thumbnail,
                    video.id,
                    composed.output_key,
                    self.objects,
                    work_dir,
                    local_source=composed.local_path,
                    duration=composed.inventory.duration_s,
                )
        except Exception as ex:
            self._record_failure(job, video, stage=stage, ex=ex)
            raise

        self.store.mark_ready(
            video.id,
            output_key=composed.output_key,
            duration=composed.duration,
            thumb_key=thumb,
        )
        metrics.jobs_finished.labels(state="ready").inc()
        logger.info("job_ready", output_key=composed.output_key, duration=composed.duration, plan=composed.plan.value)

        if not self.transcription_enabled:
            logger.info("transcription_disabled")
            return
        await asyncio.to_thread(
            transcribe_video_best_effort,
            video.id,
            composed.output_key,
            self.objects,
            self.store,
            work_dir,
            engine=self.engine,
            local_source=composed.local_path,
        )

    def _record_failure(self, job: ClaimedJob, video: Video, *, stage: str, ex: Exception) -> None:
        kind = classify_error(ex)
        metrics.stage_errors.labels(stage=stage, kind=kind).inc()
        metrics.jobs_finished.labels(state="failed").inc()
        logger.warning(
            "job_stage_failed",
            stage=stage,
            kind=kind,
            attempt=job.attempt,
            last_attempt=job.is_last_attempt,
            error=short_error(ex),
        )
        try:
            self.store.mark_failed(video.id, error=short_error(ex), kind=kind)
        except (InvalidTransition, KeyError) as mark_ex:
            # Deleted or moved on while we ran; the original error still goes to the queue.
            logger.warning("job_mark_failed_skipped", error=str(mark_ex))

    def _record_exhausted(self, job: ClaimedJob, video: Video) -> None:
        """
        The previous delivery died mid-run on its final attempt, so no handler
        wrote FAILED. Do it now instead of running the stages again.
        """
        metrics.jobs_finished.labels(state="failed").inc()
        logger.warning("job_attempts_exhausted", attempt=job.attempt, max_attempts=job.max_attempts)
        if video.status == VideoStatus.FAILED:
            return
        try:
            if video.status == VideoStatus.UPLOADING:
                self.store.mark_processing(video.id, retry=True)
            self.store.mark_failed(video.id, error="worker crashed on final attempt", kind="fatal")
        except (InvalidTransition, KeyError) as ex:
            logger.warning("job_mark_failed_skipped", error=str(ex))

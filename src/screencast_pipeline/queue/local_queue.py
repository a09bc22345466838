from __future__ import annotations

import asyncio
import os
import secrets
import socket
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from sqlitedict import SqliteDict  # type: ignore

from screencast_pipeline.config import get_settings
from screencast_pipeline.errors import short_error
from screencast_pipeline.utils.log import logger

from .interfaces import (
    OUTSTANDING_STATES,
    ClaimedJob,
    JobHandler,
    JobRecord,
    JobState,
    QueueBackend,
    QueueStatus,
    backoff_ms,
    job_id_for,
)

_LEASE_FIELDS = ("lease_token", "lease_owner", "lease_until_ms")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class LocalQueueConfig:
    max_attempts: int
    base_backoff_ms: int
    backoff_cap_ms: int
    keep_completed: int
    keep_failed: int
    concurrency: int
    poll_interval_s: float
    lease_ttl_ms: int = 120_000
    lease_refresh_ms: int = 20_000


class LocalQueue(QueueBackend):
    """
    Single-host queue backend.

    Same contract as the Redis backend (deterministic job identity, attempts with
    exponential backoff, bounded history) persisted in a SqliteDict table so
    waiting/delayed jobs survive a restart.

    Notes:
    - Several processes on one host may share the table (e.g. `serve` + `worker`);
      use Redis when more than one host consumes.
    - An active job carries a lease (token, owner, expiry) refreshed while it runs.
      Only consuming instances recover active jobs, and only once the lease expired.
    """

    def __init__(self, *, db_path: Path, cfg: LocalQueueConfig) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._cfg = cfg
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._handler: JobHandler | None = None
        self._tasks: list[asyncio.Task] = []
        self._maintenance: asyncio.Task | None = None
        self._stopping = False
        self._seq = 0
        self._owner = f"{socket.gethostname()}:{os.getpid()}"

    @classmethod
    def from_settings(cls) -> LocalQueue:
        s = get_settings()
        return cls(
            db_path=s.public.resolved_state_dir() / str(s.queue_db_name),
            cfg=LocalQueueConfig(
                max_attempts=max(1, int(s.queue_max_attempts)),
                base_backoff_ms=max(0, int(s.queue_backoff_ms)),
                backoff_cap_ms=max(0, int(s.queue_backoff_cap_ms)),
                keep_completed=max(0, int(s.queue_keep_completed)),
                keep_failed=max(0, int(s.queue_keep_failed)),
                concurrency=max(1, int(s.worker_concurrency)),
                poll_interval_s=max(0.05, float(s.queue_poll_interval_s)),
                lease_ttl_ms=max(5_000, int(s.queue_lock_ttl_ms)),
                lease_refresh_ms=max(1_000, int(s.queue_lock_refresh_ms)),
            ),
        )

    def _jobs(self) -> SqliteDict:
        # Open/close per operation (avoids cross-thread SQLite handle issues)
        return SqliteDict(str(self.db_path), tablename="queue_jobs", autocommit=True)

    def status(self) -> QueueStatus:
        return QueueStatus(mode="local", ok=True, detail="local sqlite queue active")

    async def ping(self) -> bool:
        return True

    async def start(self, handler: JobHandler | None = None) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._handler = handler
        if handler is None:
            # Enqueue-only instance: never touches active jobs.
            logger.info("queue_backend_started", queue_mode="local", slots=0, recovered=0)
            return
        recovered = await self.recover_stalled()
        for i in range(self._cfg.concurrency):
            self._tasks.append(asyncio.create_task(self._slot_loop(i), name=f"queue.local.slot:{i}"))
        self._maintenance = asyncio.create_task(self._maintenance_loop(), name="queue.local.maintenance")
        logger.info(
            "queue_backend_started",
            queue_mode="local",
            slots=len(self._tasks),
            recovered=recovered,
        )

    async def stop(self, *, drain_timeout_s: float = 0.0) -> None:
        self._stopping = True
        self._wakeup.set()
        if self._maintenance is not None:
            self._maintenance.cancel()
            with suppress(asyncio.CancelledError):
                await self._maintenance
            self._maintenance = None
        if self._tasks and drain_timeout_s > 0:
            # Slots exit after their current job; wait for them before cancelling.
            _done, pending = await asyncio.wait(self._tasks, timeout=float(drain_timeout_s))
            if pending:
                # Cancelled jobs keep their lease until it expires, then get recovered.
                logger.warning("queue_drain_timeout", queue_mode="local", pending=len(pending))
        for t in self._tasks:
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def enqueue(self, video_id: str) -> bool:
        """
        Admit a job for `video_id`. Returns False (no-op) while one is outstanding.
        """
        job_id = job_id_for(video_id)
        async with self._lock:
            with self._jobs() as db:
                raw = db.get(job_id)
                if raw is not None and JobRecord.from_dict(raw).state in OUTSTANDING_STATES:
                    logger.info("queue_enqueue_deduped", queue_mode="local", job_id=job_id)
                    return False
                now = _now_ms()
                rec = JobRecord(
                    job_id=job_id,
                    video_id=str(video_id),
                    state=JobState.WAITING,
                    max_attempts=self._cfg.max_attempts,
                    created_ms=now,
                    updated_ms=now,
                    due_ms=now,
                )
                db[job_id] = self._with_seq(rec)
        self._wakeup.set()
        logger.info("queue_enqueued", queue_mode="local", job_id=job_id, video_id=str(video_id))
        return True

    def _with_seq(self, rec: JobRecord) -> dict:
        self._seq += 1
        d = rec.to_dict()
        d["seq"] = (int(rec.updated_ms) * 1000) + (self._seq % 1000)
        return d

    async def get_job(self, job_id: str) -> JobRecord | None:
        with self._jobs() as db:
            raw = db.get(str(job_id))
        return JobRecord.from_dict(raw) if raw is not None else None

    async def recent(self, state: JobState, *, limit: int = 20) -> list[JobRecord]:
        with self._jobs() as db:
            items = [JobRecord.from_dict(v) for v in db.values()]
        items = [r for r in items if r.state == JobState(state)]
        items.sort(key=lambda r: r.updated_ms, reverse=True)
        return items[: max(1, int(limit))]

    async def counts(self) -> dict[str, int]:
        out = {st.value: 0 for st in JobState}
        with self._jobs() as db:
            for v in db.values():
                out[str(v.get("state"))] = out.get(str(v.get("state")), 0) + 1
        return out


    async def claim(self) -> ClaimedJob | None:
        """
        Take the oldest due job (promoting delayed jobs whose backoff elapsed)
        and lease it to this instance.
        """
        token = secrets.token_hex(8)
        async with self._lock:
            now = _now_ms()
            with self._jobs() as db:
                best: dict | None = None
                for v in db.values():
                    st = str(v.get("state"))
                    if st == JobState.WAITING.value or (
                        st == JobState.DELAYED.value and int(v.get("due_ms") or 0) <= now
                    ):
                        if best is None or int(v.get("seq") or 0) < int(best.get("seq") or 0):
                            best = v
                if best is None:
                    return None
                rec = JobRecord.from_dict(best)
                rec.attempts += 1
                rec.state = JobState.ACTIVE
                rec.updated_ms = now
                d = rec.to_dict()
                d["seq"] = best.get("seq")
                d["lease_token"] = token
                d["lease_owner"] = self._owner
                d["lease_until_ms"] = now + int(self._cfg.lease_ttl_ms)
                db[rec.job_id] = d
        job = ClaimedJob(
            job_id=rec.job_id,
            video_id=rec.video_id,
            attempt=rec.attempts,
            max_attempts=rec.max_attempts,
            token=token,
        )
        if job.is_exhausted:
            logger.warning("queue_claimed_exhausted", queue_mode="local", job_id=job.job_id, attempt=job.attempt)
        else:
            logger.info("queue_claimed", queue_mode="local", job_id=job.job_id, attempt=job.attempt)
        return job

    def _owned(self, raw: dict | None, job: ClaimedJob) -> bool:
        return (
            raw is not None
            and str(raw.get("state")) == JobState.ACTIVE.value
            and raw.get("lease_token") == job.token
        )

    async def complete(self, job: ClaimedJob) -> None:
        async with self._lock:
            with self._jobs() as db:
                raw = db.get(job.job_id)
                if not self._owned(raw, job):
                    logger.warning("queue_lease_lost", queue_mode="local", job_id=job.job_id)
                    return
                rec = JobRecord.from_dict(raw)
                rec.state = JobState.COMPLETED
                rec.updated_ms = _now_ms()
                rec.last_error = None
                db[job.job_id] = rec.to_dict()
            self._trim(JobState.COMPLETED, self._cfg.keep_completed)
        logger.info("queue_completed", queue_mode="local", job_id=job.job_id, attempt=job.attempt)

    async def fail(self, job: ClaimedJob, error: BaseException | str) -> JobState | None:
        """
        Record a failed attempt: delay with backoff, or move to failed history when exhausted.
        """
        msg = error if isinstance(error, str) else short_error(error)
        if job.attempt >= job.max_attempts:
            return await self._finish_failed(job, error=msg)
        delay = backoff_ms(job.attempt, base_ms=self._cfg.base_backoff_ms, cap_ms=self._cfg.backoff_cap_ms)
        async with self._lock:
            with self._jobs() as db:
                raw = db.get(job.job_id)
                if not self._owned(raw, job):
                    logger.warning("queue_lease_lost", queue_mode="local", job_id=job.job_id)
                    return None
                rec = JobRecord.from_dict(raw)
                rec.state = JobState.DELAYED
                rec.updated_ms = _now_ms()
                rec.due_ms = rec.updated_ms + delay
                rec.last_error = msg
                d = rec.to_dict()
                d["seq"] = raw.get("seq")
                db[job.job_id] = d
        logger.info(
            "queue_deferred",
            queue_mode="local",
            job_id=job.job_id,
            attempt=job.attempt,
            delay_ms=delay,
        )
        return JobState.DELAYED

    async def _finish_failed(self, job: ClaimedJob, *, error: str) -> JobState | None:
        async with self._lock:
            with self._jobs() as db:
                raw = db.get(job.job_id)
                if not self._owned(raw, job):
                    logger.warning("queue_lease_lost", queue_mode="local", job_id=job.job_id)
                    return None
                rec = JobRecord.from_dict(raw)
                rec.state = JobState.FAILED
                rec.updated_ms = _now_ms()
                rec.last_error = error
                db[job.job_id] = rec.to_dict()
            self._trim(JobState.FAILED, self._cfg.keep_failed)
        logger.warning("queue_dead_letter", queue_mode="local", job_id=job.job_id, error=error)
        return JobState.FAILED

    def _trim(self, state: JobState, keep: int) -> None:
        with self._jobs() as db:
            done = [JobRecord.from_dict(v) for v in db.values() if str(v.get("state")) == state.value]
            done.sort(key=lambda r: r.updated_ms, reverse=True)
            for rec in done[max(0, int(keep)) :]:
                del db[rec.job_id]

    async def recover_stalled(self) -> int:
        """
        Put active jobs whose lease expired back at the head of the wait list.
        """
        n = 0
        async with self._lock:
            now = _now_ms()
            with self._jobs() as db:
                for k, v in list(db.items()):
                    if str(v.get("state")) != JobState.ACTIVE.value:
                        continue
                    if int(v.get("lease_until_ms") or 0) > now:
                        continue
                    d = {key: val for key, val in v.items() if key not in _LEASE_FIELDS}
                    d["state"] = JobState.WAITING.value
                    d["updated_ms"] = now
                    db[k] = d
                    n += 1
                    logger.warning(
                        "queue_stalled_recovered",
                        queue_mode="local",
                        job_id=k,
                        owner=v.get("lease_owner"),
                    )
        if n:
            self._wakeup.set()
        return n

    async def _refresh_lease(self, job: ClaimedJob) -> bool:
        async with self._lock:
            with self._jobs() as db:
                raw = db.get(job.job_id)
                if not self._owned(raw, job):
                    return False
                d = dict(raw)
                d["lease_until_ms"] = _now_ms() + int(self._cfg.lease_ttl_ms)
                db[job.job_id] = d
        return True

    async def _lease_refresh_loop(self, job: ClaimedJob) -> None:
        while True:
            await asyncio.sleep(float(self._cfg.lease_refresh_ms) / 1000.0)
            if not await self._refresh_lease(job):
                logger.warning("queue_lease_lost", queue_mode="local", job_id=job.job_id)
                return

    async def _maintenance_loop(self) -> None:
        interval = max(float(self._cfg.poll_interval_s), float(self._cfg.lease_refresh_ms) / 1000.0)
        while not self._stopping:
            await asyncio.sleep(interval)
            await self.recover_stalled()

    async def _slot_loop(self, slot: int) -> None:
        """
        One worker slot: claims and runs jobs strictly one at a time.
        """
        while not self._stopping:
            job = await self.claim()
            if job is None:
                self._wakeup.clear()
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self._cfg.poll_interval_s)
                continue
            await self._run(job, slot=slot)

    async def _run(self, job: ClaimedJob, *, slot: int) -> None:
        if self._handler is None:
            raise RuntimeError("local queue started without a handler")
        refresh = asyncio.create_task(self._lease_refresh_loop(job), name=f"queue.local.lease:{job.job_id}")
        try:
            await self._handler(job)
        except asyncio.CancelledError:
            # Forced shutdown: job stays active until its lease expires.
            raise
        except Exception as ex:
            logger.warning(
                "queue_job_failed",
                queue_mode="local",
                job_id=job.job_id,
                attempt=job.attempt,
                slot=slot,
                error=short_error(ex),
            )
            await self.fail(job, ex)
        else:
            await self.complete(job)
        finally:
            refresh.cancel()
            with suppress(asyncio.CancelledError):
                await refresh

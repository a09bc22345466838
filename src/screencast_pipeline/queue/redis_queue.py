from __future__ import annotations

import asyncio
import os
import secrets
import socket
import time
from contextlib import suppress
from dataclasses import dataclass

import redis.asyncio as redis

from screencast_pipeline.config import get_settings
from screencast_pipeline.errors import short_error
from screencast_pipeline.utils.log import logger

from .interfaces import (
    ClaimedJob,
    JobHandler,
    JobRecord,
    JobState,
    QueueBackend,
    QueueStatus,
    backoff_ms,
    job_id_for,
)

# KEYS[1]=job hash, KEYS[2]=wait list, KEYS[3]=completed list, KEYS[4]=failed list
# ARGV[1]=job_id, ARGV[2]=video_id, ARGV[3]=max_attempts, ARGV[4]=now_ms
_ENQUEUE_LUA = """
local state = redis.call('HGET', KEYS[1], 'state')
if state == 'waiting' or state == 'delayed' or state == 'active' then
  return 0
end
if state then
  redis.call('LREM', KEYS[3], 0, ARGV[1])
  redis.call('LREM', KEYS[4], 0, ARGV[1])
  redis.call('DEL', KEYS[1])
end
redis.call('HSET', KEYS[1],
  'job_id', ARGV[1], 'video_id', ARGV[2], 'state', 'waiting',
  'attempts', 0, 'max_attempts', ARGV[3],
  'created_ms', ARGV[4], 'updated_ms', ARGV[4], 'due_ms', ARGV[4], 'last_error', '')
redis.call('LPUSH', KEYS[2], ARGV[1])
return 1
"""

# KEYS[1]=wait list, KEYS[2]=active zset, KEYS[3]=job key prefix
# ARGV[1]=now_ms, ARGV[2]=lock_ttl_ms, ARGV[3]=token
_CLAIM_LUA = """
local job_id = redis.call('RPOP', KEYS[1])
if not job_id then
  return nil
end
local h = KEYS[3] .. job_id
redis.call('SET', h .. ':lock', ARGV[3], 'PX', tonumber(ARGV[2]))
local att = redis.call('HINCRBY', h, 'attempts', 1)
redis.call('HSET', h, 'state', 'active', 'updated_ms', ARGV[1])
redis.call('ZADD', KEYS[2], ARGV[1], job_id)
return {job_id, tostring(att), redis.call('HGET', h, 'video_id') or '', redis.call('HGET', h, 'max_attempts') or '1'}
"""

# Ownership-checked finish of an active job.
# KEYS[1]=job hash, KEYS[2]=lock, KEYS[3]=active zset, KEYS[4]=target (history list or delayed zset)
# ARGV[1]=token, ARGV[2]=job_id, ARGV[3]=new state, ARGV[4]=now_ms, ARGV[5]=due_ms, ARGV[6]=error, ARGV[7]=keep,
# ARGV[8]=job key prefix
_FINISH_LUA = """
if redis.call('GET', KEYS[2]) ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[2])
redis.call('ZREM', KEYS[3], ARGV[2])
redis.call('HSET', KEYS[1], 'state', ARGV[3], 'updated_ms', ARGV[4], 'due_ms', ARGV[5], 'last_error', ARGV[6])
if ARGV[3] == 'delayed' then
  redis.call('ZADD', KEYS[4], tonumber(ARGV[5]), ARGV[2])
  return 1
end
redis.call('LPUSH', KEYS[4], ARGV[2])
local keep = tonumber(ARGV[7])
local old = redis.call('LRANGE', KEYS[4], keep, -1)
for _, jid in ipairs(old) do
  local st = redis.call('HGET', ARGV[8] .. jid, 'state')
  if st == ARGV[3] then
    redis.call('DEL', ARGV[8] .. jid)
  end
end
if keep <= 0 then
  redis.call('DEL', KEYS[4])
else
  redis.call('LTRIM', KEYS[4], 0, keep - 1)
end
return 1
"""

# KEYS[1]=delayed zset, KEYS[2]=wait list, KEYS[3]=job key prefix; ARGV[1]=now_ms
_PROMOTE_LUA = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 50)
for _, jid in ipairs(due) do
  redis.call('ZREM', KEYS[1], jid)
  redis.call('HSET', KEYS[3] .. jid, 'state', 'waiting', 'updated_ms', ARGV[1])
  redis.call('LPUSH', KEYS[2], jid)
end
return #due
"""

# Active jobs whose lease expired go back to the head of the wait list.
# KEYS[1]=active zset, KEYS[2]=wait list, KEYS[3]=job key prefix; ARGV[1]=now_ms
_STALLED_LUA = """
local ids = redis.call('ZRANGE', KEYS[1], 0, -1)
local n = 0
for _, jid in ipairs(ids) do
  if redis.call('EXISTS', KEYS[3] .. jid .. ':lock') == 0 then
    redis.call('ZREM', KEYS[1], jid)
    redis.call('HSET', KEYS[3] .. jid, 'state', 'waiting', 'updated_ms', ARGV[1])
    redis.call('RPUSH', KEYS[2], jid)
    n = n + 1
  end
end
return n
"""

_REFRESH_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
  return 0
end
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class RedisQueueConfig:
    prefix: str
    consumer: str
    lock_ttl_ms: int
    lock_refresh_ms: int
    max_attempts: int
    base_backoff_ms: int
    backoff_cap_ms: int
    keep_completed: int
    keep_failed: int
    concurrency: int
    poll_interval_s: float


class RedisQueue(QueueBackend):
    """
    Durable queue backend (Redis).

    Redis is the source of truth for:
    - queue state (waiting/delayed/active) and bounded completed/failed history
    - per-job leases (a lock key refreshed while the job runs)
    - attempt counters

    Every state change is a single Lua script, so admit-if-absent and
    claim-and-lease are atomic across worker hosts.
    """

    def __init__(self, *, redis_url: str, cfg: RedisQueueConfig, client: redis.Redis | None = None) -> None:
        self._redis_url = str(redis_url or "").strip()
        self._cfg = cfg
        self._client = client
        self._handler: JobHandler | None = None
        self._tasks: list[asyncio.Task] = []
        self._slots: list[asyncio.Task] = []
        self._stopping = False
        self._healthy = False
        self._scripts: dict[str, object] = {}

    @classmethod
    def from_settings(cls, *, client: redis.Redis | None = None) -> RedisQueue:
        s = get_settings()
        prefix = str(s.redis_queue_prefix or "screencast").strip().strip(":") or "screencast"
        name = str(s.queue_name or "video-processing").strip().strip(":")
        return cls(
            redis_url=str(s.redis_url or ""),
            client=client,
            cfg=RedisQueueConfig(
                prefix=f"{prefix}:{name}",
                consumer=_consumer_id(),
                lock_ttl_ms=max(5_000, int(s.queue_lock_ttl_ms)),
                lock_refresh_ms=max(1_000, int(s.queue_lock_refresh_ms)),
                max_attempts=max(1, int(s.queue_max_attempts)),
                base_backoff_ms=max(0, int(s.queue_backoff_ms)),
                backoff_cap_ms=max(0, int(s.queue_backoff_cap_ms)),
                keep_completed=max(0, int(s.queue_keep_completed)),
                keep_failed=max(0, int(s.queue_keep_failed)),
                concurrency=max(1, int(s.worker_concurrency)),
                poll_interval_s=max(0.05, float(s.queue_poll_interval_s)),
            ),
        )

    def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def _script(self, name: str, body: str):
        sc = self._scripts.get(name)
        if sc is None:
            sc = self._redis().register_script(body)
            self._scripts[name] = sc
        return sc

    def status(self) -> QueueStatus:
        if self._healthy:
            return QueueStatus(mode="redis", ok=True, detail="redis queue active")
        return QueueStatus(mode="redis", ok=False, detail="redis unavailable")

    async def ping(self) -> bool:
        try:
            self._healthy = bool(await self._redis().ping())
        except (redis.RedisError, OSError) as ex:
            logger.warning("queue_ping_failed", queue_mode="redis", error=str(ex))
            self._healthy = False
        return self._healthy

    async def start(self, handler: JobHandler | None = None) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._handler = handler
        await self.ping()

        self._tasks.append(asyncio.create_task(self._health_loop(), name="queue.redis.health"))
        self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="queue.redis.maintenance"))
        if handler is not None:
            for i in range(self._cfg.concurrency):
                self._slots.append(asyncio.create_task(self._slot_loop(i), name=f"queue.redis.slot:{i}"))

        logger.info(
            "queue_backend_started",
            queue_mode="redis",
            prefix=self._cfg.prefix,
            consumer=self._cfg.consumer,
            slots=len(self._slots),
        )

    async def stop(self, *, drain_timeout_s: float = 0.0) -> None:
        self._stopping = True
        if self._slots and drain_timeout_s > 0:
            _done, pending = await asyncio.wait(self._slots, timeout=float(drain_timeout_s))
            if pending:
                # Unfinished jobs keep their lease until TTL, then stalled recovery re-queues them.
                logger.warning("queue_drain_timeout", queue_mode="redis", pending=len(pending))
        tasks = self._slots + self._tasks
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._slots = []
        self._tasks = []
        if self._client is not None:
            with suppress(Exception):
                await self._client.aclose()
            self._client = None
            self._scripts.clear()

    async def enqueue(self, video_id: str) -> bool:
        job_id = job_id_for(video_id)
        added = await self._script("enqueue", _ENQUEUE_LUA)(
            keys=[self._job_key(job_id), self._wait_key(), self._completed_key(), self._failed_key()],
            args=[job_id, str(video_id), str(self._cfg.max_attempts), str(_now_ms())],
        )
        if int(added or 0):
            logger.info("queue_enqueued", queue_mode="redis", job_id=job_id, video_id=str(video_id))
            return True
        logger.info("queue_enqueue_deduped", queue_mode="redis", job_id=job_id)
        return False

    async def get_job(self, job_id: str) -> JobRecord | None:
        h = await self._redis().hgetall(self._job_key(str(job_id)))
        if not h:
            return None
        return JobRecord.from_dict(h)

    async def recent(self, state: JobState, *, limit: int = 20) -> list[JobRecord]:
        st = JobState(state)
        r = self._redis()
        lim = max(1, int(limit))
        if st in {JobState.COMPLETED, JobState.FAILED}:
            key = self._completed_key() if st == JobState.COMPLETED else self._failed_key()
            ids = await r.lrange(key, 0, lim - 1)
        elif st == JobState.WAITING:
            ids = list(reversed(await r.lrange(self._wait_key(), -lim, -1)))
        elif st == JobState.DELAYED:
            ids = await r.zrange(self._delayed_key(), 0, lim - 1)
        else:
            ids = await r.zrange(self._active_key(), 0, lim - 1)
        out: list[JobRecord] = []
        for jid in ids:
            rec = await self.get_job(str(jid))
            if rec is not None:
                out.append(rec)
        return out

    async def counts(self) -> dict[str, int]:
        r = self._redis()
        return {
            JobState.WAITING.value: int(await r.llen(self._wait_key()) or 0),
            JobState.DELAYED.value: int(await r.zcard(self._delayed_key()) or 0),
            JobState.ACTIVE.value: int(await r.zcard(self._active_key()) or 0),
            JobState.COMPLETED.value: int(await r.llen(self._completed_key()) or 0),
            JobState.FAILED.value: int(await r.llen(self._failed_key()) or 0),
        }

    async def claim(self) -> ClaimedJob | None:
        token = _lock_token()
        res = await self._script("claim", _CLAIM_LUA)(
            keys=[self._wait_key(), self._active_key(), self._job_key_prefix()],
            args=[str(_now_ms()), str(self._cfg.lock_ttl_ms), token],
        )
        if not res:
            return None
        job_id, attempt, video_id, max_attempts = (str(x) for x in res)
        job = ClaimedJob(
            job_id=job_id,
            video_id=video_id,
            attempt=int(attempt),
            max_attempts=int(max_attempts or self._cfg.max_attempts),
            token=token,
        )
        if job.is_exhausted:
            # Re-delivered by stalled recovery after its last attempt; the handler
            # records the failure and fail() moves it to failed history.
            logger.warning("queue_claimed_exhausted", queue_mode="redis", job_id=job.job_id, attempt=job.attempt)
        else:
            logger.info("queue_claimed", queue_mode="redis", job_id=job.job_id, attempt=job.attempt)
        return job

    async def complete(self, job: ClaimedJob) -> None:
        if await self._finish(job, JobState.COMPLETED):
            logger.info("queue_completed", queue_mode="redis", job_id=job.job_id, attempt=job.attempt)

    async def fail(self, job: ClaimedJob, error: BaseException | str) -> JobState | None:
        msg = error if isinstance(error, str) else short_error(error)
        if job.attempt >= job.max_attempts:
            if await self._finish(job, JobState.FAILED, error=msg):
                logger.warning("queue_dead_letter", queue_mode="redis", job_id=job.job_id, error=msg)
                return JobState.FAILED
            return None
        delay = backoff_ms(job.attempt, base_ms=self._cfg.base_backoff_ms, cap_ms=self._cfg.backoff_cap_ms)
        if await self._finish(job, JobState.DELAYED, error=msg, due_ms=_now_ms() + delay):
            logger.info(
                "queue_deferred",
                queue_mode="redis",
                job_id=job.job_id,
                attempt=job.attempt,
                delay_ms=delay,
            )
            return JobState.DELAYED
        return None

    async def _finish(self, job: ClaimedJob, state: JobState, *, error: str = "", due_ms: int = 0) -> bool:
        if state == JobState.DELAYED:
            target, keep = self._delayed_key(), 0
        elif state == JobState.COMPLETED:
            target, keep = self._completed_key(), self._cfg.keep_completed
        else:
            target, keep = self._failed_key(), self._cfg.keep_failed
        ok = await self._script("finish", _FINISH_LUA)(
            keys=[self._job_key(job.job_id), self._lock_key(job.job_id), self._active_key(), target],
            args=[
                job.token,
                job.job_id,
                state.value,
                str(_now_ms()),
                str(int(due_ms)),
                str(error or ""),
                str(int(keep)),
                self._job_key_prefix(),
            ],
        )
        if not int(ok or 0):
            logger.warning("queue_lease_lost", queue_mode="redis", job_id=job.job_id, state=state.value)
            return False
        return True

    async def _health_loop(self) -> None:
        while not self._stopping:
            await self.ping()
            await asyncio.sleep(2.0)

    async def promote_due(self) -> int:
        """Move delayed jobs whose backoff has elapsed back onto the wait list."""
        keys = [self._delayed_key(), self._wait_key(), self._job_key_prefix()]
        return int(await self._script("promote", _PROMOTE_LUA)(keys=keys, args=[str(_now_ms())]) or 0)

    async def recover_stalled(self) -> int:
        keys = [self._active_key(), self._wait_key(), self._job_key_prefix()]
        return int(await self._script("stalled", _STALLED_LUA)(keys=keys, args=[str(_now_ms())]) or 0)

    async def _maintenance_loop(self) -> None:
        """
        Promote due delayed jobs and recover stalled (lease-expired) active jobs.
        """
        while not self._stopping:
            try:
                moved = await self.promote_due()
                stalled = await self.recover_stalled()
                if stalled:
                    logger.warning("queue_stalled_recovered", queue_mode="redis", count=stalled)
                await asyncio.sleep(0.25 if moved else 1.0)
            except asyncio.CancelledError:
                raise
            except (redis.RedisError, OSError) as ex:
                logger.warning("queue_maintenance_error", queue_mode="redis", error=str(ex))
                await asyncio.sleep(2.0)

    async def _slot_loop(self, slot: int) -> None:
        while not self._stopping:
            try:
                job = await self.claim()
            except asyncio.CancelledError:
                raise
            except (redis.RedisError, OSError) as ex:
                logger.warning("queue_consume_error", queue_mode="redis", slot=slot, error=str(ex))
                await asyncio.sleep(1.0)
                continue
            if job is None:
                await asyncio.sleep(self._cfg.poll_interval_s)
                continue
            await self._run(job, slot=slot)

    async def _run(self, job: ClaimedJob, *, slot: int) -> None:
        if self._handler is None:
            raise RuntimeError("redis queue started without a handler")
        refresh = asyncio.create_task(
            self._lock_refresh_loop(job), name=f"queue.redis.lock_refresh:{job.job_id}"
        )
        try:
            await self._handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            logger.warning(
                "queue_job_failed",
                queue_mode="redis",
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

    async def _lock_refresh_loop(self, job: ClaimedJob) -> None:
        key = self._lock_key(job.job_id)
        script = self._script("refresh", _REFRESH_LUA)
        while True:
            await asyncio.sleep(float(self._cfg.lock_refresh_ms) / 1000.0)
            try:
                # Only refresh if the token still matches.
                ok = await script(keys=[key], args=[job.token, str(int(self._cfg.lock_ttl_ms))])
                if not int(ok or 0):
                    logger.warning("queue_lease_lost", queue_mode="redis", job_id=job.job_id)
                    return
            except (redis.RedisError, OSError) as ex:
                logger.warning("queue_lock_refresh_failed", queue_mode="redis", job_id=job.job_id, error=str(ex))

    def _wait_key(self) -> str:
        return f"{self._cfg.prefix}:wait"

    def _delayed_key(self) -> str:
        return f"{self._cfg.prefix}:delayed"

    def _active_key(self) -> str:
        return f"{self._cfg.prefix}:active"

    def _completed_key(self) -> str:
        return f"{self._cfg.prefix}:completed"

    def _failed_key(self) -> str:
        return f"{self._cfg.prefix}:failed"

    def _job_key_prefix(self) -> str:
        return f"{self._cfg.prefix}:job:"

    def _job_key(self, job_id: str) -> str:
        return f"{self._cfg.prefix}:job:{job_id}"

    def _lock_key(self, job_id: str) -> str:
        return f"{self._cfg.prefix}:job:{job_id}:lock"


def _consumer_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _lock_token() -> str:
    return f"{_consumer_id()}:{secrets.token_hex(8)}"

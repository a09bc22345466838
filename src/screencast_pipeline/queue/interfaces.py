from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

JOB_ID_PREFIX = "video-"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# A job in one of these states blocks admitting another job for the same video.
OUTSTANDING_STATES = frozenset({JobState.WAITING, JobState.DELAYED, JobState.ACTIVE})


def job_id_for(video_id: str) -> str:
    """
    Deterministic job identity: the idempotency key for per-video exclusivity.
    """
    vid = str(video_id or "").strip()
    if not vid:
        raise ValueError("video_id is required")
    return f"{JOB_ID_PREFIX}{vid}"


def backoff_ms(attempt: int, *, base_ms: int, cap_ms: int) -> int:
    """
    Delay before the next attempt after `attempt` failed (1-based): base, 2*base, 4*base, ...
    """
    att = max(1, int(attempt))
    return int(min(int(cap_ms), int(base_ms) * (2 ** (att - 1))))


@dataclass(slots=True)
class JobRecord:
    job_id: str
    video_id: str
    state: JobState
    attempts: int = 0
    max_attempts: int = 3
    created_ms: int = 0
    updated_ms: int = 0
    due_ms: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "video_id": self.video_id,
            "state": self.state.value,
            "attempts": int(self.attempts),
            "max_attempts": int(self.max_attempts),
            "created_ms": int(self.created_ms),
            "updated_ms": int(self.updated_ms),
            "due_ms": int(self.due_ms),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> JobRecord:
        return cls(
            job_id=str(d.get("job_id") or ""),
            video_id=str(d.get("video_id") or ""),
            state=JobState(str(d.get("state") or JobState.WAITING.value)),
            attempts=int(d.get("attempts") or 0),
            max_attempts=int(d.get("max_attempts") or 3),
            created_ms=int(d.get("created_ms") or 0),
            updated_ms=int(d.get("updated_ms") or 0),
            due_ms=int(d.get("due_ms") or 0),
            last_error=(str(d["last_error"]) if d.get("last_error") else None),
        )


@dataclass(frozen=True, slots=True)
class ClaimedJob:
    """
    Ownership token for one delivery of a job.

    Only the holder of a ClaimedJob may write the video's row.
    """

    job_id: str
    video_id: str
    attempt: int
    max_attempts: int
    token: str = field(default="", repr=False)

    @property
    def is_retry(self) -> bool:
        return int(self.attempt) > 1

    @property
    def is_last_attempt(self) -> bool:
        return int(self.attempt) >= int(self.max_attempts)

    @property
    def is_exhausted(self) -> bool:
        # Re-delivered after the worker died during its final attempt.
        return int(self.attempt) > int(self.max_attempts)


@dataclass(frozen=True, slots=True)
class QueueStatus:
    mode: str  # "redis" | "local"
    ok: bool
    detail: str


JobHandler = Callable[[ClaimedJob], Awaitable[Any]]


class QueueBackend(Protocol):
    """
    Single canonical queue interface.

    - The video store remains the source of truth for video status.
    - The queue owns delivery, attempts/backoff and bounded history.
    - An exhausted re-delivery still reaches the handler, which records the
      failure on the video; the queue then moves it to failed history.
    """

    def status(self) -> QueueStatus: ...

    async def start(self, handler: JobHandler | None = None) -> None: ...
    async def stop(self, *, drain_timeout_s: float = 0.0) -> None: ...

    async def enqueue(self, video_id: str) -> bool: ...

    async def get_job(self, job_id: str) -> JobRecord | None: ...
    async def recent(self, state: JobState, *, limit: int = 20) -> list[JobRecord]: ...
    async def counts(self) -> dict[str, int]: ...
    async def ping(self) -> bool: ...

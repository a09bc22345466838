"""
Failure taxonomy for the processing pipeline.

Three families:
  - transient: storage/network unavailability; the queue's backoff retries it
  - fatal: data-correctness problems (missing audio, corrupt/empty input, tool timeout);
    still retried up to the attempt limit but surfaced to the user as needing a manual retry
  - best-effort: transcription problems; never escalate (handled inside the stage)
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    kind = "fatal"


class TransientError(PipelineError):
    kind = "transient"


class FatalMediaError(PipelineError):
    kind = "fatal"


class EmptyInputError(FatalMediaError):
    pass


class MissingAudioStreamError(FatalMediaError):
    pass


class MissingVideoStreamError(FatalMediaError):
    pass


class ToolTimeoutError(FatalMediaError):
    pass


class AttemptsExhausted(PipelineError):
    kind = "fatal"


class RetryNotAllowed(PipelineError):
    pass


class InvalidTransition(PipelineError):
    pass


def classify_error(exc: BaseException) -> str:
    """
    Return "transient" or "fatal" for an exception raised by a stage.

    Unknown exceptions are treated as fatal so the user sees them.
    """
    if isinstance(exc, PipelineError):
        return str(exc.kind)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return "transient"
    return "fatal"


def short_error(exc: BaseException, *, limit: int = 500) -> str:
    """
    One-line, bounded error message suitable for `Video.last_error`.
    """
    msg = str(exc).strip().splitlines()
    first = msg[0] if msg else type(exc).__name__
    out = f"{type(exc).__name__}: {first}"
    return out[:limit]

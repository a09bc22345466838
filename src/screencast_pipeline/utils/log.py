from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from screencast_pipeline.config import get_settings

job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
video_id_var: ContextVar[str | None] = ContextVar("video_id", default=None)

REDACTED = "***REDACTED***"


@contextmanager
def bind_job(*, job_id: str | None, video_id: str | None) -> Iterator[None]:
    """
    Bind job/video identity to every log event emitted inside the block.
    """
    jt = job_id_var.set(job_id)
    vt = video_id_var.set(video_id)
    try:
        yield
    finally:
        job_id_var.reset(jt)
        video_id_var.reset(vt)


def _log_path() -> Path:
    s = get_settings()
    return Path(s.log_dir) / "worker.log"


_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")
_URL_CRED_RE = re.compile(r"(?i)([a-z][a-z0-9+\-.]*://)([^:@/\s]+):([^@/\s]+)@")
_AWS_SIG_RE = re.compile(r"(?i)(X-Amz-(?:Signature|Credential|Security-Token)=)([^&\s]+)")
_KV_RE = re.compile(
    r"(?i)\b(s3_access_key|s3_secret_key|aws_secret_access_key|redis_url|secret|password|token)\b\s*=\s*([^\s,;&]+)"
)


def _secret_literals() -> list[str]:
    """
    Return configured secret values that must never appear in logs.
    Best-effort (safe even if settings aren't fully initialized yet).
    """
    vals: list[str] = []
    with suppress(Exception):
        sec = get_settings().secret
        for name in ("s3_access_key", "s3_secret_key"):
            v = getattr(sec, name, None)
            if v is not None and hasattr(v, "get_secret_value"):
                raw = str(v.get_secret_value() or "")
                if raw:
                    vals.append(raw)

    # De-dupe and ignore tiny values to avoid over-redaction.
    out: list[str] = []
    for v in vals:
        if len(v) < 8 or v in out:
            continue
        out.append(v)
    return out


def redact_str(s: str) -> str:
    # Exact-value replacement first (covers keys that don't look like tokens)
    for lit in _secret_literals():
        if lit in s:
            s = s.replace(lit, REDACTED)
    s = _URL_CRED_RE.sub(rf"\1{REDACTED}@", s)
    s = _AWS_SIG_RE.sub(rf"\1{REDACTED}", s)
    s = _BEARER_RE.sub(f"Bearer {REDACTED}", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}={REDACTED}", s)
    return s


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in list(event_dict.items()):
        if isinstance(v, str):
            event_dict[k] = redact_str(v)
    return event_dict


def add_contextvars(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    jid = job_id_var.get()
    vid = video_id_var.get()
    if jid:
        event_dict.setdefault("job_id", jid)
    if vid:
        event_dict.setdefault("video_id", vid)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def _configure_structlog() -> structlog.stdlib.BoundLogger:
    s = get_settings()
    level = str(s.log_level).upper()

    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicates if re-imported
    if getattr(root, "_screencast_structlog_configured", False):
        return structlog.get_logger("screencast_pipeline")

    foreign_pre_chain = [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        add_contextvars,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=foreign_pre_chain,
    )

    handlers: list[logging.Handler] = []
    log_path = _log_path()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=str(log_path),
            maxBytes=int(s.log_max_bytes),
            backupCount=int(s.log_backup_count),
            encoding="utf-8",
        )
        handlers.append(file_handler)
    except OSError as ex:
        # Read-only log dir: keep stdout logging only.
        print(f"log file disabled: {ex}", file=sys.stderr)

    handlers.append(logging.StreamHandler(sys.stdout))
    for h in handlers:
        h.setFormatter(formatter)

    root.handlers.clear()
    for h in handlers:
        root.addHandler(h)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.stdlib.add_log_level,
            add_contextvars,
            redact_event,
            structlog.processors.format_exc_info,
            rename_event_to_msg,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root._screencast_structlog_configured = True
    return structlog.get_logger("screencast_pipeline")


logger = _configure_structlog()


def set_log_level(level: str) -> None:
    """
    Runtime log level override (CLI convenience).
    Does not change handlers/formatters; only raises/lowers filtering level.
    """
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        h.setLevel(lvl)

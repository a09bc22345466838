from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig

_DEFAULT_S3_CREDENTIAL = "minioadmin"


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)


def _is_production_env() -> bool:
    env = str(os.environ.get("ENV") or os.environ.get("APP_ENV") or "").strip().lower()
    return env in {"prod", "production"}


def _strict_secrets() -> bool:
    return bool(int(os.environ.get("STRICT_SECRETS", "0") or "0"))


def _secret_value(secret: SecretStr | None) -> str:
    try:
        return secret.get_secret_value() if secret else ""
    except Exception:
        return ""


def _validate_secrets(s: Settings) -> None:
    """
    Hard-fail only when explicitly requested (STRICT_SECRETS=1) or in production.

    Local development keeps working with the MinIO default credentials.
    """
    strict = _strict_secrets()
    prod = _is_production_env()

    weak: list[str] = []
    if str(s.public.storage_backend or "s3").strip().lower() == "s3":
        if _secret_value(s.secret.s3_access_key) in {"", _DEFAULT_S3_CREDENTIAL}:
            weak.append("S3_ACCESS_KEY")
        if _secret_value(s.secret.s3_secret_key) in {"", _DEFAULT_S3_CREDENTIAL}:
            weak.append("S3_SECRET_KEY")

    if weak:
        if prod or strict:
            raise ConfigError(
                "Unsafe storage credentials detected: "
                + ", ".join(sorted(set(weak)))
                + ". Set them via environment variables or `.env.secrets`."
            )
        logging.getLogger("screencast_pipeline").warning(
            "weak_secrets_detected",
            extra={"weak": sorted(set(weak)), "strict_secrets": False, "production": prod},
        )

    backend = str(s.public.queue_backend or "auto").strip().lower()
    if backend not in {"auto", "redis", "local"}:
        raise ConfigError(f"QUEUE_BACKEND must be auto|redis|local (got {backend!r})")
    if backend == "redis" and not str(s.secret.redis_url or "").strip():
        raise ConfigError("QUEUE_BACKEND=redis requires REDIS_URL")
    if int(s.public.queue_max_attempts) < 1:
        raise ConfigError("QUEUE_MAX_ATTEMPTS must be >= 1")
    if int(s.public.worker_concurrency) < 1:
        raise ConfigError("WORKER_CONCURRENCY must be >= 1")


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(type(s.secret).model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    return {
        "strict_secrets": _strict_secrets(),
        "public": pub_s,
        "secrets": sec,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    public = PublicConfig()
    secret = SecretConfig()
    s = Settings(public=public, secret=secret)
    _validate_secrets(s)
    return s

from __future__ import annotations

import io
import shutil
from pathlib import Path
from typing import BinaryIO, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from screencast_pipeline.config import get_settings
from screencast_pipeline.errors import EmptyInputError, TransientError
from screencast_pipeline.utils.io import ensure_dir
from screencast_pipeline.utils.log import logger

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class ObjectStore(Protocol):
    """
    Object Store Gateway as consumed by the pipeline.

    Keys are opaque strings (`videos/{id}/output.mp4`, ...).
    """

    def get(self, key: str) -> BinaryIO: ...
    def download(self, key: str, dest: Path) -> Path: ...
    def put(self, key: str, data: bytes, content_type: str) -> None: ...
    def put_file(self, key: str, path: Path, content_type: str) -> None: ...
    def delete(self, key: str) -> None: ...
    def exists(self, key: str) -> bool: ...
    def presign_put(self, key: str, content_type: str, expires_s: int | None = None) -> str: ...
    def ping(self) -> bool: ...


def _translate(ex: Exception, *, op: str, key: str) -> Exception:
    if isinstance(ex, ClientError):
        code = str(ex.response.get("Error", {}).get("Code") or "")
        if code in _MISSING_CODES:
            return EmptyInputError(f"object missing: {key}")
        return TransientError(f"storage {op} failed for {key}: {code or ex}")
    return TransientError(f"storage {op} failed for {key}: {ex}")


class S3ObjectStore:
    """S3/MinIO compatible object store (path-style addressing)."""

    def __init__(
        self,
        *,
        bucket: str,
        endpoint_url: str | None,
        public_url: str | None,
        region: str,
        access_key: str,
        secret_key: str,
    ) -> None:
        self.bucket = str(bucket)
        self._kwargs = {
            "service_name": "s3",
            "region_name": region or "us-east-1",
            "aws_access_key_id": access_key,
            "aws_secret_access_key": secret_key,
            "config": BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
        }
        self._endpoint_url = endpoint_url
        self._public_url = public_url or endpoint_url
        self._client = None
        self._signer = None

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client(endpoint_url=self._endpoint_url, **self._kwargs)
        return self._client

    def _get_signer(self):
        # Presigned URLs must be signed for the host the browser will talk to.
        if self._signer is None:
            self._signer = boto3.client(endpoint_url=self._public_url, **self._kwargs)
        return self._signer

    def get(self, key: str) -> BinaryIO:
        try:
            resp = self._get_client().get_object(Bucket=self.bucket, Key=key)
            return resp["Body"]
        except (ClientError, BotoCoreError) as ex:
            raise _translate(ex, op="get", key=key) from ex

    def download(self, key: str, dest: Path) -> Path:
        ensure_dir(dest.parent)
        try:
            self._get_client().download_file(self.bucket, key, str(dest))
        except (ClientError, BotoCoreError) as ex:
            raise _translate(ex, op="download", key=key) from ex
        return dest

    def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self._get_client().put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as ex:
            raise _translate(ex, op="put", key=key) from ex

    def put_file(self, key: str, path: Path, content_type: str) -> None:
        try:
            self._get_client().upload_file(
                str(path), self.bucket, key, ExtraArgs={"ContentType": content_type}
            )
        except (ClientError, BotoCoreError) as ex:
            raise _translate(ex, op="put", key=key) from ex

    def delete(self, key: str) -> None:
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as ex:
            raise _translate(ex, op="delete", key=key) from ex

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as ex:
            if str(ex.response.get("Error", {}).get("Code") or "") in _MISSING_CODES:
                return False
            raise _translate(ex, op="head", key=key) from ex
        except BotoCoreError as ex:
            raise _translate(ex, op="head", key=key) from ex

    def presign_put(self, key: str, content_type: str, expires_s: int | None = None) -> str:
        expires = int(expires_s or get_settings().presign_expires_s)
        return self._get_signer().generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires,
        )

    def ping(self) -> bool:
        try:
            self._get_client().head_bucket(Bucket=self.bucket)
            return True
        except (ClientError, BotoCoreError) as ex:
            logger.warning("storage_ping_failed", backend="s3", error=str(ex))
            return False


class LocalObjectStore:
    """
    Filesystem-backed object store (development and tests).
    """

    def __init__(self, root: Path) -> None:
        self.root = ensure_dir(Path(root).resolve())

    def _path(self, key: str) -> Path:
        p = (self.root / str(key).lstrip("/")).resolve()
        if self.root not in p.parents:
            raise ValueError(f"key escapes storage root: {key!r}")
        return p

    def get(self, key: str) -> BinaryIO:
        p = self._path(key)
        if not p.is_file():
            raise EmptyInputError(f"object missing: {key}")
        return io.BytesIO(p.read_bytes())

    def download(self, key: str, dest: Path) -> Path:
        p = self._path(key)
        if not p.is_file():
            raise EmptyInputError(f"object missing: {key}")
        ensure_dir(dest.parent)
        shutil.copyfile(p, dest)
        return dest

    def put(self, key: str, data: bytes, content_type: str) -> None:
        p = self._path(key)
        ensure_dir(p.parent)
        p.write_bytes(bytes(data))

    def put_file(self, key: str, path: Path, content_type: str) -> None:
        p = self._path(key)
        ensure_dir(p.parent)
        shutil.copyfile(path, p)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def presign_put(self, key: str, content_type: str, expires_s: int | None = None) -> str:
        return self._path(key).as_uri()

    def ping(self) -> bool:
        return self.root.is_dir()


def build_object_store() -> ObjectStore:
    s = get_settings()
    backend = str(s.storage_backend or "s3").strip().lower()
    if backend == "local":
        return LocalObjectStore(s.public.resolved_storage_dir())
    if backend != "s3":
        raise ValueError(f"STORAGE_BACKEND must be s3|local (got {backend!r})")
    return S3ObjectStore(
        bucket=s.s3_bucket,
        endpoint_url=s.s3_endpoint,
        public_url=s.s3_public_url,
        region=s.s3_region,
        access_key=s.secret.s3_access_key.get_secret_value(),
        secret_key=s.secret.s3_secret_key.get_secret_value(),
    )

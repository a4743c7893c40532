import io
import os
from datetime import timedelta
from pathlib import Path

from minio import Minio
from minio.error import MinioException, S3Error
from urllib3.exceptions import HTTPError as TransportError

from .config import (
    LOCAL_STORAGE_DIR, MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET, MINIO_SECURE,
    Settings,
)
from .errors import StorageError

# anything the client or its connection pool can raise when minio is down or misbehaving
MINIO_FAILURES = (MinioException, TransportError, OSError)


def _describe(exc: Exception) -> str:
    if isinstance(exc, S3Error):
        return exc.code
    return f"{type(exc).__name__}: {exc}"


class MinioStorage:
    kind = "minio"

    def __init__(self, client: Minio = None, bucket: str = MINIO_BUCKET):
        self._client = client or Minio(
            MINIO_ENDPOINT,
            access_key=MINIO_ACCESS_KEY,
            secret_key=MINIO_SECRET_KEY,
            secure=MINIO_SECURE,
        )
        self._bucket = bucket

    def ensure_bucket(self):
        if not self._client.bucket_exists(self._bucket):
            self._client.make_bucket(self._bucket)

    def upload(self, data: bytes, path: str, content_type: str = "application/pdf") -> str:
        try:
            self.ensure_bucket()
            self._client.put_object(self._bucket, path, io.BytesIO(data), length=len(data), content_type=content_type)
        except MINIO_FAILURES as exc:
            raise StorageError(f"upload of {path} failed: {_describe(exc)}") from exc
        return f"s3://{self._bucket}/{path}"

    def download(self, path: str) -> bytes:
        try:
            resp = self._client.get_object(self._bucket, path)
        except MINIO_FAILURES as exc:
            raise StorageError(f"download of {path} failed: {_describe(exc)}") from exc
        try:
            return resp.read()
        except MINIO_FAILURES as exc:
            raise StorageError(f"download of {path} failed: {_describe(exc)}") from exc
        finally:
            resp.close()
            resp.release_conn()

    def presign(self, path: str, ttl_seconds: int) -> str:
        try:
            return self._client.presigned_get_object(self._bucket, path, expires=timedelta(seconds=ttl_seconds))
        except MINIO_FAILURES as exc:
            raise StorageError(f"presign of {path} failed: {_describe(exc)}") from exc


class LocalStorage:
    """Filesystem provider for development; presigned URLs are file:// URIs."""

    kind = "local"

    def __init__(self, root: str = LOCAL_STORAGE_DIR):
        self._root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if self._root.resolve() not in target.parents:
            raise StorageError(f"path escapes storage root: {path}")
        return target

    def upload(self, data: bytes, path: str, content_type: str = "application/pdf") -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"upload of {path} failed: {exc}") from exc
        return f"file://{target}"

    def download(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as exc:
            raise StorageError(f"download of {path} failed: {exc}") from exc

    def presign(self, path: str, ttl_seconds: int) -> str:
        return self._resolve(path).as_uri()


def build_storage(settings: Settings):
    if settings.storage_provider == "minio":
        return MinioStorage()
    if settings.storage_provider == "local":
        os.makedirs(LOCAL_STORAGE_DIR, exist_ok=True)
        return LocalStorage()
    raise ValueError(f"unknown storage provider: {settings.storage_provider}")

"""MinIO / S3-compatible backend for the ObjectStore protocol.

Every request goes through a ``urllib3.PoolManager`` configured with
connect/read timeouts and a bounded retry policy taken from
``NCCIngestConfig``, so a stalled storage endpoint surfaces as a
``StorageError`` instead of hanging the run.
"""

from __future__ import annotations

import io
import logging
from datetime import timedelta
from urllib.parse import urlparse

import urllib3
from minio import Minio
from minio.error import S3Error

from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.errors import ErrorCode, StorageError

logger = logging.getLogger("ingestkit_ncc")


class MinioObjectStore:
    """Object store backed by a MinIO (or any S3-compatible) bucket.

    Satisfies :class:`~ingestkit_ncc.protocols.ObjectStore` via structural
    subtyping (no inheritance required).

    Parameters
    ----------
    endpoint:
        Host and optional port, e.g. ``"localhost:9000"``.
    access_key, secret_key:
        Credentials for the bucket.
    bucket:
        Bucket holding archives and assets.
    secure:
        Use HTTPS.
    config:
        Pipeline configuration providing timeout and retry settings.
    client:
        Pre-built ``Minio`` client; mainly for tests.
    """

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        secure: bool = True,
        config: NCCIngestConfig | None = None,
        client: Minio | None = None,
    ) -> None:
        self._config = config or NCCIngestConfig()
        self._bucket = bucket
        if client is None:
            http_client = urllib3.PoolManager(
                timeout=urllib3.Timeout(
                    connect=self._config.backend_timeout_seconds,
                    read=self._config.backend_timeout_seconds,
                ),
                retries=urllib3.Retry(
                    total=self._config.backend_max_retries,
                    backoff_factor=self._config.backend_backoff_base,
                    status_forcelist=[500, 502, 503, 504],
                ),
            )
            client = Minio(
                endpoint,
                access_key=access_key,
                secret_key=secret_key,
                secure=secure,
                http_client=http_client,
            )
        self._client = client

    @classmethod
    def from_url(
        cls,
        url: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        config: NCCIngestConfig | None = None,
    ) -> MinioObjectStore:
        """Build a store from an endpoint URL such as ``https://s3.local:9000``."""
        parsed = urlparse(url)
        host = parsed.netloc or parsed.path
        return cls(
            host,
            access_key,
            secret_key,
            bucket,
            secure=parsed.scheme == "https",
            config=config,
        )

    # ------------------------------------------------------------------
    # Protocol methods
    # ------------------------------------------------------------------

    def get_bytes(self, key: str) -> bytes:
        try:
            resp = self._client.get_object(self._bucket, key)
            try:
                return resp.read()
            finally:
                resp.close()
                resp.release_conn()
        except (S3Error, urllib3.exceptions.HTTPError) as exc:
            raise StorageError(
                f"Failed to get object '{key}' from bucket '{self._bucket}': {exc}",
                code=ErrorCode.E_STORAGE_GET,
            ) from exc

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                self._bucket,
                key,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )
        except (S3Error, urllib3.exceptions.HTTPError) as exc:
            raise StorageError(
                f"Failed to put object '{key}' to bucket '{self._bucket}': {exc}",
                code=ErrorCode.E_STORAGE_PUT,
            ) from exc
        logger.debug("ingestkit_ncc | stored key=%s | bytes=%d", key, len(data))

    def exists(self, key: str) -> bool:
        try:
            self._client.stat_object(self._bucket, key)
        except S3Error as exc:
            if exc.code in ("NoSuchKey", "NoSuchObject", "NotFound"):
                return False
            raise StorageError(
                f"Failed to stat object '{key}': {exc}",
                code=ErrorCode.E_STORAGE_GET,
            ) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise StorageError(
                f"Failed to stat object '{key}': {exc}",
                code=ErrorCode.E_STORAGE_GET,
            ) from exc
        return True

    def presigned_get_url(self, key: str, expires_seconds: int) -> str:
        try:
            return self._client.presigned_get_object(
                self._bucket, key, expires=timedelta(seconds=expires_seconds)
            )
        except (S3Error, urllib3.exceptions.HTTPError) as exc:
            raise StorageError(
                f"Failed to presign object '{key}': {exc}",
                code=ErrorCode.E_STORAGE_GET,
            ) from exc

    def ensure_bucket(self) -> None:
        """Create the bucket if it does not already exist."""
        try:
            if not self._client.bucket_exists(self._bucket):
                self._client.make_bucket(self._bucket)
        except (S3Error, urllib3.exceptions.HTTPError) as exc:
            raise StorageError(
                f"Failed to ensure bucket '{self._bucket}': {exc}",
                code=ErrorCode.E_STORAGE_PUT,
            ) from exc

"""
Object Store Provider — S3 API (AWS S3, MinIO, LocalStack)

Layout:
    s3://<BUCKET>/<key_prefix>/<destination_hint>

The destination hint is built server-side by the Hybrid Storage Manager
(organization id + file id + sanitized name) and sanitized again here, so a
locator can never point outside the configured prefix.

Encryption:
  When a KMS key is configured every PutObject carries SSE-KMS parameters;
  otherwise the bucket's default encryption applies.

Error mapping (botocore -> doclib.core.errors):
  NoSuchKey / 404 / NotFound        -> NotFoundError
  QuotaExceeded / storage full      -> QuotaExceededError
  any other ClientError             -> TransientIOError
  BotoCoreError (DNS, timeouts ...) -> TransientIOError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import NotFoundError, QuotaExceededError, TransientIOError
from doclib.models.records import StorageBackend
from doclib.storage.base import StorageProvider, sanitize_hint

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound", "NoSuchBucket"})
_QUOTA_CODES = frozenset({"QuotaExceeded", "XMinioStorageFull", "ServiceQuotaExceededException"})


@dataclass(frozen=True)
class ObjectRef:
    """Bucket + key of an object-store copy; consumed by async OCR."""
    bucket: str
    key:    str


def _translate(exc: Exception, key: str) -> Exception:
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in _NOT_FOUND_CODES:
            return NotFoundError(f"Object not found: {key}")
        if code in _QUOTA_CODES:
            return QuotaExceededError(f"Object store quota exceeded writing {key}")
        return TransientIOError(f"S3 error {code} on {key}: {exc}")
    return TransientIOError(f"S3 transport error on {key}: {exc}")


class ObjectStoreProvider(StorageProvider):
    """Async S3 operations; the locator is the full object key."""

    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or default_settings
        self._bucket = self._cfg.s3_bucket
        self._prefix = self._cfg.s3_key_prefix.strip("/")
        self._session = aioboto3.Session()

    @property
    def backend(self) -> StorageBackend:
        return StorageBackend.OBJECT_STORE

    @property
    def bucket(self) -> str:
        return self._bucket

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": self._cfg.aws_region}
        if self._cfg.s3_endpoint_url:
            kwargs["endpoint_url"] = self._cfg.s3_endpoint_url
        if self._cfg.aws_access_key_id:
            kwargs["aws_access_key_id"] = self._cfg.aws_access_key_id
            kwargs["aws_secret_access_key"] = self._cfg.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    def _sse_params(self) -> dict:
        if not self._cfg.s3_kms_key_arn:
            return {}
        return {
            "ServerSideEncryption": "aws:kms",
            "SSEKMSKeyId": self._cfg.s3_kms_key_arn,
        }

    def _key(self, destination_hint: str) -> str:
        safe = sanitize_hint(destination_hint)
        return f"{self._prefix}/{safe}" if self._prefix else safe

    def object_ref(self, locator: str) -> ObjectRef:
        return ObjectRef(bucket=self._bucket, key=locator)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def write(
        self,
        data: bytes,
        destination_hint: str,
        content_type: str | None = None,
    ) -> str:
        key = self._key(destination_hint)
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type or "application/octet-stream",
                    **self._sse_params(),
                )
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, key) from exc

        logger.info("S3 upload ok | key=%s size=%d", key, len(data))
        return key

    async def read(self, locator: str) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=locator)
                return await resp["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, locator) from exc

    async def delete(self, locator: str) -> bool:
        # DeleteObject is idempotent: an absent key is not an error
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=locator)
        except (ClientError, BotoCoreError) as exc:
            translated = _translate(exc, locator)
            if isinstance(translated, NotFoundError):
                return True
            raise translated from exc
        logger.info("S3 delete | key=%s", locator)
        return True

    async def exists(self, locator: str) -> bool:
        try:
            async with self._client() as s3:
                await s3.head_object(Bucket=self._bucket, Key=locator)
            return True
        except (ClientError, BotoCoreError) as exc:
            translated = _translate(exc, locator)
            if isinstance(translated, NotFoundError):
                return False
            raise translated from exc

    async def presign(self, locator: str, ttl_seconds: int = 900) -> str:
        """Short-lived presigned GET URL scoped to the exact object key."""
        try:
            async with self._client() as s3:
                return await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self._bucket, "Key": locator},
                    ExpiresIn=ttl_seconds,
                )
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, locator) from exc

    async def health_check(self) -> dict:
        try:
            async with self._client() as s3:
                await s3.head_bucket(Bucket=self._bucket)
            return {"status": "ok", "bucket": self._bucket}
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 health check failed: %s", exc)
            return {"status": "error", "bucket": self._bucket, "detail": str(exc)}

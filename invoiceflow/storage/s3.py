"""
Binary storage for uploaded invoice files.

Key layout:
    s3://<BUCKET>/<PREFIX>/<batch_id>/<document_id><ext>

The key is always built server-side from ids the pipeline generated; the
client-supplied filename never becomes part of it.
Every provider failure surfaces as StorageError; callers never see a
botocore exception.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from invoiceflow.core.config import Settings
from invoiceflow.core.errors import StorageError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


class StorageService(ABC):

    @abstractmethod
    async def store(self, data: bytes, path_hint: str, content_type: str | None = None) -> str:
        """Persist `data`; returns the opaque path used for later calls."""

    @abstractmethod
    async def retrieve(self, path: str) -> bytes: ...

    @abstractmethod
    async def delete(self, path: str) -> None: ...

    @abstractmethod
    async def exists(self, path: str) -> bool: ...

    async def health(self) -> dict:
        return {"status": "ok"}


class S3StorageService(StorageService):
    """
    Async S3 / MinIO operations via aioboto3.

    A fresh client context is opened per call (aioboto3 clients are async
    context managers bound to one event loop); the Session is shared.
    """

    def __init__(self, cfg: Settings) -> None:
        self._bucket = cfg.s3_bucket
        self._prefix = cfg.s3_prefix.strip("/")
        self._region = cfg.aws_region
        self._endpoint = cfg.s3_endpoint_url or None
        self._session = aioboto3.Session(
            aws_access_key_id=cfg.aws_access_key_id or None,
            aws_secret_access_key=cfg.aws_secret_access_key or None,
        )

    def _client(self):
        return self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint,   # MinIO in local dev; None = AWS
        )

    def _key(self, path_hint: str) -> str:
        safe = path_hint.replace("..", "_").lstrip("/")
        return f"{self._prefix}/{safe}" if self._prefix else safe

    async def store(self, data: bytes, path_hint: str, content_type: str | None = None) -> str:
        key = self._key(path_hint)
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type or "application/octet-stream",
                )
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 upload failed | key=%s: %s", key, exc)
            raise StorageError(f"Could not store {key}: {exc}") from exc

        logger.info("S3 upload ok | key=%s size=%d", key, len(data))
        return key

    async def retrieve(self, path: str) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=path)
                return await resp["Body"].read()
        except ClientError as exc:
            code = exc.response["Error"]["Code"]
            if code in _NOT_FOUND_CODES:
                raise StorageError(f"Object not found: {path}") from exc
            raise StorageError(f"Could not read {path}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Could not read {path}: {exc}") from exc

    async def delete(self, path: str) -> None:
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=path)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Could not delete {path}: {exc}") from exc
        logger.info("S3 delete | key=%s", path)

    async def exists(self, path: str) -> bool:
        try:
            async with self._client() as s3:
                await s3.head_object(Bucket=self._bucket, Key=path)
            return True
        except ClientError as exc:
            if exc.response["Error"]["Code"] in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"Could not stat {path}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Could not stat {path}: {exc}") from exc

    async def health(self) -> dict:
        try:
            async with self._client() as s3:
                await s3.head_bucket(Bucket=self._bucket)
            return {"status": "ok"}
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 health check failed: %s", exc)
            return {"status": "error", "detail": str(exc)}

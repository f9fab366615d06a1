"""Object storage capability backed by S3-compatible buckets."""

from __future__ import annotations

import asyncio
from typing import Callable, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from apiary_api.core.settings import Settings, get_settings
from apiary_api.domain.errors import DownstreamSideEffectFailed


class ObjectStore(Protocol):
    """Durable blob storage addressed by locator."""

    async def store(self, payload: bytes, key: str, *, content_type: str = "application/octet-stream") -> str:
        ...

    async def fetch(self, locator: str) -> bytes:
        ...


class S3ObjectStore:
    """Stores certificates and export files in an S3 bucket.

    Locators have the form ``s3://<bucket>/<key>``.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        s3_client_factory: Callable[[], object] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._bucket = (self._settings.document_storage_bucket or "").strip()
        self._prefix = (self._settings.document_storage_prefix or "").strip("/")
        if not self._bucket:
            raise ValueError("Document storage bucket must be configured")
        self._client = s3_client_factory() if s3_client_factory is not None else self._build_client()

    def _build_client(self):
        config = None
        if self._settings.document_storage_force_path_style:
            config = Config(s3={"addressing_style": "path"})
        return boto3.client(
            "s3",
            region_name=self._settings.document_storage_region,
            endpoint_url=self._settings.document_storage_endpoint or None,
            config=config,
        )

    def _object_key(self, key: str) -> str:
        parts = [part.strip("/") for part in (self._prefix, key) if part]
        return "/".join(parts)

    async def store(self, payload: bytes, key: str, *, content_type: str = "application/octet-stream") -> str:
        object_key = self._object_key(key)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=object_key,
                Body=payload,
                ContentType=content_type,
                ACL="private",
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            logger.error("Object store write failed", bucket=self._bucket, key=object_key, code=code)
            raise DownstreamSideEffectFailed("store", f"put_object failed ({code})") from exc
        except BotoCoreError as exc:
            logger.error("Object store write failed", bucket=self._bucket, key=object_key, error=str(exc))
            raise DownstreamSideEffectFailed("store", str(exc)) from exc
        return f"s3://{self._bucket}/{object_key}"

    async def fetch(self, locator: str) -> bytes:
        bucket, _, object_key = locator.removeprefix("s3://").partition("/")
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=bucket, Key=object_key)
            body = response["Body"]
            return await asyncio.to_thread(body.read)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            raise DownstreamSideEffectFailed("fetch", f"get_object failed ({code})") from exc
        except BotoCoreError as exc:
            raise DownstreamSideEffectFailed("fetch", str(exc)) from exc


__all__ = ["ObjectStore", "S3ObjectStore"]

"""
Blob store client (MinIO or any S3-compatible endpoint) over boto3.

boto3 is blocking; every call is pushed to a worker thread so the job
event loop keeps running.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from reelforge.services.errors import StorageError
from reelforge.settings import get_settings

logger = logging.getLogger(__name__)


def collected_video_key(video_id: str) -> str:
    return f"collected-videos/{video_id}.mp4"


def analysis_frame_key(video_id: str, index: int) -> str:
    return f"video-analysis/{video_id}/frame-{index:04d}.jpg"


def render_key(render_id: str) -> str:
    return f"renders/{render_id}.mp4"


class StorageService:
    def __init__(self, client: Any | None = None, bucket: str | None = None):
        settings = get_settings()
        self.bucket = bucket or settings.minio_bucket
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            settings = get_settings()
            session = boto3.session.Session()
            self._client = session.client(
                "s3",
                endpoint_url=settings.minio_endpoint or None,
                aws_access_key_id=settings.minio_access_key or None,
                aws_secret_access_key=settings.minio_secret_key or None,
                config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
                region_name=settings.minio_region,
            )
        return self._client

    async def _call(self, op: str, key: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (ClientError, BotoCoreError) as exc:
            status = None
            if isinstance(exc, ClientError):
                status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            logger.error(f"[storage] {op} {key} failed: {exc}")
            raise StorageError(
                "STORAGE_ERROR",
                f"Blob store {op} failed for {key}: {exc}",
                # 404 on read means the artifact is gone; retrying will not bring it back
                retriable=False if status == 404 else True,
                status_code=status,
            ) from exc

    async def ensure_bucket(self) -> None:
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=self.bucket)
        except ClientError:
            logger.info(f"[storage] creating bucket {self.bucket}")
            await self._call("create_bucket", self.bucket, self.client.create_bucket, Bucket=self.bucket)

    async def upload_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        await self._call(
            "put_object", key, self.client.put_object,
            Bucket=self.bucket, Key=key, Body=data, ContentType=content_type,
        )
        return key

    async def upload_file(self, key: str, path: Path, content_type: str = "video/mp4") -> str:
        await self._call(
            "upload_file", key, self.client.upload_file,
            str(path), self.bucket, key, ExtraArgs={"ContentType": content_type},
        )
        return key

    async def download_bytes(self, key: str) -> bytes:
        obj = await self._call("get_object", key, self.client.get_object, Bucket=self.bucket, Key=key)
        return await asyncio.to_thread(obj["Body"].read)

    async def download_file(self, key: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        await self._call("download_file", key, self.client.download_file, self.bucket, key, str(dest))
        return dest

    async def presigned_get(self, key: str, expires: int | None = None) -> str:
        expires = expires or get_settings().presign_expiry_sec
        return await self._call(
            "presign_get", key, self.client.generate_presigned_url,
            "get_object", Params={"Bucket": self.bucket, "Key": key}, ExpiresIn=expires,
        )

    async def delete(self, key: str) -> None:
        await self._call("delete_object", key, self.client.delete_object, Bucket=self.bucket, Key=key)


_storage: StorageService | None = None


def get_storage() -> StorageService:
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage

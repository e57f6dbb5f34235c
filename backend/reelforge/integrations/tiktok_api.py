"""
TikTok Open API: upload init -> sequential chunk PUTs -> publish.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

import httpx

from reelforge.services.errors import PlatformError
from reelforge.services.sanitize import sanitize, sanitize_dict
from reelforge.settings import get_settings

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    upload_id: str
    upload_url: str


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_in: int | None


def iter_chunks(data: bytes, chunk_size: int) -> Iterator[tuple[int, int, bytes]]:
    """Yield (start, end_exclusive, chunk) for fixed-size slices of `data`."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for start in range(0, len(data), chunk_size):
        end = min(start + chunk_size, len(data))
        yield start, end, data[start:end]


def _error_text(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return sanitize(resp.text[:300]) or resp.reason_phrase
    err = body.get("error") if isinstance(body, dict) else body
    if isinstance(err, dict):
        return sanitize(err.get("message") or err.get("code") or str(err))
    return sanitize(str(err))[:300]


class TikTokClient:
    def __init__(self, http: httpx.AsyncClient, *, base_url: str | None = None, chunk_size: int | None = None):
        settings = get_settings()
        self.http = http
        self.base_url = (base_url or settings.tiktok_api_url).rstrip("/")
        self.chunk_size = chunk_size or settings.tiktok_chunk_size_bytes

    @staticmethod
    def _auth(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def init_upload(self, token: str, video_size: int) -> UploadSession:
        total_chunks = max(1, -(-video_size // self.chunk_size))
        resp = await self.http.post(
            f"{self.base_url}/v1/post/publish/action/init",
            headers=self._auth(token),
            json={
                "source_info": {
                    "source": "FILE_UPLOAD",
                    "video_size": video_size,
                    "chunk_size": self.chunk_size,
                    "total_chunk_count": total_chunks,
                },
            },
        )
        if resp.status_code >= 400:
            raise PlatformError(
                "UPLOAD_INIT_FAILED",
                f"TikTok upload init failed: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        data = (resp.json() or {}).get("data") or {}
        upload_id = data.get("upload_id")
        upload_url = data.get("upload_url")
        if not upload_id or not upload_url:
            raise PlatformError("UPLOAD_INIT_FAILED", "Invalid upload initialization", retriable=False)
        logger.info(f"[publish][tiktok] upload initialized: {upload_id}")
        return UploadSession(upload_id=str(upload_id), upload_url=str(upload_url))

    async def upload_chunks(self, upload_url: str, video: bytes) -> int:
        """PUT every chunk in order. The first failure aborts the whole upload.

        Returns the number of chunks sent.
        """
        chunks = list(iter_chunks(video, self.chunk_size))
        total = len(chunks)
        for index, (start, end, chunk) in enumerate(chunks, start=1):
            logger.info(f"[publish][tiktok] uploading chunk {index}/{total} ({len(chunk)} bytes)")
            try:
                resp = await self.http.put(
                    upload_url,
                    content=chunk,
                    headers={
                        "Content-Type": "video/mp4",
                        "Content-Length": str(len(chunk)),
                        "Content-Range": f"bytes {start}-{end - 1}/{len(video)}",
                    },
                )
            except httpx.TransportError as exc:
                raise PlatformError(
                    "CHUNK_UPLOAD_FAILED",
                    f"Failed to upload chunk {index}/{total}: {sanitize(str(exc))}",
                    retriable=True,
                ) from exc
            if resp.status_code >= 400:
                raise PlatformError(
                    "CHUNK_UPLOAD_FAILED",
                    f"Failed to upload chunk {index}/{total}: HTTP {resp.status_code}",
                    status_code=resp.status_code,
                    details={"chunk": index, "total": total},
                )
        return total

    async def publish(self, token: str, upload_id: str, title: str) -> str:
        resp = await self.http.post(
            f"{self.base_url}/v1/post/publish/action/publish",
            headers=self._auth(token),
            json={"upload_id": upload_id, "post_info": {"title": title}},
        )
        if resp.status_code >= 400:
            raise PlatformError(
                "PUBLISH_FAILED",
                f"TikTok publish failed: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        data = (resp.json() or {}).get("data") or {}
        publish_id = data.get("publish_id")
        if not publish_id:
            raise PlatformError("PUBLISH_FAILED", "No publish_id returned from TikTok", retriable=False)
        return str(publish_id)

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        settings = get_settings()
        resp = await self.http.post(
            f"{self.base_url}/v1/oauth/token/",
            data={
                "client_key": settings.tiktok_client_key or "",
                "client_secret": settings.tiktok_client_secret or "",
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        if resp.status_code >= 400:
            raise PlatformError(
                "TOKEN_EXPIRED",
                f"TikTok token refresh failed: {_error_text(resp)}",
                retriable=False,
            )
        body = resp.json() or {}
        data = body.get("data") or body
        if not data.get("access_token"):
            logger.warning(f"[publish][tiktok] token refresh response without access_token: {sanitize_dict(body)}")
            raise PlatformError("TOKEN_EXPIRED", "TikTok token refresh returned no access_token", retriable=False)
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
        )

"""
Instagram Graph API: container upload -> status poll -> publish -> caption.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from reelforge.services.errors import PlatformError
from reelforge.services.sanitize import sanitize
from reelforge.settings import get_settings

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _error_text(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return sanitize(resp.text[:300]) or resp.reason_phrase
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return sanitize(err.get("message") or str(err))
    return sanitize(str(err or body))[:300]


class InstagramClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: str | None = None,
        api_version: str | None = None,
        poll_interval: float | None = None,
        poll_attempts: int | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        settings = get_settings()
        self.http = http
        self.api_root = f"{(base_url or settings.instagram_graph_url).rstrip('/')}/{api_version or settings.instagram_api_version}"
        self.poll_interval = settings.instagram_poll_interval_sec if poll_interval is None else poll_interval
        self.poll_attempts = poll_attempts or settings.instagram_poll_attempts
        self.sleep = sleep

    @staticmethod
    def _auth(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def create_container(self, ig_user_id: str, token: str, video: bytes, caption: str | None = None) -> str:
        data = {"media_type": "REELS"}
        if caption:
            data["caption"] = caption
        resp = await self.http.post(
            f"{self.api_root}/{ig_user_id}/media",
            headers=self._auth(token),
            data=data,
            files={"video_file": ("video.mp4", video, "video/mp4")},
        )
        if resp.status_code >= 400:
            raise PlatformError(
                "UPLOAD_FAILED",
                f"Instagram upload failed: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        container_id = (resp.json() or {}).get("id")
        if not container_id:
            raise PlatformError("UPLOAD_FAILED", "No container ID returned from Instagram", retriable=False)
        logger.info(f"[publish][instagram] container created: {container_id}")
        return str(container_id)

    async def container_status(self, container_id: str, token: str) -> str:
        resp = await self.http.get(
            f"{self.api_root}/{container_id}",
            params={"fields": "status,status_code"},
            headers=self._auth(token),
        )
        if resp.status_code >= 400:
            raise PlatformError(
                "STATUS_CHECK_FAILED",
                f"Failed to check video status: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        body = resp.json() or {}
        return str(body.get("status_code") or body.get("status") or "").upper()

    async def wait_until_finished(self, container_id: str, token: str) -> int:
        """Poll until FINISHED; returns the number of polls made.

        ERROR stops immediately; running out of attempts is a timeout.
        """
        for attempt in range(1, self.poll_attempts + 1):
            status = await self.container_status(container_id, token)
            if status == "FINISHED":
                return attempt
            if status == "ERROR":
                raise PlatformError(
                    "VIDEO_PROCESSING_ERROR", "Instagram video processing failed", retriable=False
                )
            logger.debug(f"[publish][instagram] container {container_id} {status or 'PENDING'} ({attempt}/{self.poll_attempts})")
            if attempt < self.poll_attempts:
                await self.sleep(self.poll_interval)
        raise PlatformError(
            "VIDEO_PROCESSING_TIMEOUT",
            f"Video processing did not finish after {self.poll_attempts} status checks",
            retriable=False,
        )

    async def publish_container(self, ig_user_id: str, token: str, container_id: str) -> str:
        resp = await self.http.post(
            f"{self.api_root}/{ig_user_id}/media_publish",
            headers=self._auth(token),
            json={"creation_id": container_id},
        )
        if resp.status_code >= 400:
            raise PlatformError(
                "PUBLISH_FAILED",
                f"Instagram publish failed: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        body = resp.json() or {}
        media_id = body.get("id") or body.get("media_id")
        if not media_id:
            raise PlatformError("PUBLISH_FAILED", "No media ID returned from Instagram", retriable=False)
        return str(media_id)

    async def attach_caption(self, media_id: str, token: str, caption: str) -> bool:
        """Set the caption on a published media object.

        Sent as POST to /{media-id}: the Graph API takes updates to an
        existing node as POST and has no PATCH route for media. Best
        effort: the post already exists, so failures are only logged.
        """
        try:
            resp = await self.http.post(
                f"{self.api_root}/{media_id}",
                headers=self._auth(token),
                json={"caption": caption},
            )
        except httpx.HTTPError as exc:
            logger.warning(f"[publish][instagram] caption request failed for {media_id}: {sanitize(str(exc))}")
            return False
        if resp.status_code >= 400:
            logger.warning(f"[publish][instagram] caption not attached to {media_id}: {_error_text(resp)}")
            return False
        return True

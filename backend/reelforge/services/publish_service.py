"""
Publish orchestrator: drives a PublishLog through a platform upload protocol.

Each platform adapter implements the `PublisherAdapter` interface:
    publish(account, token, video, caption) -> PublishResult

Results (including errors) are always returned explicitly; the orchestrator
turns them into a job outcome. PENDING -> UPLOADING -> PUBLISHED | FAILED.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.integrations.instagram_api import InstagramClient
from reelforge.integrations.storage import StorageService, get_storage
from reelforge.integrations.tiktok_api import TikTokClient
from reelforge.models import Platform, PublishLog, PublishStatus, Render, RenderStatus, SocialAccount
from reelforge.schemas import PublishJob
from reelforge.services.outcome import JobOutcome, RetryableFailure, Success, TerminalFailure, failure_from_error
from reelforge.services.state_machine import PUBLISH, transition
from reelforge.services.token_service import TokenCipher, get_valid_access_token

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


# ── Result dataclass ─────────────────────────────────────────

@dataclass
class PublishResult:
    """Unified result of a publish attempt."""
    success: bool
    platform: str
    external_id: str | None = None
    error_code: str | None = None
    error: str | None = None
    retryable: bool = False
    steps: list[str] = field(default_factory=list)

    @classmethod
    def from_error(cls, platform: str, exc: BaseException, steps: list[str]) -> "PublishResult":
        failure = failure_from_error(exc)
        return cls(
            success=False,
            platform=platform,
            error_code=failure.code,
            error=failure.message,
            retryable=isinstance(failure, RetryableFailure),
            steps=steps,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "platform": self.platform,
            "external_id": self.external_id,
            "error_code": self.error_code,
            "error": self.error,
            "retryable": self.retryable,
            "steps": self.steps,
        }


# ── Abstract adapter ─────────────────────────────────────────

class PublisherAdapter(abc.ABC):
    """Base class for platform-specific publishers."""

    platform: str = "unknown"

    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    @abc.abstractmethod
    async def _run(
        self,
        account: SocialAccount,
        token: str,
        video: bytes,
        caption: str | None,
        steps: list[str],
    ) -> str:
        """Run the platform protocol and return the external post id."""
        ...

    async def publish(
        self,
        account: SocialAccount,
        token: str,
        video: bytes,
        caption: str | None,
        *,
        log_id: str = "-",
    ) -> PublishResult:
        steps: list[str] = []
        try:
            external_id = await self._run(account, token, video, caption, steps)
        except Exception as exc:
            result = PublishResult.from_error(self.platform, exc, steps)
            self._error(log_id, f"{result.error_code} after {steps or ['nothing']}: {result.error}")
            return result
        self._log(log_id, f"published as {external_id}")
        return PublishResult(success=True, platform=self.platform, external_id=external_id, steps=steps)

    def _log(self, log_id: str, msg: str):
        logger.info(f"[publish][{self.platform}][log={log_id}] {msg}")

    def _error(self, log_id: str, msg: str):
        logger.error(f"[publish][{self.platform}][log={log_id}] {msg}")


# ── Instagram Reels ───────────────────────────────────────────

class InstagramPublisher(PublisherAdapter):
    """Container upload, status poll, publish, then a best-effort caption."""

    platform = Platform.instagram.value

    def __init__(self, http: httpx.AsyncClient, *, sleep: Sleep = asyncio.sleep, **client_kwargs):
        super().__init__(http)
        self.client = InstagramClient(http, sleep=sleep, **client_kwargs)

    async def _run(self, account, token, video, caption, steps):
        container_id = await self.client.create_container(account.platform_user_id, token, video)
        steps.append("container")

        polls = await self.client.wait_until_finished(container_id, token)
        steps.append(f"finished:{polls}")

        media_id = await self.client.publish_container(account.platform_user_id, token, container_id)
        steps.append("published")

        if caption:
            attached = await self.client.attach_caption(media_id, token, caption)
            steps.append("caption" if attached else "caption_skipped")
        return media_id


# ── TikTok ────────────────────────────────────────────────────

class TikTokPublisher(PublisherAdapter):
    """Upload session init, sequential chunk PUTs, publish with caption as title."""

    platform = Platform.tiktok.value

    def __init__(self, http: httpx.AsyncClient, **client_kwargs):
        super().__init__(http)
        self.client = TikTokClient(http, **client_kwargs)

    async def _run(self, account, token, video, caption, steps):
        upload = await self.client.init_upload(token, len(video))
        steps.append("init")

        chunks = await self.client.upload_chunks(upload.upload_url, video)
        steps.append(f"chunks:{chunks}")

        publish_id = await self.client.publish(token, upload.upload_id, caption or "")
        steps.append("published")
        return publish_id


def get_publisher(platform: str, http: httpx.AsyncClient, *, sleep: Sleep = asyncio.sleep) -> PublisherAdapter | None:
    if platform == Platform.instagram.value:
        return InstagramPublisher(http, sleep=sleep)
    if platform == Platform.tiktok.value:
        return TikTokPublisher(http)
    return None


# ── Orchestrator ──────────────────────────────────────────────

async def mark_publish_failed(session: AsyncSession, publish_log_id: str, code: str, message: str) -> bool:
    return await transition(
        session, PUBLISH, publish_log_id,
        to=PublishStatus.failed.value,
        error_code=code,
        error_message=message,
    )


async def _precondition_failure(session: AsyncSession, publish_log_id: str, code: str, message: str) -> TerminalFailure:
    logger.error(f"[publish] log {publish_log_id}: {code}: {message}")
    await mark_publish_failed(session, publish_log_id, code, message)
    return TerminalFailure(code, message)


async def process_publish_job(
    session: AsyncSession,
    job: PublishJob,
    *,
    storage: StorageService | None = None,
    http: httpx.AsyncClient | None = None,
    cipher: TokenCipher | None = None,
    sleep: Sleep = asyncio.sleep,
) -> JobOutcome:
    storage = storage or get_storage()

    log = await session.get(PublishLog, job.publish_log_id)
    if log is None:
        return TerminalFailure("PUBLISH_LOG_NOT_FOUND", f"Publish log {job.publish_log_id} not found")
    if PUBLISH.is_terminal(log.status):
        return Success(result={"publish_log_id": job.publish_log_id, "status": log.status}, skipped=True)

    # preconditions are checked before any network call
    render = await session.get(Render, job.render_id)
    if render is None or render.status != RenderStatus.done.value or not render.minio_key:
        return await _precondition_failure(
            session, job.publish_log_id, "RENDER_NOT_READY", "Render is not complete or has no artifact"
        )
    account = await session.get(SocialAccount, job.social_account_id)
    if account is None:
        return await _precondition_failure(
            session, job.publish_log_id, "ACCOUNT_NOT_FOUND", f"Social account {job.social_account_id} not found"
        )
    if not account.is_active:
        return await _precondition_failure(
            session, job.publish_log_id, "ACCOUNT_INACTIVE", "Social account is disconnected"
        )
    minio_key = render.minio_key
    caption = log.caption

    owns_http = http is None
    http = http or httpx.AsyncClient(timeout=httpx.Timeout(300.0, connect=30.0))
    try:
        publisher = get_publisher(job.platform.value, http, sleep=sleep)
        if publisher is None:
            return await _precondition_failure(
                session, job.publish_log_id, "UNSUPPORTED_PLATFORM", f"Unsupported platform: {job.platform.value}"
            )

        if not await transition(session, PUBLISH, job.publish_log_id, to=PublishStatus.uploading.value):
            return Success(result={"publish_log_id": job.publish_log_id}, skipped=True)
        logger.info(f"[publish] log {job.publish_log_id}: UPLOADING to {job.platform.value}")

        try:
            token = await get_valid_access_token(session, account, http=http, cipher=cipher)
            video = await storage.download_bytes(minio_key)
        except Exception as exc:
            result = PublishResult.from_error(job.platform.value, exc, [])
        else:
            result = await publisher.publish(account, token, video, caption, log_id=job.publish_log_id)
    finally:
        if owns_http:
            await http.aclose()

    if not result.success:
        if result.retryable:
            logger.warning(f"[publish] log {job.publish_log_id}: retriable {result.error_code}: {result.error}")
            return RetryableFailure(result.error_code, result.error)
        await mark_publish_failed(session, job.publish_log_id, result.error_code, result.error)
        return TerminalFailure(result.error_code, result.error)

    if not await transition(
        session, PUBLISH, job.publish_log_id,
        to=PublishStatus.published.value,
        external_id=result.external_id,
        published_at=datetime.now(timezone.utc),
        error_code=None,
        error_message=None,
    ):
        return TerminalFailure("STATE_CONFLICT", "Publish log left UPLOADING while the upload was running")

    logger.info(f"[publish] log {job.publish_log_id}: PUBLISHED as {result.external_id}")
    return Success(result={"publish_log_id": job.publish_log_id, "external_id": result.external_id})

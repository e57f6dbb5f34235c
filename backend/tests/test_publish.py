import json

import httpx
import pytest
from cryptography.fernet import Fernet

from conftest import no_sleep
from reelforge.integrations.instagram_api import InstagramClient
from reelforge.integrations.tiktok_api import TikTokClient, iter_chunks
from reelforge.models import (
    Platform,
    Project,
    ProjectStatus,
    PublishLog,
    PublishStatus,
    Render,
    RenderStatus,
    SocialAccount,
    Template,
)
from reelforge.schemas import PublishJob
from reelforge.services.errors import PlatformError
from reelforge.services.outcome import RetryableFailure, Success, TerminalFailure
from reelforge.services.publish_service import InstagramPublisher, process_publish_job
from reelforge.services.token_service import TokenCipher

MiB = 1024 * 1024


class TikTokServer:
    """MockTransport handler for the TikTok upload protocol."""

    def __init__(self, *, fail_put_at: int | None = None, put_status: int = 500):
        self.fail_put_at = fail_put_at
        self.put_status = put_status
        self.puts: list[httpx.Request] = []
        self.paths: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if request.method == "PUT":
            self.puts.append(request)
            if len(self.puts) == self.fail_put_at:
                return httpx.Response(self.put_status)
            return httpx.Response(200)
        if request.url.path.endswith("/action/init"):
            return httpx.Response(200, json={"data": {"upload_id": "up-1", "upload_url": "https://upload.test/up-1"}})
        if request.url.path.endswith("/action/publish"):
            return httpx.Response(200, json={"data": {"publish_id": "pub-1"}})
        return httpx.Response(404)


class InstagramServer:
    def __init__(self, statuses: list[str], *, caption_status: int = 200):
        self.statuses = list(statuses)
        self.caption_status = caption_status
        self.polls = 0
        self.caption_requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path.endswith("/media"):
            return httpx.Response(200, json={"id": "container-1"})
        if request.method == "GET" and path.endswith("/container-1"):
            self.polls += 1
            status = self.statuses.pop(0) if self.statuses else "IN_PROGRESS"
            return httpx.Response(200, json={"status_code": status})
        if request.method == "POST" and path.endswith("/media_publish"):
            return httpx.Response(200, json={"id": "media-1"})
        if request.method == "POST" and path.endswith("/media-1"):
            self.caption_requests.append(request)
            return httpx.Response(self.caption_status, json={"success": self.caption_status < 400})
        return httpx.Response(404)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── TikTok chunking ──────────────────────────────────────────

def test_iter_chunks_covers_every_byte():
    data = bytes(range(10))
    chunks = list(iter_chunks(data, 4))
    assert [(start, end) for start, end, _ in chunks] == [(0, 4), (4, 8), (8, 10)]
    assert b"".join(chunk for _, _, chunk in chunks) == data


async def test_ten_mebibytes_upload_in_two_chunks():
    server = TikTokServer()
    async with _client(server) as http:
        client = TikTokClient(http, base_url="https://tiktok.test", chunk_size=5 * MiB)
        session = await client.init_upload("tok", 10 * MiB)
        sent = await client.upload_chunks(session.upload_url, b"\x01" * (10 * MiB))

    assert sent == 2
    assert [r.headers["Content-Range"] for r in server.puts] == [
        f"bytes 0-{5 * MiB - 1}/{10 * MiB}",
        f"bytes {5 * MiB}-{10 * MiB - 1}/{10 * MiB}",
    ]


@pytest.mark.parametrize("k", [1, 2, 3])
async def test_chunk_failure_aborts_upload(k):
    server = TikTokServer(fail_put_at=k)
    async with _client(server) as http:
        client = TikTokClient(http, base_url="https://tiktok.test", chunk_size=4)
        with pytest.raises(PlatformError) as exc_info:
            await client.upload_chunks("https://upload.test/up-1", b"0123456789ab")

    assert exc_info.value.code == "CHUNK_UPLOAD_FAILED"
    # k-1 chunks went through, nothing was sent after the failing one
    assert len(server.puts) == k
    assert not any(path.endswith("/action/publish") for path in server.paths)


async def test_init_sends_chunk_plan():
    requests = []

    def handler(request):
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"upload_id": "u", "upload_url": "https://upload.test/u"}})

    async with _client(handler) as http:
        await TikTokClient(http, base_url="https://tiktok.test", chunk_size=4).init_upload("tok", 10)

    assert requests[0]["source_info"]["total_chunk_count"] == 3


# ── Instagram polling ────────────────────────────────────────

async def test_error_status_stops_polling_immediately():
    server = InstagramServer(["ERROR"])
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    async with _client(server) as http:
        client = InstagramClient(http, base_url="https://graph.test", api_version="v18.0", poll_interval=10, sleep=sleep)
        with pytest.raises(PlatformError) as exc_info:
            await client.wait_until_finished("container-1", "tok")

    assert exc_info.value.code == "VIDEO_PROCESSING_ERROR"
    assert server.polls == 1
    assert sleeps == []


async def test_polling_gives_up_after_thirty_checks():
    server = InstagramServer(["IN_PROGRESS"] * 30)
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    async with _client(server) as http:
        client = InstagramClient(
            http, base_url="https://graph.test", api_version="v18.0",
            poll_interval=10, poll_attempts=30, sleep=sleep,
        )
        with pytest.raises(PlatformError) as exc_info:
            await client.wait_until_finished("container-1", "tok")

    assert exc_info.value.code == "VIDEO_PROCESSING_TIMEOUT"
    assert exc_info.value.retriable is False
    assert server.polls == 30
    assert sleeps == [10] * 29


async def test_caption_failure_does_not_fail_publish():
    server = InstagramServer(["IN_PROGRESS", "FINISHED"], caption_status=500)
    account = SocialAccount(platform="instagram", platform_user_id="ig-user", user_id="u1", encrypted_access_token="x")

    async with _client(server) as http:
        publisher = InstagramPublisher(
            http, sleep=no_sleep, base_url="https://graph.test", api_version="v18.0", poll_interval=0,
        )
        result = await publisher.publish(account, "tok", b"video", "Launch day")

    assert result.success
    assert result.external_id == "media-1"
    assert result.steps == ["container", "finished:2", "published", "caption_skipped"]


async def test_caption_is_posted_to_the_media_node():
    server = InstagramServer(["FINISHED"])
    account = SocialAccount(platform="instagram", platform_user_id="ig-user", user_id="u1", encrypted_access_token="x")

    async with _client(server) as http:
        publisher = InstagramPublisher(
            http, sleep=no_sleep, base_url="https://graph.test", api_version="v18.0", poll_interval=0,
        )
        result = await publisher.publish(account, "tok", b"video", "Launch day")

    assert result.steps == ["container", "finished:1", "published", "caption"]
    (request,) = server.caption_requests
    assert request.method == "POST"
    assert request.url.path == "/v18.0/media-1"
    assert json.loads(request.content) == {"caption": "Launch day"}


# ── Orchestrator ─────────────────────────────────────────────

@pytest.fixture
def cipher():
    return TokenCipher(Fernet.generate_key())


@pytest.fixture
async def publish_setup(add, storage, cipher):
    template = await add(Template(name="Promo"))
    project = await add(Project(user_id="u1", template_id=template.id, name="Launch", status=ProjectStatus.done.value))
    render = await add(Render(
        project_id=project.id, status=RenderStatus.done.value, minio_key="renders/r.mp4", file_size_bytes=6,
    ))
    account = await add(SocialAccount(
        user_id="u1", platform="tiktok", platform_user_id="tt-1",
        encrypted_access_token=cipher.encrypt("access-1"),
    ))
    log = await add(PublishLog(
        project_id=project.id, render_id=render.id, social_account_id=account.id,
        platform="tiktok", caption="hello world",
    ))
    storage.objects["renders/r.mp4"] = b"video!"
    return log, render, account


def _publish_job(log, render, account) -> PublishJob:
    return PublishJob(
        publish_log_id=log.id, platform=Platform.tiktok, render_id=render.id, social_account_id=account.id,
    )


async def test_publish_succeeds(session, reload, storage, cipher, publish_setup):
    log, render, account = publish_setup
    server = TikTokServer()

    async with _client(server) as http:
        outcome = await process_publish_job(
            session, _publish_job(log, render, account), storage=storage, http=http, cipher=cipher, sleep=no_sleep,
        )

    assert isinstance(outcome, Success)
    published = await reload(PublishLog, log.id)
    assert published.status == PublishStatus.published.value
    assert published.external_id == "pub-1"
    assert published.published_at is not None
    assert server.puts[0].content == b"video!"


async def test_inactive_account_fails_before_any_request(session, reload, storage, cipher, publish_setup, add):
    log, render, account = publish_setup
    account.is_active = False
    await add(account)
    server = TikTokServer()

    async with _client(server) as http:
        outcome = await process_publish_job(
            session, _publish_job(log, render, account), storage=storage, http=http, cipher=cipher,
        )

    assert isinstance(outcome, TerminalFailure)
    assert outcome.code == "ACCOUNT_INACTIVE"
    assert server.paths == []
    assert (await reload(PublishLog, log.id)).status == PublishStatus.failed.value


async def test_render_must_be_done(session, reload, storage, cipher, publish_setup, add):
    log, render, account = publish_setup
    render.minio_key = None
    await add(render)

    async with _client(TikTokServer()) as http:
        outcome = await process_publish_job(
            session, _publish_job(log, render, account), storage=storage, http=http, cipher=cipher,
        )

    assert isinstance(outcome, TerminalFailure)
    assert (await reload(PublishLog, log.id)).error_code == "RENDER_NOT_READY"


async def test_transient_chunk_failure_is_retried(session, reload, storage, cipher, publish_setup):
    log, render, account = publish_setup

    async with _client(TikTokServer(fail_put_at=1, put_status=503)) as http:
        outcome = await process_publish_job(
            session, _publish_job(log, render, account), storage=storage, http=http, cipher=cipher,
        )

    assert isinstance(outcome, RetryableFailure)
    assert outcome.code == "CHUNK_UPLOAD_FAILED"
    in_flight = await reload(PublishLog, log.id)
    assert in_flight.status == PublishStatus.uploading.value
    assert in_flight.error_code is None


async def test_rejected_chunk_fails_publish(session, reload, storage, cipher, publish_setup):
    log, render, account = publish_setup

    async with _client(TikTokServer(fail_put_at=1, put_status=400)) as http:
        outcome = await process_publish_job(
            session, _publish_job(log, render, account), storage=storage, http=http, cipher=cipher,
        )

    assert isinstance(outcome, TerminalFailure)
    failed = await reload(PublishLog, log.id)
    assert failed.status == PublishStatus.failed.value
    assert failed.error_code == "CHUNK_UPLOAD_FAILED"


async def test_published_log_is_skipped(session, storage, cipher, publish_setup, add):
    log, render, account = publish_setup
    log.status = PublishStatus.published.value
    await add(log)
    server = TikTokServer()

    async with _client(server) as http:
        outcome = await process_publish_job(
            session, _publish_job(log, render, account), storage=storage, http=http, cipher=cipher,
        )

    assert isinstance(outcome, Success)
    assert outcome.skipped
    assert server.paths == []

"""
Preflight checks: validate external dependencies for /health.

Results are cached for 60 seconds to avoid hammering dependencies.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import time
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from reelforge.db import AsyncSessionLocal
from reelforge.integrations.storage import get_storage
from reelforge.settings import get_settings

logger = logging.getLogger(__name__)

_cache: dict[str, Any] = {}
_cache_ts: float = 0.0
CACHE_TTL = 60  # seconds


async def _check_db() -> dict:
    """SELECT 1 on the database."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return {"check": "db", "ok": True, "detail": "connected"}
    except Exception as e:
        return {"check": "db", "ok": False, "detail": str(e)[:200]}


async def _check_redis() -> dict:
    """Ping the broker / semaphore Redis."""
    try:
        r = aioredis.from_url(get_settings().redis_url, decode_responses=True)
        pong = await r.ping()
        await r.aclose()
        return {"check": "redis", "ok": bool(pong), "detail": "pong" if pong else "no pong"}
    except Exception as e:
        return {"check": "redis", "ok": False, "detail": str(e)[:200]}


async def _check_storage() -> dict:
    """Blob store reachable and its bucket present (created if missing)."""
    storage = get_storage()
    try:
        await storage.ensure_bucket()
        return {"check": "blob_store", "ok": True, "detail": f"bucket {storage.bucket}"}
    except Exception as e:
        return {"check": "blob_store", "ok": False, "detail": str(e)[:200]}


async def _check_binary(name: str, args: list[str]) -> dict:
    """Check that a binary is on PATH and answers its version flag."""
    if not shutil.which(args[0]):
        return {"check": name, "ok": False, "detail": "not found in PATH"}
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=10)
        first_line = stdout.decode("utf-8", errors="replace").split("\n")[0][:120]
        return {"check": name, "ok": proc.returncode == 0, "detail": first_line or "ok"}
    except asyncio.TimeoutError:
        return {"check": name, "ok": False, "detail": "timeout"}
    except Exception as e:
        return {"check": name, "ok": False, "detail": str(e)[:200]}


def _check_config() -> list[dict]:
    settings = get_settings()
    return [
        {
            "check": "openai_api_key",
            "ok": bool(settings.openai_api_key),
            "detail": "set" if settings.openai_api_key else "missing (analysis/extraction will fail)",
        },
        {
            "check": "token_encryption_key",
            "ok": bool(settings.token_encryption_key),
            "detail": "set" if settings.token_encryption_key else "missing (publishing will fail)",
        },
    ]


async def run_preflight(*, force: bool = False) -> dict[str, Any]:
    """Run all preflight checks, return cached result if fresh."""
    global _cache, _cache_ts

    now = time.monotonic()
    if not force and _cache and (now - _cache_ts) < CACHE_TTL:
        return _cache

    settings = get_settings()
    checks = [
        await _check_db(),
        await _check_redis(),
        await _check_storage(),
        await _check_binary("ffmpeg", ["ffmpeg", "-version"]),
        await _check_binary("ffprobe", ["ffprobe", "-version"]),
        await _check_binary("yt-dlp", [settings.ytdlp_binary, "--version"]),
        *_check_config(),
    ]

    all_ok = all(c["ok"] for c in checks)
    result = {"ok": all_ok, "checks": checks, "cached_at": time.time()}

    _cache = result
    _cache_ts = now

    if not all_ok:
        failed = [c["check"] for c in checks if not c["ok"]]
        logger.warning(f"[preflight] FAILED checks: {failed}")
    else:
        logger.info("[preflight] All checks passed")

    return result

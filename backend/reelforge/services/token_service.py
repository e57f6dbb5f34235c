"""
Social account credentials: Fernet-encrypted at rest, refreshed near expiry.

Instagram long-lived tokens have no refresh grant here, so the stored token
is returned as is. TikTok tokens are refreshed in place through the OAuth
token endpoint once they are within the refresh margin.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import httpx
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.integrations.tiktok_api import TikTokClient
from reelforge.models import Platform, SocialAccount
from reelforge.settings import get_settings
from reelforge.services.errors import PlatformError

logger = logging.getLogger(__name__)


class TokenCipher:
    def __init__(self, key: str | bytes | None = None):
        key = key or get_settings().token_encryption_key
        if not key:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY is not configured")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        return self._fernet.decrypt(value.encode()).decode()


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def needs_refresh(account: SocialAccount, *, now: datetime | None = None, margin_sec: int | None = None) -> bool:
    expires_at = _aware(account.token_expires_at)
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    margin = timedelta(seconds=get_settings().token_refresh_margin_sec if margin_sec is None else margin_sec)
    return expires_at - now <= margin


async def get_valid_access_token(
    session: AsyncSession,
    account: SocialAccount,
    *,
    http: httpx.AsyncClient,
    cipher: TokenCipher | None = None,
) -> str:
    """Decrypted access token, refreshed first when close to expiry.

    Any failure here is terminal (TOKEN_EXPIRED): the user has to reconnect.
    """
    cipher = cipher or TokenCipher()
    try:
        access_token = cipher.decrypt(account.encrypted_access_token)
    except InvalidToken as exc:
        raise PlatformError("TOKEN_EXPIRED", "Stored access token cannot be decrypted", retriable=False) from exc

    if not needs_refresh(account):
        return access_token

    if account.platform != Platform.tiktok.value:
        # long-lived Instagram token: nothing to refresh with
        expires_at = _aware(account.token_expires_at)
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            raise PlatformError("TOKEN_EXPIRED", "Instagram access token has expired", retriable=False)
        return access_token

    if not account.encrypted_refresh_token:
        raise PlatformError("TOKEN_EXPIRED", "No refresh token stored for account", retriable=False)

    try:
        refresh_token = cipher.decrypt(account.encrypted_refresh_token)
        grant = await TikTokClient(http).refresh_token(refresh_token)
    except PlatformError:
        raise
    except (InvalidToken, httpx.HTTPError) as exc:
        raise PlatformError("TOKEN_EXPIRED", f"Unable to refresh access token: {exc}", retriable=False) from exc

    account.encrypted_access_token = cipher.encrypt(grant.access_token)
    if grant.refresh_token:
        account.encrypted_refresh_token = cipher.encrypt(grant.refresh_token)
    if grant.expires_in:
        account.token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(grant.expires_in))
    session.add(account)
    await session.commit()
    logger.info(f"[publish] refreshed tiktok token for account {account.id}")
    return grant.access_token

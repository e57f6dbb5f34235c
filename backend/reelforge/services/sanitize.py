"""
Credential scrubbing for anything persisted to an errorMessage column or logged.
"""
from __future__ import annotations

import re

# Patterns that match tokens/secrets in error strings and URLs
_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"access_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "access_token=***"),
    (re.compile(r"refresh_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "refresh_token=***"),
    (re.compile(r"client_secret=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "client_secret=***"),
    (re.compile(r"X-Amz-Signature=[A-Fa-f0-9]+"), "X-Amz-Signature=***"),
    # Generic long opaque tokens (40+ chars)
    (re.compile(r"[A-Za-z0-9\-_]{40,}"), "***TOKEN***"),
]

SENSITIVE_KEYS = frozenset({
    "access_token", "refresh_token", "client_secret", "client_key",
    "authorization", "cookie", "cookies",
})


def sanitize(text: str | None) -> str:
    """Strip credentials and tokens from error messages / response text."""
    if not text:
        return ""
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_dict(d: dict | None) -> dict | None:
    """Mask sensitive keys in a response dict before it is logged."""
    if not d:
        return d
    cleaned = {}
    for k, v in d.items():
        if k.lower() in SENSITIVE_KEYS:
            cleaned[k] = "***"
        elif isinstance(v, dict):
            cleaned[k] = sanitize_dict(v)
        else:
            cleaned[k] = v
    return cleaned

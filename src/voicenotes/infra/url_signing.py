"""
Time-limited media URLs.

A signed URL carries `expires` (unix seconds) and `signature`
(hex HMAC-SHA256 over "{rel_path}:{expires}"). The media route verifies both.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Optional
from urllib.parse import quote, urlencode

from src.voicenotes.config.settings import settings


def sign_media_path(rel_path: str, expires: int, *, secret: Optional[str] = None) -> str:
    key = (secret or settings.media_url_signing_secret).encode("utf-8")
    msg = f"{rel_path.lstrip('/')}:{int(expires)}".encode("utf-8")
    return hmac.new(key, msg, digestmod=hashlib.sha256).hexdigest()


def verify_media_signature(
    rel_path: str,
    expires: Optional[str],
    signature: Optional[str],
    *,
    secret: Optional[str] = None,
    now: Optional[float] = None,
) -> bool:
    if not expires or not signature:
        return False
    try:
        expires_at = int(expires)
    except (TypeError, ValueError):
        return False

    current = time.time() if now is None else now
    if expires_at < current:
        return False

    expected = sign_media_path(rel_path, expires_at, secret=secret)
    return hmac.compare_digest(expected, signature.strip())


def build_signed_media_url(
    *,
    rel_path: str,
    ttl_seconds: Optional[int] = None,
    base_url: Optional[str] = None,
    secret: Optional[str] = None,
    now: Optional[float] = None,
) -> str:
    """
    Build a publicly reachable, expiring URL for a file served by:
      GET /media/{rel_path:path}
    """
    base = (base_url or settings.media_public_base_url or settings.base_url or "").strip().rstrip("/")
    if not base:
        raise ValueError("No public base URL configured (MEDIA_PUBLIC_BASE_URL / BASE_URL)")

    rel = rel_path.lstrip("/")
    ttl = settings.media_url_ttl_seconds if ttl_seconds is None else ttl_seconds
    expires = int((time.time() if now is None else now) + ttl)
    query = urlencode({"expires": expires, "signature": sign_media_path(rel, expires, secret=secret)})
    return f"{base}/media/{quote(rel)}?{query}"

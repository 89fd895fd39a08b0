"""
Media hosting (ingress-side).

Purpose:
- Serve converted voice notes over HTTP so Twilio can fetch them as WhatsApp `media_url`.
- Only behind signed, expiring URLs (see infra/url_signing.py).

IMPORTANT:
- Twilio requires a publicly reachable HTTPS URL. In local dev, expose this service via
  ngrok and set MEDIA_PUBLIC_BASE_URL accordingly.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from src.voicenotes.config.settings import settings
from src.voicenotes.infra.media_storage import META_DIR, guess_content_type
from src.voicenotes.infra.url_signing import verify_media_signature
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)

router = APIRouter()


def _safe_resolve_under_root(*, root: Path, rel_path: str) -> Path:
    """
    Resolve a user-provided relative path safely under a root directory.
    Prevents path traversal.
    """
    candidate = (root / rel_path).resolve()
    root_resolved = root.resolve()
    if root_resolved in candidate.parents:
        return candidate
    raise HTTPException(status_code=400, detail="Invalid path")


@router.get("/media/{rel_path:path}")
def get_media(rel_path: str, expires: Optional[str] = None, signature: Optional[str] = None):
    if rel_path.startswith(f"{META_DIR}/"):
        raise HTTPException(status_code=404, detail="Not found")

    root = Path(settings.media_root_dir)
    path = _safe_resolve_under_root(root=root, rel_path=rel_path)

    if not verify_media_signature(rel_path, expires, signature):
        logger.warning("Rejected media request | path=%s | reason=bad_or_expired_signature", rel_path)
        raise HTTPException(status_code=403, detail="Invalid or expired link")

    if not path.exists() or not path.is_file():
        raise HTTPException(status_code=404, detail="Not found")
    return FileResponse(path, media_type=guess_content_type(rel_path))

"""
Voice-note storage path mapping.

Layout:
  raw       = {tenant}/voice-notes/{filename}
  converted = {tenant}/voice-notes/converted/{stem}{canonical_ext}

`{tenant}` may span several segments (e.g. "companies/acme"). Everything here is
pure string work; nothing touches storage.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Optional

from src.voicenotes.config.settings import settings

VOICE_NOTES_DIR = "voice-notes"
CONVERTED_DIR = "converted"


@dataclass(frozen=True)
class VoiceNotePath:
    tenant_prefix: str
    filename: str
    converted: bool

    @property
    def stem(self) -> str:
        return posixpath.splitext(self.filename)[0]

    @property
    def extension(self) -> str:
        return posixpath.splitext(self.filename)[1]


def parse_voice_note_path(path: Optional[str]) -> Optional[VoiceNotePath]:
    """
    Split a storage path into tenant prefix + filename.

    Returns None when the path is not directly under a tenant's voice-note
    namespace (or its converted sub-namespace).
    """
    if not path:
        return None
    parts = path.strip("/").split("/")
    if VOICE_NOTES_DIR not in parts:
        return None

    idx = parts.index(VOICE_NOTES_DIR)
    tenant_parts = parts[:idx]
    rest = parts[idx + 1 :]
    if not tenant_parts or not all(tenant_parts):
        return None

    tenant_prefix = "/".join(tenant_parts)
    if len(rest) == 1 and rest[0]:
        return VoiceNotePath(tenant_prefix=tenant_prefix, filename=rest[0], converted=False)
    if len(rest) == 2 and rest[0] == CONVERTED_DIR and rest[1]:
        return VoiceNotePath(tenant_prefix=tenant_prefix, filename=rest[1], converted=True)
    return None


def is_voice_note_path(path: Optional[str]) -> bool:
    parsed = parse_voice_note_path(path)
    return parsed is not None and not parsed.converted


def is_converted_path(path: Optional[str]) -> bool:
    parsed = parse_voice_note_path(path)
    return parsed is not None and parsed.converted


def to_converted_path(raw_path: str, *, extension: Optional[str] = None) -> str:
    """
    acme/voice-notes/note1.webm -> acme/voice-notes/converted/note1.ogg
    """
    parsed = parse_voice_note_path(raw_path)
    if parsed is None or parsed.converted:
        raise ValueError(f"Not a raw voice-note path: {raw_path!r}")
    ext = extension or settings.voice_note_extension
    return f"{parsed.tenant_prefix}/{VOICE_NOTES_DIR}/{CONVERTED_DIR}/{parsed.stem}{ext}"


def to_raw_path(converted_path: str, *, raw_extension: str) -> str:
    """
    Inverse of `to_converted_path`.

    The converted filename only keeps the stem, so the caller supplies the raw
    extension (known from the pending pointer or the upload record).
    """
    parsed = parse_voice_note_path(converted_path)
    if parsed is None or not parsed.converted:
        raise ValueError(f"Not a converted voice-note path: {converted_path!r}")
    ext = raw_extension if not raw_extension or raw_extension.startswith(".") else f".{raw_extension}"
    return f"{parsed.tenant_prefix}/{VOICE_NOTES_DIR}/{parsed.stem}{ext}"

"""
Audio domain package.

This centralizes:
- voice-note storage path mapping (raw <-> converted)
- the ffmpeg transcoder
- the transcode dispatcher (storage event -> converted artifact)
"""

from __future__ import annotations

from src.voicenotes.audio.dispatcher import DispatchOutcome, TranscodeDispatcher
from src.voicenotes.audio.paths import parse_voice_note_path, to_converted_path, to_raw_path
from src.voicenotes.audio.transcoder import TranscodeTarget, Transcoder

__all__ = [
    "DispatchOutcome",
    "TranscodeDispatcher",
    "TranscodeTarget",
    "Transcoder",
    "parse_voice_note_path",
    "to_converted_path",
    "to_raw_path",
]

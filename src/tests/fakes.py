"""Test doubles shared across the pipeline tests."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from src.voicenotes.audio.transcoder import Transcoder
from src.voicenotes.errors import TranscodeFailure
from src.voicenotes.store.models import TenantCredentials

ACME_CREDENTIALS = TenantCredentials(
    account_sid="AC123",
    auth_token="secret-token",
    whatsapp_from="whatsapp:+15550000000",
)


class FakeTranscoder(Transcoder):
    """Writes a fixed payload instead of running ffmpeg."""

    def __init__(self, *, fail: bool = False, output: bytes = b"OggS-converted") -> None:
        super().__init__()
        self.fail = fail
        self.output = output
        self.calls: List[tuple[str, str]] = []

    async def transcode(self, src_path: str, dst_path: str) -> None:
        self.calls.append((src_path, dst_path))
        if self.fail:
            raise TranscodeFailure("ffmpeg failed (exit=1): invalid data")
        with open(dst_path, "wb") as f:
            f.write(self.output)


class FakeSender:
    """Stands in for TwilioWhatsAppSender; records every outbound call."""

    def __init__(self, *, error: Optional[Exception] = None, sid: str = "SM0001") -> None:
        self.error = error
        self.sid = sid
        self.calls: List[Dict[str, Any]] = []

    def send_text_with_media(self, **kwargs: Any) -> str:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.sid

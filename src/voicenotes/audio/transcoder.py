"""
ffmpeg wrapper: any input audio -> canonical voice-note format.

The target (codec/bitrate/container) is fixed per process and comes from settings,
so every voice note that reaches WhatsApp is OGG/Opus at the same bitrate.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from typing import List, Optional

from src.voicenotes.config.settings import settings
from src.voicenotes.errors import TranscodeFailure
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class TranscodeTarget:
    codec: str
    bitrate: str
    container: str
    content_type: str

    @classmethod
    def from_settings(cls) -> "TranscodeTarget":
        return cls(
            codec=settings.voice_note_codec,
            bitrate=settings.voice_note_bitrate,
            container=settings.voice_note_format,
            content_type=settings.voice_note_content_type,
        )


class Transcoder:
    def __init__(
        self,
        *,
        target: Optional[TranscodeTarget] = None,
        ffmpeg_binary: Optional[str] = None,
    ) -> None:
        self.target = target or TranscodeTarget.from_settings()
        self.ffmpeg_binary = ffmpeg_binary or settings.ffmpeg_binary

    def build_command(self, src_path: str, dst_path: str) -> List[str]:
        return [
            self.ffmpeg_binary,
            "-y",
            "-i",
            src_path,
            "-vn",
            "-c:a",
            self.target.codec,
            "-b:a",
            self.target.bitrate,
            "-f",
            self.target.container,
            dst_path,
        ]

    async def transcode(self, src_path: str, dst_path: str) -> None:
        """
        Convert `src_path` into `dst_path`. Raises TranscodeFailure on any engine error.
        """
        if not shutil.which(self.ffmpeg_binary):
            raise TranscodeFailure(f"ffmpeg binary not found: {self.ffmpeg_binary!r}")

        cmd = self.build_command(src_path, dst_path)
        logger.debug("Running ffmpeg | cmd=%s", cmd)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await proc.communicate()
        except OSError as exc:
            raise TranscodeFailure(f"ffmpeg could not be started: {exc}") from exc

        if proc.returncode != 0:
            err = (stderr or b"").decode("utf-8", errors="replace")
            raise TranscodeFailure(f"ffmpeg failed (exit={proc.returncode}): {err[-2000:]}")

        logger.info(
            "Transcode finished | codec=%s | bitrate=%s | format=%s",
            self.target.codec,
            self.target.bitrate,
            self.target.container,
        )

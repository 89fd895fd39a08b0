"""
Transcode Dispatcher.

Responsibilities:
- Handle one "storage object finalized" event
- Filter by content type and voice-note namespace (skip the converted sub-namespace,
  since writing an artifact finalizes a storage object too)
- Copy canonical uploads verbatim, transcode everything else
- Write the result at the mapped converted path

IMPORTANT:
- No self-retry. A failed transcode leaves no artifact; the reconciliation scheduler's
  existence checks (and its retry ceiling) own what happens next.
- `dispatch` never raises; it returns a DispatchOutcome.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from enum import Enum
from typing import Optional

from src.voicenotes.audio.paths import parse_voice_note_path, to_converted_path
from src.voicenotes.audio.transcoder import Transcoder
from src.voicenotes.contracts.storage_event import StorageObjectEvent
from src.voicenotes.errors import TranscodeFailure
from src.voicenotes.infra.media_storage import MediaStorage
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)


class DispatchOutcome(str, Enum):
    SKIPPED_NO_PATH = "skipped_no_path"
    SKIPPED_NOT_AUDIO = "skipped_not_audio"
    SKIPPED_OUTSIDE_NAMESPACE = "skipped_outside_namespace"
    SKIPPED_ALREADY_CONVERTED = "skipped_already_converted"
    COPIED = "copied"
    TRANSCODED = "transcoded"
    FAILED = "failed"


def _normalize_content_type(content_type: Optional[str]) -> str:
    # "audio/ogg; codecs=opus" -> "audio/ogg"
    return (content_type or "").split(";", 1)[0].strip().lower()


class TranscodeDispatcher:
    def __init__(
        self,
        *,
        storage: MediaStorage,
        transcoder: Optional[Transcoder] = None,
        scratch_dir: Optional[str] = None,
    ) -> None:
        self.storage = storage
        self.transcoder = transcoder or Transcoder()
        self.scratch_dir = scratch_dir

    @property
    def canonical_content_type(self) -> str:
        return self.transcoder.target.content_type

    async def dispatch(self, event: StorageObjectEvent) -> DispatchOutcome:
        path = event.path
        content_type = _normalize_content_type(event.content_type)

        logger.info(
            "Storage object finalized | path=%s | content_type=%s | bucket=%s",
            path,
            content_type,
            event.bucket,
        )

        if not path:
            logger.info("No path on storage object; skipping")
            return DispatchOutcome.SKIPPED_NO_PATH

        if not content_type.startswith("audio/"):
            logger.info("Not an audio object; skipping | path=%s", path)
            return DispatchOutcome.SKIPPED_NOT_AUDIO

        parsed = parse_voice_note_path(path)
        if parsed is None:
            logger.info("Object not in a voice-notes namespace; skipping | path=%s", path)
            return DispatchOutcome.SKIPPED_OUTSIDE_NAMESPACE

        if parsed.converted:
            logger.info("Object already in converted namespace; skipping | path=%s", path)
            return DispatchOutcome.SKIPPED_ALREADY_CONVERTED

        converted_path = to_converted_path(path)

        if content_type == self.canonical_content_type:
            return await self._copy(path, converted_path)
        return await self._transcode(path, converted_path, parsed.extension)

    async def _copy(self, path: str, converted_path: str) -> DispatchOutcome:
        logger.info("Object already canonical; copying | src=%s | dst=%s", path, converted_path)
        try:
            await self.storage.copy(path, converted_path)
        except Exception:
            logger.exception("Copy to converted path failed | src=%s | dst=%s", path, converted_path)
            return DispatchOutcome.FAILED
        logger.info("Copied canonical voice note | dst=%s", converted_path)
        return DispatchOutcome.COPIED

    async def _transcode(self, path: str, converted_path: str, raw_ext: str) -> DispatchOutcome:
        work_dir = tempfile.mkdtemp(prefix="voice-note-", dir=self.scratch_dir)
        src_local = os.path.join(work_dir, f"input{raw_ext or '.bin'}")
        dst_local = os.path.join(work_dir, f"output{os.path.splitext(converted_path)[1]}")

        try:
            logger.info("Downloading voice note | path=%s", path)
            await self.storage.download(path, src_local)

            await self.transcoder.transcode(src_local, dst_local)

            logger.info("Uploading converted voice note | dst=%s", converted_path)
            await self.storage.upload(dst_local, converted_path, content_type=self.canonical_content_type)
        except TranscodeFailure as exc:
            logger.error("Voice note transcode failed | path=%s | error=%s", path, exc)
            return DispatchOutcome.FAILED
        except Exception:
            logger.exception("Voice note conversion failed | path=%s", path)
            return DispatchOutcome.FAILED
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info("Conversion complete | src=%s | dst=%s", path, converted_path)
        return DispatchOutcome.TRANSCODED

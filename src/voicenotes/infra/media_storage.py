"""
Media object storage.

Responsibilities:
- Existence checks, copies, downloads and uploads of voice-note objects
- Content-type metadata per object
- Time-limited access URLs for stored artifacts

NOTE:
- Object paths are relative ("acme/voice-notes/note1.webm").
- LocalMediaStorage keeps objects under settings.media_root_dir and their metadata
  under `<root>/.meta/`, so the served tree only contains media.
"""

from __future__ import annotations

import asyncio
import json
import mimetypes
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from src.voicenotes.config.settings import settings
from src.voicenotes.infra.url_signing import build_signed_media_url
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)

META_DIR = ".meta"


class MediaStorage(ABC):
    @abstractmethod
    async def exists(self, path: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def copy(self, src: str, dst: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def download(self, path: str, local_path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def upload(self, local_path: str, dst: str, *, content_type: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def content_type(self, path: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def signed_url(self, path: str, *, ttl_seconds: Optional[int] = None) -> str:
        raise NotImplementedError


def guess_content_type(path: str) -> Optional[str]:
    ext = os.path.splitext(path)[1].lower()
    if ext in (".ogg", ".opus", ".oga"):
        return "audio/ogg"
    if ext == ".webm":
        return "audio/webm"
    if ext == ".m4a":
        return "audio/mp4"
    mt, _ = mimetypes.guess_type(path)
    return mt


class LocalMediaStorage(MediaStorage):
    def __init__(self, root_dir: Optional[str] = None) -> None:
        self.root = Path(root_dir or settings.media_root_dir)

    def _resolve(self, rel_path: str) -> Path:
        """
        Resolve a relative object path safely under the media root.
        Prevents path traversal.
        """
        root_resolved = self.root.resolve()
        candidate = (root_resolved / rel_path.lstrip("/")).resolve()
        if root_resolved in candidate.parents:
            return candidate
        raise ValueError(f"Invalid object path: {rel_path!r}")

    def _meta_path(self, rel_path: str) -> Path:
        return self._resolve(f"{META_DIR}/{rel_path.lstrip('/')}.json")

    def _write_meta(self, rel_path: str, content_type: str) -> None:
        meta = self._meta_path(rel_path)
        meta.parent.mkdir(parents=True, exist_ok=True)
        meta.write_text(json.dumps({"contentType": content_type}), encoding="utf-8")

    def _read_meta(self, rel_path: str) -> Optional[str]:
        meta = self._meta_path(rel_path)
        if not meta.is_file():
            return None
        try:
            data = json.loads(meta.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning("Unreadable object metadata | path=%s", rel_path)
            return None
        ct = data.get("contentType") if isinstance(data, dict) else None
        return ct or None

    def write_bytes(self, rel_path: str, data: bytes, *, content_type: Optional[str] = None) -> None:
        """Store raw bytes (used by uploads outside the pipeline and by tests)."""
        dst = self._resolve(rel_path)
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst.write_bytes(data)
        if content_type:
            self._write_meta(rel_path, content_type)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).is_file)

    def _publish(self, local_path: Path, dst: str, content_type: Optional[str]) -> None:
        """
        Copy `local_path` next to `dst` and rename it into place, so readers never
        see a partial artifact.
        """
        dst_path = self._resolve(dst)
        dst_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = dst_path.with_name(f".{dst_path.name}.part")
        try:
            shutil.copyfile(local_path, tmp_path)
            if content_type:
                self._write_meta(dst, content_type)
            os.replace(tmp_path, dst_path)
        finally:
            tmp_path.unlink(missing_ok=True)

    async def copy(self, src: str, dst: str) -> None:
        def _copy() -> None:
            ct = self._read_meta(src) or guess_content_type(src)
            self._publish(self._resolve(src), dst, ct)

        await asyncio.to_thread(_copy)
        logger.debug("Object copied | src=%s | dst=%s", src, dst)

    async def download(self, path: str, local_path: str) -> None:
        await asyncio.to_thread(shutil.copyfile, self._resolve(path), local_path)

    async def upload(self, local_path: str, dst: str, *, content_type: str) -> None:
        await asyncio.to_thread(self._publish, Path(local_path), dst, content_type)
        logger.debug("Object uploaded | dst=%s | content_type=%s", dst, content_type)

    async def content_type(self, path: str) -> Optional[str]:
        ct = await asyncio.to_thread(self._read_meta, path)
        return ct or guess_content_type(path)

    async def signed_url(self, path: str, *, ttl_seconds: Optional[int] = None) -> str:
        return build_signed_media_url(rel_path=path, ttl_seconds=ttl_seconds)

"""
StorageObjectEvent contract.

A "newly finalized storage object" notification, as published by the ingress to the
storage-events Redis Stream and consumed by the transcode worker.

All values are string-safe for Redis Streams (decode_responses=True).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class StorageObjectEvent:
    path: Optional[str]
    content_type: str = ""
    bucket: str = ""

    @classmethod
    def from_notification(cls, payload: Mapping[str, Any]) -> "StorageObjectEvent":
        """
        Accepts both the GCS-style notification shape ({name, contentType, bucket})
        and the stream field shape ({path, content_type, bucket}).
        """
        path = payload.get("name") or payload.get("path") or None
        content_type = payload.get("contentType") or payload.get("content_type") or ""
        return cls(
            path=str(path).strip() or None if path else None,
            content_type=str(content_type).strip(),
            bucket=str(payload.get("bucket") or "").strip(),
        )

    def to_stream_fields(self) -> Dict[str, str]:
        return {
            "path": self.path or "",
            "content_type": self.content_type,
            "bucket": self.bucket,
        }

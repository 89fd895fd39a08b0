"""
Voice-note pipeline error taxonomy.

All of these are caught at per-object (dispatcher) or per-message (scheduler)
granularity; none is allowed to crash a worker loop.
"""

from __future__ import annotations

from typing import Optional


class VoiceNotePipelineError(Exception):
    """Base class for pipeline errors."""


class TranscodeFailure(VoiceNotePipelineError):
    """ffmpeg is missing or exited non-zero. No artifact is produced."""


class ArtifactNotYetReady(VoiceNotePipelineError):
    """The converted artifact does not exist yet. Expected; retried next tick."""


class DeliveryFailure(VoiceNotePipelineError):
    """The messaging gateway rejected the send, or the network failed."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class StoreWriteFailure(VoiceNotePipelineError):
    """A conversation-store write could not be applied."""


class PendingMediaExpired(VoiceNotePipelineError):
    """A placeholder passed its retry ceiling without its artifact appearing."""

"""Collaborator protocol definitions for the verification pipeline."""

from __future__ import annotations

from typing import Callable, Optional, Protocol

from .models import Evidence, ModerationVerdict, ProgressEvent, TranscriptionResult

ProgressSink = Callable[[ProgressEvent], None]


class TranscriberProtocol(Protocol):
    """Protocol that speech-to-text collaborators should implement."""

    def transcribe(
        self,
        audio_bytes: bytes,
        mime_hint: str,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        """Return text and confidence; empty text with zero confidence for unusable audio."""


class ModeratorProtocol(Protocol):
    """Protocol that moderation collaborators should implement."""

    def moderate(self, evidence: Evidence) -> ModerationVerdict:
        """Return an approve/reject verdict; raising aborts the job."""


class ObjectStorageProtocol(Protocol):
    """Protocol for the upload service used outside the verification path."""

    def upload(self, data: bytes, folder: str, mime_type: str) -> str:
        """Store the bytes and return a public URL."""


__all__ = [
    "ModeratorProtocol",
    "ObjectStorageProtocol",
    "ProgressSink",
    "TranscriberProtocol",
]

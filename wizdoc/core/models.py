"""Data model shared by capture, pipeline and application state."""

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# Owner used when no user has signed in yet
PLACEHOLDER_USER_ID = "previewUser"


class PipelineState(str, Enum):
    """States of the capture-to-card state machine, in execution order."""

    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    REFINING = "refining"
    PUBLISHING = "publishing"
    ABORTED = "aborted"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Card:
    """A structured teaching moment.

    Cards are built once, after every stage has succeeded, and never mutated
    afterwards.
    """

    user_id: str
    title: str
    evidence: str
    wisdom: str
    transcript: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly mapping of the card."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "evidence": self.evidence,
            "wisdom": self.wisdom,
            "transcript": self.transcript,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Card":
        """Build a card from :meth:`to_dict` output."""
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            title=str(data.get("title", "")),
            evidence=str(data.get("evidence", "")),
            wisdom=str(data.get("wisdom", "")),
            transcript=str(data.get("transcript", "")),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class AudioArtifact:
    """Finished recording handed from capture to the pipeline.

    Args:
        data: Encoded audio bytes (empty for a zero-length capture)
        duration: Length of the recording in seconds
        sample_rate: Sample rate negotiated with the device (Hz)
        format: Container/codec of ``data`` (e.g. ``'flac'``)
        reference: Object key once the audio has been staged in S3
    """

    data: bytes
    duration: float
    sample_rate: int
    format: str = "flac"
    reference: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.data or self.duration <= 0

    def as_payload(self) -> Dict[str, Any]:
        """Render the artifact as the body of a transcription request.

        A staged artifact is sent by reference; otherwise the audio travels
        inline, base64-encoded.
        """
        payload: Dict[str, Any] = {
            "format": self.format,
            "duration": round(self.duration, 3),
            "sample_rate": self.sample_rate,
        }
        if self.reference is not None:
            payload["audio_key"] = self.reference
        else:
            payload["audio"] = base64.b64encode(self.data).decode("ascii")
        return payload

"""Request bodies and response types for the remote pipeline stages.

Each stage posts the previous stage's output and decodes a small JSON object:

=============  ==========================================  ==================================
Stage          Request body                                Response body
=============  ==========================================  ==================================
transcribe     ``audio``/``audio_key``, format, duration    ``{"transcript": str}``
analyze        transcript, prompt, model                    ``{"analysis": str}``
generate       transcript, analysis, prompt, model          ``{"title", "evidence", "wisdom"}``
refine         transcript, title, evidence, wisdom, ...     ``{"title", "evidence", "wisdom"}``
=============  ==========================================  ==================================

Decoders raise ``KeyError``/``TypeError`` on a malformed body, which the API
client reports as :class:`~wizdoc.core.errors.DecodeFailure`.
"""

from dataclasses import dataclass
from typing import Any, Dict, Tuple

from .models import AudioArtifact, PipelineState

# Remote stages in execution order, with their endpoint names
REMOTE_STAGES: Tuple[Tuple[PipelineState, str], ...] = (
    (PipelineState.TRANSCRIBING, "transcribe"),
    (PipelineState.ANALYZING, "analyze"),
    (PipelineState.GENERATING, "generate"),
    (PipelineState.REFINING, "refine"),
)


def _text(data: Dict[str, Any], key: str) -> str:
    if not isinstance(data, dict):
        raise TypeError(f"expected a JSON object, got {type(data).__name__}")
    value = data[key]
    if not isinstance(value, str):
        raise TypeError(f"{key!r} must be a string, got {type(value).__name__}")
    return value.strip()


@dataclass(frozen=True)
class Transcription:
    transcript: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transcription":
        return cls(transcript=_text(data, "transcript"))


@dataclass(frozen=True)
class Analysis:
    analysis: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Analysis":
        return cls(analysis=_text(data, "analysis"))


@dataclass(frozen=True)
class CardDraft:
    """Structured fields returned by the generate and refine stages."""

    title: str
    evidence: str
    wisdom: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardDraft":
        return cls(
            title=_text(data, "title"),
            evidence=_text(data, "evidence"),
            wisdom=_text(data, "wisdom"),
        )


def transcribe_request(artifact: AudioArtifact) -> Dict[str, Any]:
    return artifact.as_payload()


def analyze_request(transcription: Transcription, prompt: str, model: str) -> Dict[str, Any]:
    return {
        "transcript": transcription.transcript,
        "prompt": prompt,
        "model": model,
    }


def generate_request(
    transcription: Transcription,
    analysis: Analysis,
    prompt: str,
    model: str,
) -> Dict[str, Any]:
    return {
        "transcript": transcription.transcript,
        "analysis": analysis.analysis,
        "prompt": prompt,
        "model": model,
    }


def refine_request(
    transcription: Transcription,
    draft: CardDraft,
    prompt: str,
    model: str,
) -> Dict[str, Any]:
    return {
        "transcript": transcription.transcript,
        "title": draft.title,
        "evidence": draft.evidence,
        "wisdom": draft.wisdom,
        "prompt": prompt,
        "model": model,
    }

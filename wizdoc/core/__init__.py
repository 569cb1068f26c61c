"""Core business logic for WizDoc."""

from .api import ApiConfig, RemoteAPIClient
from .capture import AudioCapture, PyAudioInput, list_input_devices
from .config import AppConfig
from .errors import (
    AlreadyRecording,
    AlreadyRunning,
    BadResponse,
    Cancelled,
    CaptureError,
    ConnectionFailed,
    DecodeFailure,
    DeviceUnavailable,
    NotRecording,
    PermissionDenied,
    PipelineError,
    StageFailed,
    TransportError,
    WizDocError,
)
from .log import RunJournal
from .models import AudioArtifact, Card, PipelineState
from .pipeline import PipelineController, RetryPolicy
from .processing import apply_gain, calculate_db_level, encode_audio
from .s3_upload import S3Uploader, build_object_key
from .state import AppSnapshot, AppState

__all__ = [
    "AppConfig",
    "ApiConfig",
    "AppSnapshot",
    "AppState",
    "AudioArtifact",
    "AudioCapture",
    "Card",
    "PipelineController",
    "PipelineState",
    "PyAudioInput",
    "RemoteAPIClient",
    "RetryPolicy",
    "RunJournal",
    "S3Uploader",
    "WizDocError",
    "CaptureError",
    "PermissionDenied",
    "DeviceUnavailable",
    "AlreadyRecording",
    "TransportError",
    "ConnectionFailed",
    "BadResponse",
    "DecodeFailure",
    "PipelineError",
    "AlreadyRunning",
    "NotRecording",
    "StageFailed",
    "Cancelled",
    "apply_gain",
    "calculate_db_level",
    "encode_audio",
    "build_object_key",
    "list_input_devices",
]

"""Error taxonomy for WizDoc.

Three families, all rooted at :class:`WizDocError`:

- :class:`CaptureError` – local microphone problems. Never retried; the
  controller stays ``idle`` and the user may try again.
- :class:`TransportError` – remote call failures raised by
  :class:`~wizdoc.core.api.RemoteAPIClient`. Retried by the pipeline up to
  its bound, then wrapped in :class:`StageFailed`.
- :class:`PipelineError` – terminal outcomes of a run.
"""

from typing import Optional


class WizDocError(Exception):
    """Base class for every error raised by WizDoc."""


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------

class CaptureError(WizDocError):
    """Raised when the microphone session cannot be used."""


class PermissionDenied(CaptureError):
    """Access to the input device was refused by the OS."""


class DeviceUnavailable(CaptureError):
    """No usable input device, or the audio backend is missing."""


class AlreadyRecording(CaptureError):
    """A capture session is already open."""


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class TransportError(WizDocError):
    """Raised when a remote request does not produce a usable response."""


class ConnectionFailed(TransportError):
    """Network-level failure: DNS, connect, read timeout, upload error."""


class BadResponse(TransportError):
    """The server answered with a status outside 200-299."""

    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"bad response (HTTP {status})")


class DecodeFailure(TransportError):
    """The response body could not be decoded into the expected type."""


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class PipelineError(WizDocError):
    """Terminal outcome of a pipeline run."""


class AlreadyRunning(PipelineError):
    """A run is already in progress for this session."""

    def __init__(self, state: object = None) -> None:
        self.state = state
        super().__init__(f"a run is already in progress (state: {state})")


class NotRecording(PipelineError):
    """Processing was requested while no capture is in progress."""


class StageFailed(PipelineError):
    """A remote stage failed after exhausting its retries."""

    def __init__(self, stage: object, cause: TransportError) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")


class Cancelled(PipelineError):
    """The run was cancelled by the user, or superseded by a newer run."""

    def __init__(self, stage: Optional[object] = None) -> None:
        self.stage = stage
        where = f" during {stage}" if stage is not None else ""
        super().__init__(f"run cancelled{where}")

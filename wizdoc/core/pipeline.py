"""Capture-to-card pipeline controller.

:class:`PipelineController` drives one run at a time through::

    idle -> recording -> transcribing -> analyzing -> generating
         -> refining -> publishing -> idle

with ``aborted`` reachable from every non-idle state. After an abort the
controller reports ``aborted`` to stage listeners and then settles back to
``idle`` so the next run can start.

Concurrency model:

1. **Presentation triggers** – :meth:`~PipelineController.begin_capture`,
   :meth:`~PipelineController.end_capture_and_process` and
   :meth:`~PipelineController.cancel_run` are called from the event loop.
2. **Run task** – the remote stages run inside one asyncio task per run,
   strictly in sequence. Cancelling that task is how in-flight requests are
   abandoned.
3. **Epoch guard** – every run carries the epoch it was started in. After
   each suspension the task checks it is still the current run; a stale run
   raises :class:`~wizdoc.core.errors.Cancelled` without touching
   :class:`~wizdoc.core.state.AppState`.

``AppState`` is written in three places only: ``is_processing`` is raised
on entering ``transcribing``, and it is cleared either by the atomic publish
or by the abort path.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from .api import ApiConfig, RemoteAPIClient
from .capture import AudioCapture
from .config import AppConfig, BACKOFF, BACKOFF_FACTOR, MAX_BACKOFF, MAX_RETRIES
from .errors import (
    AlreadyRunning,
    BadResponse,
    Cancelled,
    ConnectionFailed,
    NotRecording,
    PipelineError,
    StageFailed,
    TransportError,
)
from .log import RunJournal
from .models import PLACEHOLDER_USER_ID, AudioArtifact, Card, PipelineState
from .s3_upload import S3_ERRORS, S3Uploader
from .stages import (
    REMOTE_STAGES,
    Analysis,
    CardDraft,
    Transcription,
    analyze_request,
    generate_request,
    refine_request,
    transcribe_request,
)
from .state import AppState

StageListener = Callable[[str, PipelineState], None]

# Statuses worth another attempt besides 5xx
RETRYABLE_STATUSES = frozenset({408, 429})


@dataclass
class RetryPolicy:
    """Bounded per-stage retry with exponential backoff.

    Attempt ``n`` (1-based) that fails with a retryable error is followed by
    a sleep of ``backoff * backoff_factor ** (n - 1)`` seconds, capped at
    ``max_backoff``, unless ``max_retries`` retries have already been used.
    """

    max_retries: int = MAX_RETRIES
    backoff: float = BACKOFF
    backoff_factor: float = BACKOFF_FACTOR
    max_backoff: float = MAX_BACKOFF

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        """Build and validate a retry policy from mapping."""
        policy = cls(
            max_retries=int(data.get("max_retries", MAX_RETRIES)),
            backoff=float(data.get("backoff", BACKOFF)),
            backoff_factor=float(data.get("backoff_factor", BACKOFF_FACTOR)),
            max_backoff=float(data.get("max_backoff", MAX_BACKOFF)),
        )
        if policy.max_retries < 0:
            raise ValueError("retry.max_retries must be >= 0")
        if policy.backoff < 0 or policy.max_backoff < 0 or policy.backoff_factor < 1:
            raise ValueError("retry backoff values must be >= 0 and backoff_factor >= 1")
        return policy

    def delay(self, attempt: int) -> float:
        return min(self.max_backoff, self.backoff * self.backoff_factor ** (attempt - 1))

    def should_retry(self, error: TransportError, attempt: int) -> bool:
        if attempt > self.max_retries:
            return False
        if isinstance(error, ConnectionFailed):
            return True
        if isinstance(error, BadResponse):
            return error.status >= 500 or error.status in RETRYABLE_STATUSES
        return False


@dataclass
class PipelineRun:
    """One in-flight execution. Owned by the controller."""

    epoch: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: PipelineState = PipelineState.RECORDING
    artifact: Optional[AudioArtifact] = None
    outputs: Dict[PipelineState, Any] = field(default_factory=dict)
    cancelled: bool = False
    task: Optional["asyncio.Task[Card]"] = None


class PipelineController:
    """State machine sequencing capture, remote stages and publication."""

    def __init__(
        self,
        capture: AudioCapture,
        api: RemoteAPIClient,
        state: AppState,
        api_config: Optional[ApiConfig] = None,
        retry: Optional[RetryPolicy] = None,
        journal: Optional[RunJournal] = None,
        uploader: Optional[S3Uploader] = None,
    ) -> None:
        """Initialize the controller.

        Args:
            capture: Microphone owner
            api: Transport to the AI service
            state: Shared application state the controller publishes into
            api_config: Endpoint paths and prompt/model selection
            retry: Per-stage retry policy
            journal: Optional JSONL run journal
            uploader: Optional S3 staging for audio
        """
        self._capture = capture
        self._api = api
        self._state = state
        self._api_config = api_config or ApiConfig()
        self._retry = retry or RetryPolicy()
        self._journal = journal
        self._uploader = uploader

        self._epoch = 0
        self._run: Optional[PipelineRun] = None
        self._pipeline_state = PipelineState.IDLE
        self._listeners: List[StageListener] = []
        self.last_error: Optional[BaseException] = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        state: AppState,
        upload: bool = True,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> "PipelineController":
        """Wire a controller from ``.wizdoc.yml`` settings."""
        api_config = ApiConfig.from_dict(config.get_api_config())
        if prompt:
            api_config.prompt = prompt
        if model:
            api_config.model = model

        uploader = None
        s3_config = config.get_s3_config()
        if upload and s3_config:
            uploader = S3Uploader.from_dict(s3_config)
        elif upload:
            logger.debug("S3 staging disabled: no `s3` config found in .wizdoc.yml")

        return cls(
            capture=AudioCapture.from_config(config),
            api=RemoteAPIClient.from_config(api_config),
            state=state,
            api_config=api_config,
            retry=RetryPolicy.from_dict(config.get_retry_config()),
            journal=RunJournal(config.get_log_path()),
            uploader=uploader,
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._pipeline_state

    @property
    def run_id(self) -> Optional[str]:
        return self._run.id if self._run is not None else None

    @property
    def capture(self) -> AudioCapture:
        return self._capture

    @property
    def api(self) -> RemoteAPIClient:
        return self._api

    def on_stage(self, fn: StageListener) -> Callable[[], None]:
        """Register *fn* to be called with ``(run_id, state)`` on every transition."""
        self._listeners.append(fn)

        def unsubscribe() -> None:
            if fn in self._listeners:
                self._listeners.remove(fn)

        return unsubscribe

    # ------------------------------------------------------------------
    # Presentation triggers
    # ------------------------------------------------------------------

    def begin_capture(self) -> str:
        """Open the microphone and start a new run.

        Returns:
            The new run id.

        Raises:
            AlreadyRunning: The controller is not idle
            CaptureError: The microphone could not be acquired; state stays idle
        """
        if self._pipeline_state is not PipelineState.IDLE:
            raise AlreadyRunning(self._pipeline_state)

        self._capture.start()
        self._epoch += 1
        run = PipelineRun(epoch=self._epoch)
        self._run = run
        self._transition(run, PipelineState.RECORDING)
        return run.id

    async def end_capture_and_process(self) -> Card:
        """Stop recording, run every remote stage and publish the card.

        Raises:
            NotRecording: No capture is in progress
            AlreadyRunning: The current run is already processing
            StageFailed: A stage exhausted its retries or failed unrecoverably
            Cancelled: The run was cancelled or superseded
        """
        run = self._run
        if run is None or self._pipeline_state is PipelineState.IDLE:
            raise NotRecording("No capture in progress")
        if self._pipeline_state is not PipelineState.RECORDING:
            raise AlreadyRunning(self._pipeline_state)

        try:
            artifact = self._capture.stop()
            if artifact is None:
                raise NotRecording("Capture produced no audio")
        except Exception as error:
            self._abort(run, error)
            raise
        if artifact.is_empty:
            logger.warning(f"Run {run.id}: empty recording, sending anyway")
        run.artifact = artifact

        self._transition(run, PipelineState.TRANSCRIBING)
        # Listeners run synchronously and may have cancelled the run
        if self._is_current(run):
            self._state.set_processing(True)
        self._ensure_current(run, PipelineState.TRANSCRIBING)
        self._journal_write(
            "write_run_start",
            run_id=run.id,
            user_id=self._state.user_id,
            audio_duration_sec=artifact.duration,
            audio_format=artifact.format,
        )

        run.task = asyncio.ensure_future(self._drive(run))
        try:
            return await run.task
        except asyncio.CancelledError:
            # The task can be cancelled before its first step, in which case
            # _drive never ran its own abort path
            self._abort(run, Cancelled(run.state))
            if run.cancelled:
                raise Cancelled(run.state) from None
            raise

    def cancel_run(self) -> bool:
        """Abort the current run immediately.

        In-flight requests are cancelled best-effort; any response that still
        arrives is discarded by the epoch guard.

        Returns:
            ``True`` if a run was cancelled, ``False`` if the controller was idle.
        """
        run = self._run
        if run is None:
            return False

        stage = self._pipeline_state
        run.cancelled = True
        if run.task is not None and not run.task.done():
            run.task.cancel()
        self._abort(run, Cancelled(stage))
        logger.info(f"Run {run.id} cancelled during {stage}")
        return True

    # ------------------------------------------------------------------
    # Run task
    # ------------------------------------------------------------------

    async def _drive(self, run: PipelineRun) -> Card:
        prompt = self._api_config.prompt
        model = self._api_config.model
        try:
            transcription: Transcription = await self._run_stage(
                run, PipelineState.TRANSCRIBING, lambda: self._transcribe(run)
            )
            run.outputs[PipelineState.TRANSCRIBING] = transcription
            self._discard_audio(run)

            self._advance(run, PipelineState.ANALYZING)
            analysis: Analysis = await self._run_stage(
                run, PipelineState.ANALYZING,
                lambda: self._post(PipelineState.ANALYZING,
                                   analyze_request(transcription, prompt, model),
                                   Analysis.from_dict),
            )
            run.outputs[PipelineState.ANALYZING] = analysis

            self._advance(run, PipelineState.GENERATING)
            draft: CardDraft = await self._run_stage(
                run, PipelineState.GENERATING,
                lambda: self._post(PipelineState.GENERATING,
                                   generate_request(transcription, analysis, prompt, model),
                                   CardDraft.from_dict),
            )
            run.outputs[PipelineState.GENERATING] = draft

            self._advance(run, PipelineState.REFINING)
            refined: CardDraft = await self._run_stage(
                run, PipelineState.REFINING,
                lambda: self._post(PipelineState.REFINING,
                                   refine_request(transcription, draft, prompt, model),
                                   CardDraft.from_dict),
            )
            run.outputs[PipelineState.REFINING] = refined

            self._advance(run, PipelineState.PUBLISHING)
            return self._publish(run, transcription, refined)
        except asyncio.CancelledError:
            if run.cancelled:
                raise Cancelled(run.state) from None
            # Cancelled from outside (e.g. the caller's task went away)
            self._abort(run, Cancelled(run.state))
            raise
        except Exception as error:
            self._abort(run, error)
            raise

    async def _run_stage(
        self,
        run: PipelineRun,
        stage: PipelineState,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run one remote stage with bounded retry."""
        attempt = 0
        while True:
            attempt += 1
            started = time.monotonic()
            try:
                result = await call()
            except TransportError as error:
                self._ensure_current(run, stage)
                self._journal_stage(run, stage, attempt, started, error)
                if not self._retry.should_retry(error, attempt):
                    logger.error(f"Run {run.id}: {stage} failed on attempt {attempt}: {error}")
                    raise StageFailed(stage, error) from error

                delay = self._retry.delay(attempt)
                logger.warning(
                    f"Run {run.id}: {stage} attempt {attempt} failed ({error}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                self._ensure_current(run, stage)
                continue

            self._ensure_current(run, stage)
            self._journal_stage(run, stage, attempt, started, None)
            logger.debug(f"Run {run.id}: {stage} succeeded on attempt {attempt}")
            return result

    async def _transcribe(self, run: PipelineRun) -> Transcription:
        artifact = run.artifact
        if artifact is None:
            raise NotRecording("Audio was discarded before transcription")

        if self._uploader is not None and artifact.reference is None:
            filename = f"{run.id}.{artifact.format}"
            try:
                artifact.reference = await asyncio.to_thread(
                    self._uploader.upload_bytes,
                    artifact.data,
                    filename,
                    run.id,
                    self._state.user_id,
                )
            except S3_ERRORS as error:
                raise ConnectionFailed(f"audio upload failed: {error}") from error
            logger.info(f"Run {run.id}: audio staged at s3://{self._uploader.bucket}/{artifact.reference}")

        return await self._post(PipelineState.TRANSCRIBING, transcribe_request(artifact), Transcription.from_dict)

    async def _post(self, stage: PipelineState, body: Dict[str, Any], decode: Callable[[Any], Any]) -> Any:
        path = self._api_config.endpoint(_ENDPOINT_NAMES[stage])
        return await self._api.post(path, body, decode=decode)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _is_current(self, run: PipelineRun) -> bool:
        return self._run is run and run.epoch == self._epoch and not run.cancelled

    def _ensure_current(self, run: PipelineRun, stage: PipelineState) -> None:
        if not self._is_current(run):
            logger.debug(f"Run {run.id}: discarding stale {stage} result")
            raise Cancelled(stage)

    def _advance(self, run: PipelineRun, new_state: PipelineState) -> None:
        self._ensure_current(run, new_state)
        self._transition(run, new_state)

    def _transition(self, run: PipelineRun, new_state: PipelineState) -> None:
        self._pipeline_state = new_state
        if new_state not in (PipelineState.ABORTED, PipelineState.IDLE):
            run.state = new_state
        logger.info(f"Run {run.id}: -> {new_state}")
        for fn in list(self._listeners):
            try:
                fn(run.id, new_state)
            except Exception as error:
                logger.warning(f"Stage listener failed: {error}")

    def _discard_audio(self, run: PipelineRun) -> None:
        run.artifact = None
        self._capture.reset()

    def _publish(self, run: PipelineRun, transcription: Transcription, refined: CardDraft) -> Card:
        card = Card(
            user_id=self._state.user_id or PLACEHOLDER_USER_ID,
            title=refined.title,
            evidence=refined.evidence,
            wisdom=refined.wisdom,
            transcript=transcription.transcript,
        )
        self._state.publish(card)
        self._run = None
        self.last_error = None
        self._transition(run, PipelineState.IDLE)
        self._journal_write("write_run_end", run_id=run.id, outcome="published", card_id=card.id)
        return card

    def _abort(self, run: PipelineRun, error: BaseException) -> None:
        """Release everything the run holds and return to idle.

        No-op for a run that has already settled.
        """
        if self._run is not run:
            return

        self._run = None
        run.outputs.clear()
        run.artifact = None
        self._capture.reset()
        self._state.set_processing(False)
        self.last_error = error
        if isinstance(error, PipelineError):
            logger.warning(f"Run {run.id} aborted: {error}")
        else:
            logger.error(f"Run {run.id} aborted by unexpected error: {error!r}")
        self._transition(run, PipelineState.ABORTED)
        self._transition(run, PipelineState.IDLE)
        self._journal_write("write_run_end", run_id=run.id, outcome="aborted", error=str(error))

    def _journal_stage(
        self,
        run: PipelineRun,
        stage: PipelineState,
        attempt: int,
        started: float,
        error: Optional[TransportError],
    ) -> None:
        self._journal_write(
            "write_stage",
            run_id=run.id,
            stage=stage.value,
            attempt=attempt,
            ok=error is None,
            duration_sec=time.monotonic() - started,
            error=str(error) if error is not None else None,
        )

    def _journal_write(self, method: str, **fields: Any) -> None:
        """Append a journal record; a failing journal never affects the run."""
        if self._journal is None:
            return
        try:
            getattr(self._journal, method)(**fields)
        except OSError as error:
            logger.warning(f"Run journal write failed ({self._journal.path}): {error}")


_ENDPOINT_NAMES: Dict[PipelineState, str] = dict(REMOTE_STAGES)

"""Microphone capture for WizDoc.

Main public classes
-------------------
:class:`PyAudioInput`
    Thin wrapper over a PyAudio input stream. Audio arrives in PyAudio's
    callback thread and is handed to a single ``on_buffer`` callable.

:class:`AudioCapture`
    Owns one microphone session at a time. Buffers the incoming PCM, keeps
    a live dB level, emits elapsed-time ticks on a background timer and, on
    :meth:`AudioCapture.stop`, encodes the recording into an
    :class:`~wizdoc.core.models.AudioArtifact`.

The stream is **non-blocking**: :meth:`AudioCapture.start` returns as soon as
the device is open, and ticks run on their own daemon thread so the caller
never waits on them.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .config import AppConfig, CHANNEL, CHUNK, FILE_EXTENSION, RATE, TICK_INTERVAL
from .errors import AlreadyRecording, DeviceUnavailable, PermissionDenied
from .models import AudioArtifact
from .processing import apply_gain, calculate_db_level, encode_audio, pcm_duration

TickListener = Callable[[float], None]


def _load_pyaudio():
    try:
        import pyaudio
    except ImportError as error:
        raise DeviceUnavailable(
            "PyAudio is not installed; install it with: pip install 'wizdoc[audio]'"
        ) from error
    return pyaudio


def list_input_devices() -> List[Dict[str, Any]]:
    """List all available input audio devices.

    Returns:
        List of dicts with keys: id, name, channels, rate, is_default
    """
    pyaudio = _load_pyaudio()
    audio = pyaudio.PyAudio()
    try:
        try:
            default_device_id = int(audio.get_default_input_device_info()['index'])
        except (IOError, OSError):
            default_device_id = -1

        devices = []
        for i in range(audio.get_device_count()):
            device_info = audio.get_device_info_by_index(i)
            channels = int(device_info.get('maxInputChannels', 0))
            if channels <= 0:
                continue
            devices.append({
                "id": i,
                "name": device_info.get('name', 'Unknown'),
                "channels": channels,
                "rate": int(device_info.get('defaultSampleRate', 0)),
                "is_default": i == default_device_id,
            })
        return devices
    finally:
        audio.terminate()


class PyAudioInput:
    """Input stream backed by PyAudio."""

    def __init__(
        self,
        rate: int = RATE,
        chunk: int = CHUNK,
        channels: int = CHANNEL,
        device_id: Optional[int] = None,
    ) -> None:
        self._rate = rate
        self._chunk = chunk
        self.channels = channels
        self._device_id = device_id
        self._pyaudio = None
        self._audio_interface = None
        self._audio_stream = None
        self._on_buffer: Optional[Callable[[bytes], None]] = None

    def open(self, on_buffer: Callable[[bytes], None]) -> int:
        """Open the device and start streaming into *on_buffer*.

        Returns:
            The sample rate actually used.

        Raises:
            PermissionDenied: The OS refused access to the device
            DeviceUnavailable: PyAudio is missing or the device cannot be opened
        """
        self._pyaudio = _load_pyaudio()
        self._on_buffer = on_buffer
        self._audio_interface = self._pyaudio.PyAudio()
        try:
            if self._device_id is None:
                device_info = self._audio_interface.get_default_input_device_info()
            else:
                device_info = self._audio_interface.get_device_info_by_index(self._device_id)

            # Use the device's native sample rate
            rate = int(device_info.get('defaultSampleRate', self._rate))
            self._audio_stream = self._audio_interface.open(
                format=self._pyaudio.paInt16,
                channels=self.channels,
                rate=rate,
                input=True,
                input_device_index=self._device_id,
                frames_per_buffer=self._chunk,
                stream_callback=self._fill_buffer,
            )
        except PermissionError as error:
            self.close()
            raise PermissionDenied(f"Microphone access denied: {error}") from error
        except (OSError, ValueError) as error:
            self.close()
            if 'permission' in str(error).lower():
                raise PermissionDenied(f"Microphone access denied: {error}") from error
            raise DeviceUnavailable(f"Cannot open input device: {error}") from error

        logger.info(f"Input stream open: {device_info.get('name', 'Unknown')} @ {rate} Hz")
        return rate

    def close(self) -> None:
        """Stop the stream and release the device."""
        if self._audio_stream is not None:
            self._audio_stream.stop_stream()
            self._audio_stream.close()
            self._audio_stream = None
        if self._audio_interface is not None:
            self._audio_interface.terminate()
            self._audio_interface = None

    def _fill_buffer(
        self,
        in_data: bytes,
        frame_count: int,
        time_info: object,
        status_flags: object,
    ) -> tuple:
        """PyAudio callback: hand the buffer over and keep streaming."""
        if self._on_buffer is not None:
            self._on_buffer(in_data)
        return None, self._pyaudio.paContinue


class TickTimer:
    """Calls *callback* with the elapsed seconds every *interval* seconds."""

    def __init__(self, interval: float, callback: TickListener) -> None:
        self._interval = interval
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started_at = 0.0

    def start(self) -> None:
        self._stop_event.clear()
        self._started_at = time.monotonic()
        self._thread = threading.Thread(target=self._run, name="capture-ticks", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self._callback(time.monotonic() - self._started_at)


class AudioCapture:
    """Exclusive owner of the microphone for one recording at a time."""

    def __init__(
        self,
        input_stream: Optional[PyAudioInput] = None,
        tick_interval: float = TICK_INTERVAL,
        gain_factor: float = 1.0,
        file_format: str = FILE_EXTENSION,
    ) -> None:
        """Initialize the capture.

        Args:
            input_stream: Device wrapper; defaults to the system microphone
            tick_interval: Seconds between elapsed-time ticks
            gain_factor: Input gain applied to every buffer
            file_format: Container used to encode the artifact
        """
        self._input = input_stream if input_stream is not None else PyAudioInput()
        self._tick_interval = tick_interval
        self._gain_factor = gain_factor
        self._file_format = file_format

        self._lock = threading.Lock()
        self._buffer_lock = threading.Lock()
        self._frames: List[bytes] = []
        self._recording = False
        self._rate = RATE
        self._started_at: Optional[float] = None
        self._current_db_level = 0.0
        self._artifact: Optional[AudioArtifact] = None
        self._timer: Optional[TickTimer] = None
        self._tick_listeners: List[TickListener] = []

    @classmethod
    def from_config(cls, config: AppConfig) -> "AudioCapture":
        """Build a capture for the configured device."""
        device_id = config.get('device_id')
        input_stream = PyAudioInput(
            rate=int(config.get('rate', RATE)),
            chunk=int(config.get('chunk', CHUNK)),
            channels=int(config.get('channel', CHANNEL)),
            device_id=int(device_id) if device_id is not None else None,
        )
        return cls(
            input_stream=input_stream,
            tick_interval=float(config.get('tick_interval', TICK_INTERVAL)),
            gain_factor=float(config.get('gain', 1.0)),
            file_format=str(config.get('file_extension', FILE_EXTENSION)),
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_tick(self, fn: TickListener) -> Callable[[], None]:
        """Register *fn* to receive elapsed seconds while recording.

        Returns:
            A callable that unregisters the listener.
        """
        self._tick_listeners.append(fn)

        def unsubscribe() -> None:
            if fn in self._tick_listeners:
                self._tick_listeners.remove(fn)

        return unsubscribe

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    @property
    def current_db_level(self) -> float:
        return self._current_db_level

    @property
    def artifact(self) -> Optional[AudioArtifact]:
        return self._artifact

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Acquire the microphone and begin buffering audio.

        Raises:
            AlreadyRecording: A session is already open
            PermissionDenied: Access to the device was refused
            DeviceUnavailable: The device could not be opened
        """
        with self._lock:
            if self._recording:
                raise AlreadyRecording("A capture session is already open")

            self._artifact = None
            with self._buffer_lock:
                self._frames = []
            self._current_db_level = 0.0

            self._rate = self._input.open(self._on_buffer)
            self._recording = True
            self._started_at = time.monotonic()
            self._timer = TickTimer(self._tick_interval, self._emit_tick)
            self._timer.start()
        logger.info(f"Capture started at {self._rate} Hz")

    def stop(self) -> Optional[AudioArtifact]:
        """Release the microphone and return the finished artifact.

        Calling ``stop`` when not recording returns the last artifact (or
        ``None`` if nothing was ever recorded) without touching the device.
        """
        with self._lock:
            if not self._recording:
                return self._artifact

            self._input.close()
            if self._timer is not None:
                self._timer.stop()
                self._timer = None
            self._recording = False
            self._started_at = None

            with self._buffer_lock:
                pcm = b''.join(self._frames)
                self._frames = []

            channels = getattr(self._input, 'channels', CHANNEL)
            duration = pcm_duration(len(pcm), self._rate, channels)
            self._artifact = AudioArtifact(
                data=encode_audio(pcm, self._rate, channels, self._file_format),
                duration=duration,
                sample_rate=self._rate,
                format=self._file_format,
            )
        logger.info(f"Capture stopped: {duration:.1f}s of audio")
        return self._artifact

    def reset(self) -> None:
        """Stop if needed, drop the artifact and release everything."""
        if self._recording:
            self.stop()
        with self._lock:
            self._artifact = None
            with self._buffer_lock:
                self._frames = []
            self._started_at = None
            self._current_db_level = 0.0
        logger.debug("Capture reset")

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _on_buffer(self, in_data: bytes) -> None:
        """Collect one buffer from the input thread. Buffer only, no I/O."""
        processed = apply_gain(in_data, self._gain_factor)
        self._current_db_level = calculate_db_level(processed)
        with self._buffer_lock:
            self._frames.append(processed)

    def _emit_tick(self, elapsed: float) -> None:
        for fn in list(self._tick_listeners):
            try:
                fn(elapsed)
            except Exception as error:
                logger.warning(f"Tick listener failed: {error}")

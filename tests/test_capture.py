"""AudioCapture tests for WizDoc."""

import threading

import pytest

from conftest import FakeInput
from wizdoc.core import capture as capture_module
from wizdoc.core.capture import AudioCapture, PyAudioInput
from wizdoc.core.errors import AlreadyRecording, DeviceUnavailable, PermissionDenied


def test_stop_returns_encoded_artifact(capture, fake_input):
    capture.start()
    assert capture.is_recording
    fake_input.feed(2.0)
    artifact = capture.stop()

    assert artifact.duration == pytest.approx(2.0)
    assert artifact.sample_rate == 16000
    assert artifact.format == "flac"
    assert artifact.data[:4] == b"fLaC"
    assert not capture.is_recording
    assert fake_input.is_open is False


def test_stop_is_idempotent(capture, fake_input):
    capture.start()
    fake_input.feed(1.0)
    first = capture.stop()
    second = capture.stop()

    assert second is first
    assert fake_input.open_count == 1
    assert fake_input.close_count == 1


def test_stop_without_recording_returns_none(capture):
    assert capture.stop() is None


def test_zero_duration_artifact_is_valid(capture):
    capture.start()
    artifact = capture.stop()
    assert artifact.data == b""
    assert artifact.duration == 0.0
    assert artifact.is_empty


def test_start_while_recording_fails(capture, fake_input):
    capture.start()
    with pytest.raises(AlreadyRecording):
        capture.start()
    assert fake_input.open_count == 1
    capture.reset()


def test_open_failure_leaves_capture_idle():
    capture = AudioCapture(input_stream=FakeInput(error=DeviceUnavailable("no mic")))
    with pytest.raises(DeviceUnavailable):
        capture.start()
    assert not capture.is_recording
    assert capture.stop() is None


def test_reset_releases_and_discards(capture, fake_input):
    capture.start()
    fake_input.feed(0.5)
    capture.reset()

    assert not capture.is_recording
    assert fake_input.is_open is False
    assert capture.artifact is None
    assert capture.elapsed == 0.0

    # A fresh session starts clean
    capture.start()
    artifact = capture.stop()
    assert artifact.duration == 0.0


def test_ticks_are_emitted_while_recording(capture):
    ticks = []
    ticked = threading.Event()

    def on_tick(elapsed):
        ticks.append(elapsed)
        ticked.set()

    unsubscribe = capture.on_tick(on_tick)
    capture.start()
    try:
        assert ticked.wait(timeout=2.0)
    finally:
        capture.stop()
    unsubscribe()

    assert ticks[0] > 0
    count = len(ticks)
    ticked.clear()
    assert not ticked.wait(timeout=0.05)
    assert len(ticks) == count


def test_failing_tick_listener_does_not_stop_capture(capture, fake_input):
    called = threading.Event()

    def broken(elapsed):
        called.set()
        raise RuntimeError("boom")

    capture.on_tick(broken)
    capture.start()
    assert called.wait(timeout=2.0)
    fake_input.feed(0.25)
    artifact = capture.stop()
    assert artifact.duration == pytest.approx(0.25)


def test_gain_and_level_are_applied():
    fake_input = FakeInput()
    capture = AudioCapture(input_stream=fake_input, gain_factor=2.0)
    capture.start()
    fake_input.feed(0.1, amplitude=1000)
    loud = capture.current_db_level
    capture.stop()

    quiet_input = FakeInput()
    quiet = AudioCapture(input_stream=quiet_input)
    quiet.start()
    quiet_input.feed(0.1, amplitude=1000)
    assert loud > quiet.current_db_level > 0
    quiet.stop()


# ---------------------------------------------------------------------------
# PyAudioInput error mapping
# ---------------------------------------------------------------------------

class _FakeStream:
    def __init__(self):
        self.stopped = False
        self.closed = False

    def stop_stream(self):
        self.stopped = True

    def close(self):
        self.closed = True


def _fake_pyaudio(open_error=None):
    state = {"terminated": 0, "kwargs": None, "stream": None}

    class PyAudio:
        def get_default_input_device_info(self):
            return {"index": 0, "name": "Built-in Mic", "defaultSampleRate": 48000.0}

        def get_device_info_by_index(self, index):
            return {"index": index, "name": f"Device {index}", "defaultSampleRate": 44100.0}

        def open(self, **kwargs):
            if open_error is not None:
                raise open_error
            state["kwargs"] = kwargs
            state["stream"] = _FakeStream()
            return state["stream"]

        def terminate(self):
            state["terminated"] += 1

    module = type("pyaudio", (), {"PyAudio": PyAudio, "paInt16": 8, "paContinue": 0})
    return module, state


def test_pyaudio_input_opens_native_rate(monkeypatch):
    module, state = _fake_pyaudio()
    monkeypatch.setattr(capture_module, "_load_pyaudio", lambda: module)
    received = []

    stream = PyAudioInput(device_id=None)
    rate = stream.open(received.append)
    assert rate == 48000
    assert state["kwargs"]["input"] is True

    # The PyAudio callback forwards buffers and keeps streaming
    result = state["kwargs"]["stream_callback"](b"\x00\x01", 1, None, None)
    assert result == (None, 0)
    assert received == [b"\x00\x01"]

    stream.close()
    assert state["stream"].closed and state["terminated"] == 1


@pytest.mark.parametrize(
    "error, expected",
    [
        (PermissionError("mic blocked"), PermissionDenied),
        (OSError("[Errno -9997] Invalid sample rate"), DeviceUnavailable),
        (OSError("Permission denied by host"), PermissionDenied),
    ],
)
def test_pyaudio_input_maps_open_errors(monkeypatch, error, expected):
    module, state = _fake_pyaudio(open_error=error)
    monkeypatch.setattr(capture_module, "_load_pyaudio", lambda: module)

    with pytest.raises(expected):
        PyAudioInput(device_id=2).open(lambda data: None)
    assert state["terminated"] == 1


def test_missing_pyaudio_is_device_unavailable(monkeypatch):
    def missing():
        raise DeviceUnavailable("PyAudio is not installed")

    monkeypatch.setattr(capture_module, "_load_pyaudio", missing)
    capture = AudioCapture(input_stream=PyAudioInput())
    with pytest.raises(DeviceUnavailable):
        capture.start()
    assert not capture.is_recording

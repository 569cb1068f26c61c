"""Shared test fixtures for WizDoc tests."""

import json

import httpx
import numpy as np
import pytest

from wizdoc.core.api import ApiConfig, RemoteAPIClient
from wizdoc.core.capture import AudioCapture
from wizdoc.core.log import RunJournal
from wizdoc.core.pipeline import PipelineController, RetryPolicy
from wizdoc.core.state import AppState

BASE_URL = "https://wizdoc.test"

STAGE_RESPONSES = {
    "/transcribe": {"transcript": "Patient presents with chest pain radiating to the left arm."},
    "/analyze": {"analysis": "Classic presentation of acute coronary syndrome."},
    "/generate": {
        "title": "Recognizing ACS",
        "evidence": "ESC 2023 guidelines",
        "wisdom": "Get an ECG within ten minutes.",
    },
    "/refine": {
        "title": "Recognizing ACS early",
        "evidence": "ESC 2023 NSTE-ACS guidelines",
        "wisdom": "Get an ECG within ten minutes of arrival.",
    },
}


class FakeInput:
    """Stands in for PyAudioInput; audio is pushed with :meth:`feed`."""

    def __init__(self, rate=16000, channels=1, error=None):
        self.rate = rate
        self.channels = channels
        self.error = error
        self.open_count = 0
        self.close_count = 0
        self.is_open = False
        self._on_buffer = None

    def open(self, on_buffer):
        if self.error is not None:
            raise self.error
        self.open_count += 1
        self.is_open = True
        self._on_buffer = on_buffer
        return self.rate

    def close(self):
        self.close_count += 1
        self.is_open = False

    def feed(self, seconds, amplitude=1000):
        samples = np.full(int(self.rate * seconds), amplitude, dtype=np.int16)
        self._on_buffer(samples.tobytes())


class FakeService:
    """MockTransport handler scripting the AI service.

    Each path maps to a list of outcomes consumed in order (the last one
    repeats). An outcome is ``(status, json_body)``, an exception to raise,
    or an async callable taking the request.
    """

    def __init__(self, **scripts):
        self.calls = []
        self.scripts = {path: [(200, body)] for path, body in STAGE_RESPONSES.items()}
        self.scripts["/health"] = [(200, {"status": "ok"})]
        for name, outcomes in scripts.items():
            self.scripts["/" + name] = list(outcomes)

    def __call__(self, request):
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.calls.append((path, body))

        outcomes = self.scripts[path]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(request)
        status, payload = outcome
        return httpx.Response(status, json=payload)

    def paths(self):
        return [path for path, _ in self.calls]


def make_api(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteAPIClient(base_url=BASE_URL, client=client)


def make_controller(capture, state, api, journal=None, uploader=None, max_retries=1):
    return PipelineController(
        capture=capture,
        api=api,
        state=state,
        api_config=ApiConfig(base_url=BASE_URL),
        retry=RetryPolicy(max_retries=max_retries, backoff=0.0),
        journal=journal,
        uploader=uploader,
    )


@pytest.fixture
def fake_input():
    return FakeInput()


@pytest.fixture
def capture(fake_input):
    return AudioCapture(input_stream=fake_input, tick_interval=0.01)


@pytest.fixture
def app_state():
    return AppState()


@pytest.fixture
def journal(tmp_path):
    return RunJournal(tmp_path / "runs" / "runs.jsonl")

"""Core functionality tests for WizDoc."""

import base64
import json
from datetime import datetime, timezone

import numpy as np
import pytest
import yaml

from wizdoc.core import (
    AppConfig,
    AudioArtifact,
    Card,
    RetryPolicy,
    apply_gain,
    build_object_key,
    calculate_db_level,
    encode_audio,
)
from wizdoc.core.processing import pcm_duration
from wizdoc.core.errors import BadResponse, ConnectionFailed, DecodeFailure, StageFailed
from wizdoc.core.models import PipelineState
from wizdoc.core.s3_upload import S3Config, S3Uploader


def test_calculate_db_level():
    """Silence is 0 dB, a signal lands inside the 0-120 scale."""
    silence = np.zeros(16000, dtype=np.int16).tobytes()
    assert calculate_db_level(silence) == 0.0

    tone = (np.ones(16000, dtype=np.int16) * 1000).tobytes()
    assert 0 < calculate_db_level(tone) <= 120
    assert calculate_db_level(b"") == 0.0


def test_apply_gain():
    audio_data = (np.ones(16000, dtype=np.int16) * 1000).tobytes()

    assert apply_gain(audio_data, 1.0) == audio_data

    doubled = np.frombuffer(apply_gain(audio_data, 2.0), dtype=np.int16)
    assert len(doubled) == 16000
    assert doubled[0] == 2000

    clipped = np.frombuffer(apply_gain(audio_data, 100.0), dtype=np.int16)
    assert clipped.max() == 32767


def test_encode_audio():
    pcm = (np.ones(1600, dtype=np.int16) * 500).tobytes()
    assert encode_audio(pcm, 16000)[:4] == b"fLaC"
    assert encode_audio(pcm, 16000, file_format="wav")[:4] == b"RIFF"
    assert encode_audio(b"", 16000) == b""


def test_pcm_duration():
    assert pcm_duration(32000, 16000) == 1.0
    assert pcm_duration(32000, 16000, channels=2) == 0.5
    assert pcm_duration(100, 0) == 0.0


def test_app_config_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = AppConfig()

    assert config.get("rate") == 44100
    assert config.get("device_id") is None
    config.set("rate", 16000)
    assert config.get("rate") == 16000

    api = config.get_api_config()
    assert api["base_url"] == "https://your-api-base-url.com"
    assert api["endpoints"]["transcribe"] == "/transcribe"
    assert config.get_retry_config()["max_retries"] == 1
    assert config.get_s3_config() is None

    output_dir = config.get_output_dir()
    assert output_dir.exists()


def test_app_config_loads_yaml(tmp_path, monkeypatch):
    config_file = tmp_path / ".wizdoc.yml"
    config_file.write_text(
        yaml.safe_dump(
            {
                "recording": {"rate": 22050, "device_id": 3, "tick_interval": 0.5},
                "api": {
                    "base_url": "https://ai.example.org",
                    "endpoints": {"refine": "/v2/refine"},
                    "model": "llama-3.3-70b",
                },
                "retry": {"max_retries": 3},
                "s3": {"bucket": "audio", "endpoint_url": "https://s3.test", "access_key": "a", "secret_key": "b"},
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    config = AppConfig()

    assert config.get("rate") == 22050
    assert config.get("device_id") == 3
    assert config.get("tick_interval") == 0.5

    api = config.get_api_config()
    assert api["base_url"] == "https://ai.example.org"
    assert api["endpoints"]["refine"] == "/v2/refine"
    assert api["endpoints"]["analyze"] == "/analyze"
    assert api["model"] == "llama-3.3-70b"
    assert api["prompt"] == "Default Prompt"

    retry = config.get_retry_config()
    assert retry["max_retries"] == 3
    assert retry["backoff"] == 0.5
    assert config.get_s3_config()["bucket"] == "audio"


def test_app_config_rejects_non_mapping(tmp_path, monkeypatch):
    (tmp_path / ".wizdoc.yml").write_text("- just\n- a list\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ValueError):
        AppConfig()


def test_log_path_default_and_override(tmp_path, monkeypatch):
    from wizdoc.core.config import LOG_FILE

    monkeypatch.chdir(tmp_path)
    log_path = AppConfig().get_log_path(tmp_path / "runs")
    assert log_path.name == LOG_FILE
    assert log_path.parent == tmp_path / "runs"

    (tmp_path / ".wizdoc.yml").write_text(yaml.safe_dump({"log": {"file": "wizdoc.jsonl"}}), encoding="utf-8")
    assert AppConfig().get_log_path(tmp_path).name == "wizdoc.jsonl"


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

def test_retry_policy_backoff_curve():
    policy = RetryPolicy(max_retries=4, backoff=0.5, backoff_factor=2.0, max_backoff=3.0)
    assert [policy.delay(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]


def test_retry_policy_classifies_errors():
    policy = RetryPolicy(max_retries=1)
    assert policy.should_retry(ConnectionFailed("reset"), 1)
    assert policy.should_retry(BadResponse(500), 1)
    assert policy.should_retry(BadResponse(429), 1)
    assert not policy.should_retry(BadResponse(500), 2)
    assert not policy.should_retry(BadResponse(404), 1)
    assert not policy.should_retry(DecodeFailure("garbage"), 1)


def test_retry_policy_from_dict_validates():
    assert RetryPolicy.from_dict({"max_retries": 2}).max_retries == 2
    with pytest.raises(ValueError):
        RetryPolicy.from_dict({"max_retries": -1})
    with pytest.raises(ValueError):
        RetryPolicy.from_dict({"backoff_factor": 0.5})


def test_stage_failed_names_stage_and_cause():
    error = StageFailed(PipelineState.TRANSCRIBING, BadResponse(500))
    assert str(error) == "transcribing failed: bad response (HTTP 500)"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

def test_card_round_trip_and_identity():
    created = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)
    card = Card(user_id="u", title="t", evidence="e", wisdom="w", transcript="x", created_at=created)
    assert Card.from_dict(card.to_dict()) == card
    assert card.to_dict()["created_at"] == "2026-10-19T09:30:00+00:00"

    other = Card(user_id="u", title="t", evidence="e", wisdom="w", transcript="x")
    assert other.id != card.id
    assert other.created_at.tzinfo is not None


def test_artifact_payload_inline_and_by_reference():
    artifact = AudioArtifact(data=b"fLaC1234", duration=12.0004, sample_rate=44100)
    payload = artifact.as_payload()
    assert base64.b64decode(payload["audio"]) == b"fLaC1234"
    assert payload["duration"] == 12.0
    assert "audio_key" not in payload

    artifact.reference = "dr-lee/run-1/run-1.flac"
    payload = artifact.as_payload()
    assert payload["audio_key"] == "dr-lee/run-1/run-1.flac"
    assert "audio" not in payload


# ---------------------------------------------------------------------------
# Object keys and S3
# ---------------------------------------------------------------------------

def test_build_object_key_without_user():
    key = build_object_key(filename="tmp/run-1.flac", run_id="run-1")
    assert key == "run-1/run-1.flac"


def test_build_object_key_with_user_and_prefix():
    key = build_object_key(
        filename="run-2.flac",
        run_id="run-2",
        user_id="dr-lee",
        prefix="/teaching/moments/",
    )
    assert key == "teaching/moments/dr-lee/run-2/run-2.flac"


def test_s3_uploader_check_bucket_and_upload():
    """check_bucket reports reachability; upload_bytes writes under the run key."""
    import botocore.exceptions

    calls = {}

    class DummyClient:
        def __init__(self, succeed):
            self._succeed = succeed

        def head_bucket(self, Bucket):
            calls["bucket"] = Bucket
            if not self._succeed:
                raise botocore.exceptions.ClientError(
                    {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadBucket"
                )
            return {}

        def put_object(self, Bucket, Key, Body):
            calls["put"] = (Bucket, Key, Body)

    uploader = S3Uploader.from_dict({
        "bucket": "test-bucket",
        "endpoint_url": "https://s3.example.test",
        "access_key": "abc",
        "secret_key": "def",
        "prefix": "audio",
    })

    uploader._client = DummyClient(succeed=True)
    assert uploader.check_bucket() is True
    assert calls["bucket"] == "test-bucket"

    key = uploader.upload_bytes(b"data", "run-3.flac", run_id="run-3", user_id="u1")
    assert key == "audio/u1/run-3/run-3.flac"
    assert calls["put"] == ("test-bucket", key, b"data")

    uploader._client = DummyClient(succeed=False)
    assert uploader.check_bucket() is False


def test_s3_config_requires_fields():
    with pytest.raises(ValueError):
        S3Uploader.from_dict({"bucket": "only-bucket"})


def test_s3_config_client_options():
    config = S3Config.from_dict({
        "bucket": "b",
        "endpoint_url": "https://s3.example.test",
        "access_key": "a",
        "secret_key": "s",
        "region": "eu-west-1",
        "path_style": False,
    })
    options = config.client_options()
    assert options["region_name"] == "eu-west-1"
    assert options["aws_access_key_id"] == "a"
    assert options["config"].s3 == {"addressing_style": "virtual"}


# ---------------------------------------------------------------------------
# Run journal
# ---------------------------------------------------------------------------

def test_journal_records(journal):
    journal.write_run_start(run_id="r1", user_id=None, audio_duration_sec=12.0, audio_format="flac")
    journal.write_stage(run_id="r1", stage="transcribing", attempt=1, ok=False,
                        duration_sec=0.4123, error="bad response (HTTP 500)")
    journal.write_run_end(run_id="r1", outcome="aborted", error="transcribing failed")

    lines = [json.loads(line) for line in journal.path.read_text().splitlines() if line.strip()]
    assert [(r["type"], r.get("event")) for r in lines] == [("run", "start"), ("stage", None), ("run", "end")]

    start, stage, end = lines
    assert start["audio_duration_sec"] == 12.0
    assert start["user_id"] is None
    assert "started_at" in start
    assert stage["duration_sec"] == 0.412
    assert stage["ok"] is False
    assert end["outcome"] == "aborted"
    assert end["card_id"] is None
    assert "ended_at" in end

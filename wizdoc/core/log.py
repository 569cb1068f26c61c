"""Local JSONL run journal for WizDoc.

Appends structured JSON Lines entries describing every pipeline run: when it
started, how each remote stage attempt went, and how the run ended.

Record types
------------
``run`` (event=``"start"``)
    Written once when processing begins, with the audio artifact summary.

``stage``
    Written once per remote attempt with its outcome and wall-clock time.

``run`` (event=``"end"``)
    Written once when the run publishes a card or aborts.

Example log lines::

    {"type":"run","event":"start","run_id":"5f0c...","user_id":"dr-lee","audio_duration_sec":12.0,"audio_format":"flac","started_at":"2026-10-19T09:30:22"}
    {"type":"stage","run_id":"5f0c...","stage":"transcribing","attempt":1,"ok":false,"duration_sec":0.412,"error":"bad response (HTTP 500)","at":"2026-10-19T09:30:23"}
    {"type":"stage","run_id":"5f0c...","stage":"transcribing","attempt":2,"ok":true,"duration_sec":1.873,"error":null,"at":"2026-10-19T09:30:25"}
    {"type":"run","event":"end","run_id":"5f0c...","outcome":"published","card_id":"a1b2...","error":null,"ended_at":"2026-10-19T09:30:31"}
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


class RunJournal:
    """Appends JSONL entries for pipeline runs and their stage attempts.

    Thread-safe: a single :class:`threading.Lock` serialises file writes.

    Args:
        log_path: Path to the ``.jsonl`` file. Parent directories are
            created automatically.
    """

    def __init__(self, log_path: Path) -> None:
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        self._log_path = log_path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._log_path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def write_run_start(
        self,
        run_id: str,
        user_id: Optional[str],
        audio_duration_sec: float,
        audio_format: str,
        started_at: Optional[datetime] = None,
    ) -> None:
        """Append a run-start record."""
        self._append({
            "type": "run",
            "event": "start",
            "run_id": run_id,
            "user_id": user_id,
            "audio_duration_sec": round(audio_duration_sec, 3),
            "audio_format": audio_format,
            "started_at": _iso(started_at),
        })

    def write_stage(
        self,
        run_id: str,
        stage: str,
        attempt: int,
        ok: bool,
        duration_sec: float,
        error: Optional[str] = None,
    ) -> None:
        """Append one remote stage attempt.

        Args:
            run_id: Parent run identifier.
            stage: Pipeline state the attempt belongs to.
            attempt: 1-based attempt number within the stage.
            ok: ``True`` if the attempt produced a decoded response.
            duration_sec: Wall-clock time spent on the attempt.
            error: Error description for failed attempts.
        """
        self._append({
            "type": "stage",
            "run_id": run_id,
            "stage": stage,
            "attempt": attempt,
            "ok": ok,
            "duration_sec": round(duration_sec, 3),
            "error": error,
            "at": _iso(None),
        })

    def write_run_end(
        self,
        run_id: str,
        outcome: str,
        card_id: Optional[str] = None,
        error: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> None:
        """Append a run-end record (``outcome`` is ``published`` or ``aborted``)."""
        self._append({
            "type": "run",
            "event": "end",
            "run_id": run_id,
            "outcome": outcome,
            "card_id": card_id,
            "error": error,
            "ended_at": _iso(ended_at),
        })

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _append(self, record: dict) -> None:
        """Serialise *record* as JSON and append it to the log file."""
        line = json.dumps(record, ensure_ascii=False) + "\n"
        with self._lock:
            with self._log_path.open("a", encoding="utf-8") as fh:
                fh.write(line)


def _iso(dt: Optional[datetime]) -> str:
    """Return a compact ISO 8601 string for *dt*, defaulting to now."""
    if dt is None:
        dt = datetime.now()
    return dt.replace(microsecond=0).isoformat()

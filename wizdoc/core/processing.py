"""Audio processing utilities for WizDoc.

Level metering and gain run on every captured buffer; encoding runs once
when a capture is stopped.
"""

import io

import numpy as np
import soundfile as sf
from loguru import logger

from .config import SAMPLE_WIDTH_INT16

MAX_INT16 = 32768


def calculate_db_level(audio_data: bytes) -> float:
    """Calculate dB level from int16 audio data.

    Args:
        audio_data: Raw audio bytes

    Returns:
        dB level (0-120 range)
    """
    try:
        audio_array = np.frombuffer(audio_data, dtype=np.int16)
        if audio_array.size == 0:
            return 0.0

        rms = np.sqrt(np.mean(audio_array.astype(float) ** 2))

        # Reference is max int16 value, shifted into 0-120
        if rms > 0:
            db = 20 * np.log10(rms / MAX_INT16)
            db = max(0.0, min(120.0, db + 120))
        else:
            db = 0.0

        return float(db)
    except ValueError as e:
        logger.debug(f"Error calculating dB level: {e}")
        return 0.0


def apply_gain(audio_data: bytes, gain_factor: float = 1.0) -> bytes:
    """Apply gain/amplification to int16 audio data.

    Args:
        audio_data: Raw audio bytes (int16)
        gain_factor: Gain multiplier (1.0 = no change, 2.0 = +6dB, 0.5 = -6dB)

    Returns:
        Amplified audio data as bytes
    """
    if gain_factor == 1.0:
        return audio_data

    try:
        audio_array = np.frombuffer(audio_data, dtype=np.int16).astype(np.float32)
        audio_array = np.clip(audio_array * gain_factor, -(MAX_INT16 - 1), MAX_INT16 - 1)
        return audio_array.astype(np.int16).tobytes()
    except ValueError as e:
        logger.debug(f"Error applying gain: {e}")
        return audio_data


def encode_audio(pcm: bytes, rate: int, channels: int = 1, file_format: str = 'flac') -> bytes:
    """Encode raw int16 PCM into an in-memory audio file.

    Args:
        pcm: Interleaved int16 samples
        rate: Sample rate in Hz
        channels: Number of interleaved channels
        file_format: A soundfile container (flac, wav, ogg)

    Returns:
        Encoded file contents, or ``b''`` when there is no audio
    """
    samples = np.frombuffer(pcm, dtype=np.int16)
    if samples.size == 0:
        return b''

    # Normalize to float32 for soundfile (-1.0 to 1.0 range)
    audio = samples.astype(np.float32) / MAX_INT16
    if channels > 1:
        audio = audio.reshape(-1, channels)

    # Lossy containers pick their own subtype
    subtype = 'PCM_16' if file_format.lower() in ('flac', 'wav') else None
    buffer = io.BytesIO()
    sf.write(buffer, audio, rate, format=file_format.upper(), subtype=subtype)
    return buffer.getvalue()


def pcm_duration(pcm_length: int, rate: int, channels: int = 1, sample_width: int = SAMPLE_WIDTH_INT16) -> float:
    """Return the duration in seconds of *pcm_length* bytes of PCM."""
    if rate <= 0:
        return 0.0
    return pcm_length / float(rate * channels * sample_width)

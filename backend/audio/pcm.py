"""PCM conversion and measurement utilities."""
import io
import wave

import numpy as np


def pcm16le_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian mono bytes to float32 in [-1.0, 1.0).

    Runtime-safe, adapter-agnostic utility.
    No resampling. No channel mixing.
    """
    if len(pcm_bytes) % 2 != 0:
        # Truncated sample; caller should treat as malformed frame upstream.
        pcm_bytes = pcm_bytes[: len(pcm_bytes) - 1]

    audio_i16 = np.frombuffer(pcm_bytes, dtype="<i2")  # little-endian int16
    audio_f32 = audio_i16.astype(np.float32) / 32768.0
    return audio_f32


def rms(samples: np.ndarray) -> float:
    """Root-mean-square energy of float samples; 0.0 for an empty array."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def pcm16_to_wav(pcm_bytes: bytes, *, sample_rate_hz: int) -> bytes:
    """Wrap mono PCM16 LE bytes in a WAV container (for file-based APIs)."""
    out = io.BytesIO()
    with wave.open(out, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate_hz)
        wav.writeframes(pcm_bytes)
    return out.getvalue()

"""
A minimal, energy-based voice activity classifier.

Classifies one PCM16 frame at a time as voiced or silent by comparing its
RMS energy with a fixed threshold. Debouncing (onset frames, silence
timeout) is the segmenter's job, not this module's.
"""
from audio.pcm import pcm16le_to_float32, rms


class EnergyVAD:
    """
    Stateless RMS-energy voice activity classifier.

    threshold:
        RMS energy of float32 samples in [-1.0, 1.0) at or above which a
        frame counts as voiced.
    """
    def __init__(self, threshold: float):
        if threshold <= 0:
            raise ValueError("threshold must be > 0")
        self._threshold = threshold

    @property
    def threshold(self) -> float:
        return self._threshold

    def energy(self, pcm_bytes: bytes) -> float:
        """RMS energy of a PCM16 LE payload."""
        return rms(pcm16le_to_float32(pcm_bytes))

    def is_voiced(self, pcm_bytes: bytes) -> bool:
        """True if the frame's energy reaches the threshold."""
        return self.energy(pcm_bytes) >= self._threshold

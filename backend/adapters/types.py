"""
Worker adapter data types.

Pure data containers exchanged between adapters and the runtime worker
layer. Adapters produce these; the runtime converts them into events.
"""

from __future__ import annotations

from dataclasses import dataclass

from audio.frames import Utterance
from constants import AUDIO_SAMPLE_RATE_HZ


@dataclass(frozen=True)
class UtteranceAudio:
    """
    Transcription input: one closed utterance as a single PCM16 payload.
    """
    utterance_id: str
    pcm_bytes: bytes
    sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ

    @classmethod
    def from_utterance(cls, utterance: Utterance) -> UtteranceAudio:
        return cls(
            utterance_id=utterance.utterance_id,
            pcm_bytes=utterance.pcm_bytes,
        )


@dataclass(frozen=True)
class Transcript:
    """Interim (is_final=False) or final transcription of an utterance."""
    utterance_id: str
    text: str
    is_final: bool


@dataclass(frozen=True)
class ReplyChunk:
    """One streamed piece of reply text; sequence_number starts at 0."""
    reply_id: str
    text: str
    sequence_number: int


@dataclass(frozen=True)
class AudioChunk:
    """
    One piece of synthesized audio for a reply.

    sequence_number starts at 0 and is contiguous per reply; exactly one
    chunk per reply carries is_final=True.
    """
    reply_id: str
    data: bytes
    sequence_number: int
    is_final: bool

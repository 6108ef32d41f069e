"""
Audio frame and utterance primitives.

Pure data containers only.
No queues, no timing logic, no VAD.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from constants import pcm_duration_ms


@dataclass(frozen=True)
class AudioFrame:
    """
    Canonical inbound audio frame.

    sequence_num:
        Monotonic sequence number provided by the client.
        Used for gap detection and debugging only.

    pcm_bytes:
        Raw PCM16 LE mono 16kHz audio. Non-empty, even length.

    ts_ms:
        Wall-clock timestamp (milliseconds) when the frame was received.
    """
    sequence_num: int
    pcm_bytes: bytes
    ts_ms: int

    @property
    def duration_ms(self) -> float:
        """Audio duration carried by this frame."""
        return pcm_duration_ms(len(self.pcm_bytes))


class EndReason(str, Enum):
    """
    Why an open utterance closed.

    SILENCE, CLIENT and MAX_LENGTH close it for transcription; PAUSE and
    STOP close it so it is discarded.
    """

    SILENCE = "silence"
    CLIENT = "client"
    MAX_LENGTH = "max_length"
    PAUSE = "pause"
    STOP = "stop"


@dataclass(frozen=True)
class EndOfUtteranceMarker:
    """
    In-band marker closing any open utterance.

    Travels through the frame buffer so it is ordered after the audio the
    client sent before it. Never counted toward buffer caps.
    """
    ts_ms: int
    reason: EndReason = EndReason.CLIENT


class UtteranceStatus(str, Enum):
    """Lifecycle of a contiguous span of user speech."""

    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Utterance:
    """
    A closed span of user speech handed to transcription.

    Frames are contiguous in arrival order and include the onset frames
    that opened the utterance.
    """
    utterance_id: str
    started_at_ms: int
    ended_at_ms: int | None
    frames: tuple[AudioFrame, ...]
    status: UtteranceStatus = UtteranceStatus.CLOSED

    @property
    def pcm_bytes(self) -> bytes:
        """Concatenated PCM payload of all frames."""
        return b"".join(frame.pcm_bytes for frame in self.frames)

    @property
    def duration_ms(self) -> float:
        """Total audio duration of the utterance."""
        return sum(frame.duration_ms for frame in self.frames)

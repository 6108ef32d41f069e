# backend/protocol/binary.py
"""
Binary framing helpers for inbound audio transport.

Client → Server (mic):
    4 bytes  seq_num (u32, little-endian)
    N bytes  PCM16 LE mono 16kHz audio (N > 0, N even,
             N <= MAX_INBOUND_PCM_BYTES)

Server → client audio is not binary-framed; it travels base64-encoded
inside JSON audio_chunk records (see protocol.messages).

Usage example:

    frame = decode_c2s_frame(payload, ts_ms=now_ms)

    result = check_sequence_gap(last_seq=prev_seq, current_seq=frame.sequence_num)
    if result.gap:
        log_event({
            "event_type": "seq_gap_detected",
            "expected": result.expected,
            "actual": result.actual,
            "gap_size": result.gap_size,
        })
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from audio.frames import AudioFrame
from constants import (
    AUDIO_SAMPLE_WIDTH_BYTES,
    C2S_SEQ_NUM_BYTES,
    MAX_INBOUND_PCM_BYTES,
    SEQ_NUM_MAX,
    SEQ_NUM_START,
)


# -------------------------
# Exceptions
# -------------------------

class BinaryProtocolError(Exception):
    """Base class for binary protocol errors."""


class InvalidFrameLength(BinaryProtocolError):
    """
    Raised when a binary audio frame has an unusable byte length.

    Indicates a violation of the binary framing contract (truncated header,
    empty, odd-length, or oversized payload). The frame is unsafe to process
    and must be dropped.
    """


class InvalidSequenceNumber(BinaryProtocolError):
    """
    Raised when a sequence number is outside the valid range.

    Indicates a protocol violation that would break ordering or gap
    detection.
    """


# -------------------------
# Low-level helpers
# -------------------------

def _u32_le(value: int) -> bytes:
    return struct.pack("<I", value)


def _read_u32_le(buf: bytes, offset: int = 0) -> int:
    return struct.unpack_from("<I", buf, offset)[0]


def encode_c2s_frame(*, sequence_num: int, pcm_bytes: bytes) -> bytes:
    """
    Encode a client→server frame (used by test clients and tooling).
    """
    if sequence_num < SEQ_NUM_START or sequence_num > SEQ_NUM_MAX:
        raise InvalidSequenceNumber(f"Invalid seq_num: {sequence_num}")
    return _u32_le(sequence_num) + pcm_bytes


def is_seq_next(prev: int, current: int) -> bool:
    """
    Return True if `current` is the expected next sequence number
    after `prev`, accounting for wraparound.
    """
    if prev == SEQ_NUM_MAX:
        return current == SEQ_NUM_START
    return current == prev + 1


# -------------------------
# Client → Server (mic)
# -------------------------

def decode_c2s_frame(payload: bytes, *, ts_ms: int) -> AudioFrame:
    """
    Decode a client→server mic audio frame.
    """
    if len(payload) <= C2S_SEQ_NUM_BYTES:
        raise InvalidFrameLength(
            f"C2S frame length {len(payload)} carries no audio"
        )

    seq = _read_u32_le(payload, 0)

    if seq < SEQ_NUM_START or seq > SEQ_NUM_MAX:
        raise InvalidSequenceNumber(f"Invalid seq_num: {seq}")

    pcm_bytes = payload[C2S_SEQ_NUM_BYTES:]

    if len(pcm_bytes) % AUDIO_SAMPLE_WIDTH_BYTES != 0:
        raise InvalidFrameLength(
            f"PCM length {len(pcm_bytes)} is not a whole number of samples"
        )

    if len(pcm_bytes) > MAX_INBOUND_PCM_BYTES:
        raise InvalidFrameLength(
            f"PCM length {len(pcm_bytes)} > {MAX_INBOUND_PCM_BYTES}"
        )

    return AudioFrame(
        sequence_num=seq,
        pcm_bytes=pcm_bytes,
        ts_ms=ts_ms,
    )


# -------------------------
# Sequence gap detection
# -------------------------

@dataclass(frozen=True)
class SeqCheckResult:
    """
    Result of a sequence continuity check.
    """
    gap: bool
    expected: int
    actual: int

    @property
    def gap_size(self) -> int:
        """
        Number of frames skipped (0 if no gap).

        Handles wraparound correctly.
        """
        if not self.gap:
            return 0

        # Linear (no wrap)
        if self.actual > self.expected:
            return self.actual - self.expected

        # Wraparound
        return (SEQ_NUM_MAX - self.expected + 1) + (self.actual - SEQ_NUM_START)


def check_sequence_gap(
    *,
    last_seq: Optional[int],
    current_seq: int,
) -> SeqCheckResult:
    """
    Check whether `current_seq` follows `last_seq`.

    Pure function; never raises.
    """
    if last_seq is None or is_seq_next(last_seq, current_seq):
        return SeqCheckResult(
            gap=False,
            expected=current_seq,
            actual=current_seq,
        )

    expected = SEQ_NUM_START if last_seq == SEQ_NUM_MAX else last_seq + 1

    return SeqCheckResult(
        gap=True,
        expected=expected,
        actual=current_seq,
    )

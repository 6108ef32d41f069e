"""
BEHAVIOR-AS-CONSTANTS
---------------------
Single source of truth for the behavioral defaults of the session service.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Deployment overrides (silence timeout, VAD tuning, buffer caps, barge-in
  policy) are read by config.py and validated against the bounds below.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Tuple

# =============================================================================
# Audio Format (PCM16 mono @ 16kHz)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 16_000
AUDIO_CHANNELS: Final[int] = 1
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)
AUDIO_BYTES_PER_MS: Final[int] = (
    AUDIO_SAMPLE_RATE_HZ * AUDIO_SAMPLE_WIDTH_BYTES * AUDIO_CHANNELS
) // 1000

# Nominal client frame; the transport accepts any even length up to the cap
AUDIO_FRAME_MS: Final[int] = 20
AUDIO_BYTES_PER_FRAME_PCM: Final[int] = AUDIO_FRAME_MS * AUDIO_BYTES_PER_MS

# Synthesized audio (OpenAI "pcm" response format)
SYNTHESIS_SAMPLE_RATE_HZ: Final[int] = 24_000

# =============================================================================
# Binary WebSocket Frame Format
# =============================================================================
# Client → Server (mic audio): 4B LE seq_num + PCM payload
C2S_SEQ_NUM_BYTES: Final[int] = 4
MAX_INBOUND_FRAME_MS: Final[int] = 200
MAX_INBOUND_PCM_BYTES: Final[int] = MAX_INBOUND_FRAME_MS * AUDIO_BYTES_PER_MS

SEQ_NUM_START: Final[int] = 1
SEQ_NUM_MAX: Final[int] = 2**32 - 1  # u32 wraparound

# =============================================================================
# Voice Activity Segmentation
# =============================================================================

SILENCE_TIMEOUT_MS_DEFAULT: Final[int] = 1_200
SILENCE_TIMEOUT_MS_MIN: Final[int] = 1_000
SILENCE_TIMEOUT_MS_MAX: Final[int] = 1_500

# Consecutive voiced frames required to open an utterance
VAD_ONSET_FRAMES_DEFAULT: Final[int] = 3
VAD_ENERGY_THRESHOLD_DEFAULT: Final[float] = 0.02  # RMS of float32 samples

# Longest utterance kept open; longer speech is cut and transcribed
MAX_UTTERANCE_MS: Final[int] = 30_000

UTTERANCE_ID_PREFIX: Final[str] = "utt"
REPLY_ID_SUFFIX: Final[str] = ":reply"

# =============================================================================
# Frame Buffer & Queues
# =============================================================================

FRAME_BUFFER_MAX_S: Final[float] = 10.0
FRAME_BUFFER_MAX_FRAMES_DEFAULT: Final[int] = int(
    FRAME_BUFFER_MAX_S * 1000 // AUDIO_FRAME_MS
)
FRAME_BUFFER_MAX_BYTES_DEFAULT: Final[int] = int(
    FRAME_BUFFER_MAX_S * 1000 * AUDIO_BYTES_PER_MS
)

EVENT_INBOX_MAX_EVENTS: Final[int] = 512
# Encoded bytes of client records waiting for a slow reader (~4 min of
# base64 reply audio at 24 kHz)
OUTBOUND_QUEUE_MAX_BYTES: Final[int] = 16 * 1024 * 1024

# =============================================================================
# Failure Detection & Timeouts
# =============================================================================

TRANSCRIPTION_TIMEOUT_MS: Final[int] = 10_000
GENERATION_FIRST_CHUNK_TIMEOUT_MS: Final[int] = 5_500
GENERATION_STALL_TIMEOUT_MS: Final[int] = 5_000
SYNTHESIS_FIRST_AUDIO_TIMEOUT_MS: Final[int] = 6_000
SYNTHESIS_STALL_TIMEOUT_MS: Final[int] = 8_000

# =============================================================================
# Cancellation Protocol
# =============================================================================

CANCEL_GRACE_MS: Final[int] = 500

# =============================================================================
# Retry Policy
# =============================================================================

# One retry with the full utterance audio, then surface the error
TRANSCRIPTION_MAX_RETRIES: Final[int] = 1
GENERATION_MAX_RETRIES: Final[int] = 0
SYNTHESIS_MAX_RETRIES: Final[int] = 0

# =============================================================================
# Synthesis Text Chunking
# =============================================================================

TTS_MIN_CHUNK_LEN_CHARS: Final[int] = 20
TTS_SIZE_TRIGGER_CHARS: Final[int] = 120
TTS_HARD_CAP_CHARS: Final[int] = 200
TTS_LOOKBACK_CHARS: Final[int] = 20

SENTENCE_END_CHARS: Final[Tuple[str, ...]] = (".", "!", "?", "\n")

# Preferred clause / punctuation boundaries
TTS_PREFERRED_BREAK_CHARS: Final[Tuple[str, ...]] = (
    ".", "!", "?", ",", ";", ":", "\n"
)

# Safe fallback boundaries (word-aligned)
TTS_WHITESPACE_BREAK_CHARS: Final[Tuple[str, ...]] = (
    " ", "\t",
)

# Bytes per provider read when streaming synthesized audio
PROVIDER_CHUNK_SIZE: Final[int] = 4096

# =============================================================================
# Conversation Context
# =============================================================================

MAX_CONTEXT_TURNS: Final[int] = 8
MAX_CONTEXT_CHARS: Final[int] = 6_000

# Truncation rule:
# While (turn_count > MAX_CONTEXT_TURNS) OR (total_chars > MAX_CONTEXT_CHARS):
#     drop oldest turn (a single remaining turn is always kept)

# =============================================================================
# LLM Prompt Versioning
# =============================================================================

SYSTEM_PROMPT_VERSION: Final[str] = "v1"
PROMPT_HASH_HEX_LEN: Final[int] = 8

# =============================================================================
# Observability
# =============================================================================

# Per-turn headline metric, measured by the reducer from event timestamps
METRIC_SPEECH_END_TO_FIRST_AUDIO: Final[str] = "speech_end_to_first_audio_ms"

# =============================================================================
# Helper Functions
# =============================================================================

def pcm_duration_ms(num_bytes: int) -> float:
    """
    Duration of a PCM16 mono 16kHz payload in milliseconds.

    Non-positive input returns 0.0.
    """
    if num_bytes <= 0:
        return 0.0
    return num_bytes / AUDIO_BYTES_PER_MS


def reply_id_for(utterance_id: str) -> str:
    """Derive the reply id that shares lineage with an utterance."""
    return f"{utterance_id}{REPLY_ID_SUFFIX}"


# =============================================================================
# Convenience Bundles
# =============================================================================

@dataclass(frozen=True)
class AudioFormat:
    """
    Immutable bundle describing a PCM audio format.

    This is a convenience wrapper for passing format metadata around;
    it is NOT a second source of truth.
    """
    sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ
    channels: int = AUDIO_CHANNELS
    sample_width_bytes: int = AUDIO_SAMPLE_WIDTH_BYTES
    encoding: str = "pcm16le"

    def as_message(self) -> dict[str, int | str]:
        """Client-facing description used in the session record."""
        return {
            "sampleRate": self.sample_rate_hz,
            "channels": self.channels,
            "encoding": self.encoding,
        }


INPUT_AUDIO_FORMAT: Final[AudioFormat] = AudioFormat()
OUTPUT_AUDIO_FORMAT: Final[AudioFormat] = AudioFormat(
    sample_rate_hz=SYNTHESIS_SAMPLE_RATE_HZ,
)

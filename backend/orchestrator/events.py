"""
Unified event definitions for the orchestrator reducer.

Rules:
- Events describe facts that have occurred.
- Events carry data only (no behavior).
- All reducer decisions are based on these events.
- No clocks, no timers, no async, no side effects.

Worker events are ServiceEvents: they carry the run_id of the invocation
that produced them plus the lineage id (utterance_id or reply_id) it was
started for. Timer events are not ServiceEvents, but carry run_id for
stale gating.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from audio.frames import EndReason, Utterance
from orchestrator.enums.service import Service


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """
    Canonical event types understood by the reducer.

    Every (state, event_type) pair must be explicitly handled
    or explicitly ignored by the reducer.
    """

    # ------------------------------------------------------------------
    # Connection / session lifecycle
    # ------------------------------------------------------------------
    SESSION_STARTED = "SESSION_STARTED"
    SESSION_ENDED = "SESSION_ENDED"
    TRANSPORT_DISCONNECTED = "TRANSPORT_DISCONNECTED"

    # ------------------------------------------------------------------
    # Client control
    # ------------------------------------------------------------------
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    STOP = "STOP"

    # ------------------------------------------------------------------
    # Segmenter
    # ------------------------------------------------------------------
    SPEECH_START = "SPEECH_START"
    SPEECH_INTERRUPT = "SPEECH_INTERRUPT"
    SPEECH_END = "SPEECH_END"

    # ------------------------------------------------------------------
    # Transcription (ASR)
    # ------------------------------------------------------------------
    TRANSCRIPT_PARTIAL = "TRANSCRIPT_PARTIAL"
    TRANSCRIPT_FINAL = "TRANSCRIPT_FINAL"
    TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"
    TRANSCRIPTION_TIMEOUT = "TRANSCRIPTION_TIMEOUT"

    # ------------------------------------------------------------------
    # Generation (LLM)
    # ------------------------------------------------------------------
    REPLY_CHUNK = "REPLY_CHUNK"
    GENERATION_DONE = "GENERATION_DONE"
    GENERATION_FAILED = "GENERATION_FAILED"
    GENERATION_FIRST_CHUNK_TIMEOUT = "GENERATION_FIRST_CHUNK_TIMEOUT"
    GENERATION_STALL_TIMEOUT = "GENERATION_STALL_TIMEOUT"

    # ------------------------------------------------------------------
    # Synthesis (TTS)
    # ------------------------------------------------------------------
    AUDIO_CHUNK = "AUDIO_CHUNK"
    SYNTHESIS_DONE = "SYNTHESIS_DONE"
    SYNTHESIS_FAILED = "SYNTHESIS_FAILED"
    SYNTHESIS_FIRST_AUDIO_TIMEOUT = "SYNTHESIS_FIRST_AUDIO_TIMEOUT"
    SYNTHESIS_STALL_TIMEOUT = "SYNTHESIS_STALL_TIMEOUT"

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    CANCEL_ACK = "CANCEL_ACK"
    CANCEL_TIMEOUT = "CANCEL_TIMEOUT"

    # ------------------------------------------------------------------
    # Fatal
    # ------------------------------------------------------------------
    FATAL_ERROR = "FATAL_ERROR"


# =============================================================================
# Base Event
# =============================================================================

@dataclass(frozen=True)
class Event:
    """
    Base event type.

    All events must specify:
    - event_type: discriminant
    - ts_ms: timestamp provided by the source (or fake in tests)
    """

    event_type: EventType
    ts_ms: int


# =============================================================================
# Service-Scoped Events
# =============================================================================

@dataclass(frozen=True)
class ServiceEvent(Event):
    """
    Base class for events scoped to a versioned worker invocation.

    The reducer MUST ignore events whose run_id does not match the
    currently active run for that service.
    """

    service: Service
    run_id: int


# =============================================================================
# Connection / Session Events
# =============================================================================

@dataclass(frozen=True)
class SessionStarted(Event):
    """Transport accepted; session created."""
    session_id: str


@dataclass(frozen=True)
class SessionEnded(Event):
    """Session torn down."""
    session_id: str


@dataclass(frozen=True)
class TransportDisconnected(Event):
    """Client connection lost or unwritable. Fatal to the session."""
    session_id: str
    reason: str | None = None


# =============================================================================
# Client Control Events
# =============================================================================

@dataclass(frozen=True)
class Pause(Event):
    """Client asked to stop listening."""


@dataclass(frozen=True)
class Resume(Event):
    """Client asked to resume listening."""


@dataclass(frozen=True)
class Stop(Event):
    """Client requested stop (cancel current operation)."""


# =============================================================================
# Segmenter Events
# =============================================================================

@dataclass(frozen=True)
class SpeechStart(Event):
    """Onset debounce fired while the session was LISTENING."""
    utterance_id: str


@dataclass(frozen=True)
class SpeechInterrupt(Event):
    """Onset debounce fired while the session was NOT listening (barge-in)."""
    utterance_id: str


@dataclass(frozen=True)
class SpeechEnd(Event):
    """
    The open utterance closed.

    reason:
        SILENCE (offset debounce), CLIENT (end_utterance control), or
        PAUSE / STOP (closed so it can be discarded).
    """
    utterance: Utterance
    reason: EndReason


# =============================================================================
# Transcription Events
# =============================================================================

@dataclass(frozen=True)
class TranscriptPartial(ServiceEvent):
    """
    Interim transcription result.

    May be revised by later partials.
    """
    utterance_id: str
    text: str


@dataclass(frozen=True)
class TranscriptFinal(ServiceEvent):
    """
    Final transcription result.

    This text is immutable and used as generation input.
    """
    utterance_id: str
    text: str


@dataclass(frozen=True)
class TranscriptionFailed(ServiceEvent):
    """Transcription raised, or ended without a final transcript."""
    utterance_id: str
    reason: str


@dataclass(frozen=True)
class TranscriptionTimeout(Event):
    """No final transcript within the transcription deadline."""
    run_id: int


# =============================================================================
# Generation Events
# =============================================================================

@dataclass(frozen=True)
class ReplyChunkReceived(ServiceEvent):
    """
    One streamed piece of reply text.

    sequence_number is zero-based and contiguous per reply.
    """
    reply_id: str
    text: str
    sequence_number: int


@dataclass(frozen=True)
class GenerationDone(ServiceEvent):
    """Reply generation completed successfully."""
    reply_id: str


@dataclass(frozen=True)
class GenerationFailed(ServiceEvent):
    """Reply generation raised before or after the first chunk."""
    reply_id: str
    reason: str


@dataclass(frozen=True)
class GenerationFirstChunkTimeout(Event):
    """First reply chunk did not arrive within timeout."""
    run_id: int


@dataclass(frozen=True)
class GenerationStallTimeout(Event):
    """Generation stalled mid-stream."""
    run_id: int


# =============================================================================
# Synthesis Events
# =============================================================================

@dataclass(frozen=True)
class AudioChunkReceived(ServiceEvent):
    """
    One synthesized audio chunk.

    sequence_number is zero-based and contiguous per reply; is_final marks
    the last chunk of the reply.
    """
    reply_id: str
    data: bytes
    sequence_number: int
    is_final: bool


@dataclass(frozen=True)
class SynthesisDone(ServiceEvent):
    """Synthesis stream ended normally."""
    reply_id: str


@dataclass(frozen=True)
class SynthesisFailed(ServiceEvent):
    """Synthesis raised."""
    reply_id: str
    reason: str


@dataclass(frozen=True)
class SynthesisFirstAudioTimeout(Event):
    """First audio chunk did not arrive within timeout."""
    run_id: int


@dataclass(frozen=True)
class SynthesisStallTimeout(Event):
    """Synthesis stalled mid-stream."""
    run_id: int


# =============================================================================
# Cancellation Events
# =============================================================================

@dataclass(frozen=True)
class CancelAck(ServiceEvent):
    """
    The cancelled worker task finished within the grace period.

    Note:
    - Emitted by the cancellation layer, not the worker itself.
    - Inherits from ServiceEvent for reducer uniformity.
    """


@dataclass(frozen=True)
class CancelTimeout(Event):
    """
    The cancelled worker did not finish within the grace period.

    Semantics:
    - The run is abandoned; its output is gated out by run_id
    - Reducer proceeds without entering ERROR
    """
    service: Service
    run_id: int


# =============================================================================
# Fatal
# =============================================================================

@dataclass(frozen=True)
class FatalError(Event):
    """Non-recoverable error forcing immediate teardown."""
    reason: str
    context: dict[str, Any] | None = None

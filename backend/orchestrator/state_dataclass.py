"""
Authoritative orchestrator state container.

Rules:
- This dataclass is a pure data model.
- It contains ALL state the reducer may ever need.
- No behavior, no helpers, no derived logic.
- Conversation history is NOT here; it lives in the session's
  ConversationContext and is written only through CommitTurn.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from audio.frames import Utterance, UtteranceStatus
from constants import (
    GENERATION_FIRST_CHUNK_TIMEOUT_MS,
    GENERATION_STALL_TIMEOUT_MS,
    SYNTHESIS_FIRST_AUDIO_TIMEOUT_MS,
    SYNTHESIS_STALL_TIMEOUT_MS,
    TRANSCRIPTION_MAX_RETRIES,
    TRANSCRIPTION_TIMEOUT_MS,
)
from orchestrator.enums.barge_in import BargeInPolicy
from orchestrator.enums.service import Service
from orchestrator.enums.state import State
from orchestrator.retry import RetryAttempt
from orchestrator.run_ids import RunIds


# =============================================================================
# Session Policy
# =============================================================================

@dataclass(frozen=True)
class SessionPolicy:
    """
    Per-session tuning the reducer consults. Built from AppConfig.
    """
    barge_in: BargeInPolicy = BargeInPolicy.AFTER_PLAYBACK_START
    transcription_max_retries: int = TRANSCRIPTION_MAX_RETRIES
    transcription_timeout_ms: int = TRANSCRIPTION_TIMEOUT_MS
    generation_first_chunk_timeout_ms: int = GENERATION_FIRST_CHUNK_TIMEOUT_MS
    generation_stall_timeout_ms: int = GENERATION_STALL_TIMEOUT_MS
    synthesis_first_audio_timeout_ms: int = SYNTHESIS_FIRST_AUDIO_TIMEOUT_MS
    synthesis_stall_timeout_ms: int = SYNTHESIS_STALL_TIMEOUT_MS


# =============================================================================
# Orchestrator State
# =============================================================================

@dataclass(frozen=True)
class OrchestratorState:
    """Immutable snapshot of all orchestrator-owned state."""

    policy: SessionPolicy = field(default_factory=SessionPolicy)

    # ------------------------------------------------------------------
    # Control state
    # ------------------------------------------------------------------
    state: State = State.LISTENING
    paused: bool = False

    # ------------------------------------------------------------------
    # Run/version tracking
    # ------------------------------------------------------------------
    active_runs: RunIds = field(default_factory=RunIds)
    # Services whose active run has been started and not yet finished
    in_flight: frozenset[Service] = frozenset()
    # Cancelled runs awaiting CancelAck / CancelTimeout
    cancel_in_flight: frozenset[tuple[Service, int]] = frozenset()

    # ------------------------------------------------------------------
    # Utterance lineage
    # ------------------------------------------------------------------
    active_utterance_id: str | None = None
    utterance_status: UtteranceStatus | None = None
    # Closed utterance kept for the transcription retry
    utterance: Utterance | None = None
    transcription_attempt: RetryAttempt = RetryAttempt(attempt=0)
    speech_end_ts_ms: int | None = None
    user_text: str = ""
    # Speech that began before the first audio of the reply under the
    # AFTER_PLAYBACK_START policy; honored once playback starts
    deferred_barge_in_utterance_id: str | None = None

    # ------------------------------------------------------------------
    # Reply lineage (generation)
    # ------------------------------------------------------------------
    active_reply_id: str | None = None
    next_reply_seq: int = 0
    # Out-of-order chunks waiting for predecessors: (sequence_number, text)
    held_reply_chunks: tuple[tuple[int, str], ...] = ()
    reply_text: str = ""
    generation_finished: bool = False

    # ------------------------------------------------------------------
    # Reply text → synthesis chunking
    # ------------------------------------------------------------------
    tts_text_buffer: str = ""

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------
    first_audio_timer_armed: bool = False
    next_audio_seq: int = 0
    # Out-of-order audio: (sequence_number, data, is_final)
    held_audio_chunks: tuple[tuple[int, bytes, bool], ...] = ()
    playback_started: bool = False
    synthesis_finished: bool = False

    # ------------------------------------------------------------------
    # Conversation context
    # ------------------------------------------------------------------
    current_turn_id: int = 0

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------
    last_error: str | None = None

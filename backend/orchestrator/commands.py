"""
Side-effect command definitions for the orchestrator.

Rules:
- Commands are declarative requests for side effects.
- Commands are emitted by the reducer and executed by the runtime.
- No behavior, no async, no I/O, no clocks.
- Reducer logic remains pure and deterministic.
Invariant:
    - All concrete Command subclasses MUST be frozen dataclasses.
    - Commands are immutable value objects emitted by the reducer.
    - Executing a command never blocks on the event inbox.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from audio.frames import Utterance
from orchestrator.events import EventType

# =============================================================================
# Command Type Enumeration
# =============================================================================

class CommandType(str, Enum):
    """
    Canonical command types emitted by the reducer.

    These are stable discriminants used for logging, replay,
    and runtime dispatch.
    """

    # Transcription
    START_TRANSCRIPTION = "START_TRANSCRIPTION"
    CANCEL_TRANSCRIPTION = "CANCEL_TRANSCRIPTION"

    # Generation
    START_GENERATION = "START_GENERATION"
    CANCEL_GENERATION = "CANCEL_GENERATION"

    # Synthesis
    START_SYNTHESIS = "START_SYNTHESIS"
    SEND_SYNTHESIS_TEXT = "SEND_SYNTHESIS_TEXT"
    END_SYNTHESIS_INPUT = "END_SYNTHESIS_INPUT"
    CANCEL_SYNTHESIS = "CANCEL_SYNTHESIS"

    # Client / transport
    SEND_TO_CLIENT = "SEND_TO_CLIENT"

    # Conversation
    COMMIT_TURN = "COMMIT_TURN"

    # Session / lifecycle
    END_SESSION = "END_SESSION"

    # Timers
    START_TIMER = "START_TIMER"
    CANCEL_TIMER = "CANCEL_TIMER"

    # Observability
    LOG_EVENT = "LOG_EVENT"
    RECORD_METRIC = "RECORD_METRIC"


# =============================================================================
# Base Command
# =============================================================================

class Command:
    """
    Base command type.

    command_type is an explicit discriminant and must never be inferred
    from Python type identity.
    """

    command_type: CommandType


# =============================================================================
# Transcription Commands
# =============================================================================

@dataclass(frozen=True)
class StartTranscription(Command):
    """Transcribe a closed utterance under a new ASR run."""
    run_id: int
    utterance: Utterance
    command_type: CommandType = CommandType.START_TRANSCRIPTION


@dataclass(frozen=True)
class CancelTranscription(Command):
    """Request to cancel an in-flight transcription run."""
    run_id: int
    command_type: CommandType = CommandType.CANCEL_TRANSCRIPTION


# =============================================================================
# Generation Commands
# =============================================================================

@dataclass(frozen=True)
class StartGeneration(Command):
    """
    Request a streamed reply for a final transcript.

    The runtime supplies the serialized conversation context at execution
    time; the reducer never holds it.
    """
    run_id: int
    reply_id: str
    user_text: str
    command_type: CommandType = CommandType.START_GENERATION


@dataclass(frozen=True)
class CancelGeneration(Command):
    """Request to cancel an in-flight generation run."""
    run_id: int
    command_type: CommandType = CommandType.CANCEL_GENERATION


# =============================================================================
# Synthesis Commands
# =============================================================================

@dataclass(frozen=True)
class StartSynthesis(Command):
    """Open a synthesis run fed by SendSynthesisText."""
    run_id: int
    reply_id: str
    command_type: CommandType = CommandType.START_SYNTHESIS


@dataclass(frozen=True)
class SendSynthesisText(Command):
    """Feed one speakable text unit to the synthesis run."""
    run_id: int
    text: str
    command_type: CommandType = CommandType.SEND_SYNTHESIS_TEXT


@dataclass(frozen=True)
class EndSynthesisInput(Command):
    """No more text will be sent to the synthesis run."""
    run_id: int
    command_type: CommandType = CommandType.END_SYNTHESIS_INPUT


@dataclass(frozen=True)
class CancelSynthesis(Command):
    """Request to cancel an in-flight synthesis run."""
    run_id: int
    command_type: CommandType = CommandType.CANCEL_SYNTHESIS


# =============================================================================
# Client / Transport Commands
# =============================================================================

@dataclass(frozen=True)
class SendToClient(Command):
    """
    Publish one outbound record (already shaped by protocol.messages).
    """
    message: dict[str, Any]
    command_type: CommandType = CommandType.SEND_TO_CLIENT


# =============================================================================
# Conversation Commands
# =============================================================================

@dataclass(frozen=True)
class CommitTurn(Command):
    """Commit a completed exchange to conversation context."""
    turn_id: int
    user_text: str
    assistant_text: str
    command_type: CommandType = CommandType.COMMIT_TURN


# =============================================================================
# Session / Lifecycle Commands
# =============================================================================

@dataclass(frozen=True)
class EndSession(Command):
    """Request session termination."""
    reason: str | None = None
    command_type: CommandType = CommandType.END_SESSION


# =============================================================================
# Timer Commands
# =============================================================================

@dataclass(frozen=True)
class StartTimer(Command):
    """
    Request to start (or restart) a named timer.

    On expiration, the runtime must inject the specified timeout event
    carrying run_id.
    """
    timer_id: str
    duration_ms: int
    timeout_event_type: EventType
    run_id: int
    command_type: CommandType = CommandType.START_TIMER


@dataclass(frozen=True)
class CancelTimer(Command):
    """Request to cancel a previously scheduled timer."""
    timer_id: str
    command_type: CommandType = CommandType.CANCEL_TIMER


# =============================================================================
# Observability Commands
# =============================================================================

@dataclass(frozen=True)
class LogEvent(Command):
    """Request to emit a structured observability event."""
    event: dict[str, Any]
    command_type: CommandType = CommandType.LOG_EVENT


@dataclass(frozen=True)
class RecordMetric(Command):
    """Request to record a metric value."""
    name: str
    value: float
    tags: tuple[tuple[str, str], ...] | None = None
    command_type: CommandType = CommandType.RECORD_METRIC

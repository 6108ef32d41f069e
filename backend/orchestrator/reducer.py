# pylint: disable=too-many-lines
"""
Pure orchestrator reducer.

(state, event) -> (new_state, commands)

Rules:
- Pure: no side effects, no IO, no clocks.
- Deterministic: output depends only on inputs.
- Total: every (state, event) pair is handled or explicitly ignored (logged).
- Single writer: the session state changes only here.

Every outbound client record is a SendToClient command, emitted in the
order the client must observe it. Worker output is admitted only when its
run_id is the active, in-flight run for its service AND its lineage id
matches the active utterance / reply.
"""

# Reducer owns timer semantics; runtime must not cancel timers implicitly.

from __future__ import annotations

from dataclasses import replace
from typing import Any

from audio.frames import EndReason, UtteranceStatus
from constants import METRIC_SPEECH_END_TO_FIRST_AUDIO, reply_id_for
from orchestrator.chunking import flush, split_ready_units
from orchestrator.commands import (
    CancelGeneration,
    CancelSynthesis,
    CancelTimer,
    CancelTranscription,
    Command,
    CommitTurn,
    EndSession,
    EndSynthesisInput,
    LogEvent,
    RecordMetric,
    SendSynthesisText,
    SendToClient,
    StartGeneration,
    StartSynthesis,
    StartTimer,
    StartTranscription,
)
from orchestrator.enums.barge_in import BargeInPolicy
from orchestrator.enums.service import Service
from orchestrator.enums.state import State
from orchestrator.events import (
    AudioChunkReceived,
    CancelAck,
    CancelTimeout,
    Event,
    EventType,
    FatalError,
    GenerationDone,
    GenerationFailed,
    GenerationFirstChunkTimeout,
    GenerationStallTimeout,
    Pause,
    ReplyChunkReceived,
    Resume,
    SessionEnded,
    SessionStarted,
    SpeechEnd,
    SpeechInterrupt,
    SpeechStart,
    Stop,
    SynthesisDone,
    SynthesisFailed,
    SynthesisFirstAudioTimeout,
    SynthesisStallTimeout,
    TranscriptFinal,
    TranscriptionFailed,
    TranscriptionTimeout,
    TranscriptPartial,
    TransportDisconnected,
)
from orchestrator.retry import FailureType, next_attempt, reset_attempt, should_retry
from orchestrator.state_dataclass import OrchestratorState
from protocol.messages import (
    audio_chunk_message,
    error_message,
    reply_chunk_message,
    state_message,
    transcript_message,
)


# =============================================================================
# Invariants (Run IDs & Cancellation)
# =============================================================================
# - Run IDs are bumped ONLY on new start (ASR/LLM/TTS)
# - Cancellation never bumps run IDs
# - CancelAck / CancelTimeout clear cancel_in_flight for (service, run_id)
# - CancelTimeout abandons the run and PROCEEDS anyway
# - Recoverable failures never enter ERROR: error record, then LISTENING

# =============================================================================
# Timer IDs
# =============================================================================

TIMER_TRANSCRIPTION = "transcription_timeout"
TIMER_GENERATION_FIRST_CHUNK = "generation_first_chunk_timeout"
TIMER_GENERATION_STALL = "generation_stall_timeout"
TIMER_SYNTHESIS_FIRST_AUDIO = "synthesis_first_audio_timeout"
TIMER_SYNTHESIS_STALL = "synthesis_stall_timeout"

_SERVICE_TIMERS: dict[Service, tuple[str, ...]] = {
    Service.ASR: (TIMER_TRANSCRIPTION,),
    Service.LLM: (TIMER_GENERATION_FIRST_CHUNK, TIMER_GENERATION_STALL),
    Service.TTS: (TIMER_SYNTHESIS_FIRST_AUDIO, TIMER_SYNTHESIS_STALL),
}

_DISCARD_REASONS = frozenset({EndReason.PAUSE, EndReason.STOP})

FATAL_ERROR_MESSAGE = "The session hit an unrecoverable error and will close."


# =============================================================================
# Small helpers
# =============================================================================

def _log(
    state: OrchestratorState,
    event: Event,
    decision: str,
    details: dict[str, Any] | None = None,
) -> LogEvent:
    return LogEvent(
        event={
            "ts_ms": event.ts_ms,
            "state": state.state.value,
            "paused": state.paused,
            "event_type": event.event_type.value,
            "decision": decision,
            "run_ids": state.active_runs.as_dict(),
            "utterance_id": state.active_utterance_id,
            "reply_id": state.active_reply_id,
            "cancel_in_flight": sorted(
                f"{service.value}:{run_id}" for service, run_id in state.cancel_in_flight
            ),
            "details": details or {},
        }
    )


def _logs_last(commands: tuple[Command, ...]) -> tuple[Command, ...]:
    non_logs: list[Command] = []
    logs: list[Command] = []
    state_change_logs: list[Command] = []

    for command in commands:
        if isinstance(command, LogEvent):
            if command.event.get("decision") == "state_changed":
                state_change_logs.append(command)
            else:
                logs.append(command)
        else:
            non_logs.append(command)

    return tuple(non_logs + logs + state_change_logs)


def _ignore(
    state: OrchestratorState, event: Event, reason: str
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    return state, (_log(state, event, "ignore", {"reason": reason}),)


def _announce(
    prev: OrchestratorState,
    new: OrchestratorState,
    event: Event,
    source: str,
) -> list[Command]:
    """State record + log for a transition; nothing if the state is unchanged."""
    if prev.state is new.state:
        return []
    return [
        SendToClient(message=state_message(new.state.value)),
        _log(
            new,
            event,
            "state_changed",
            {
                "from_state": prev.state.value,
                "to_state": new.state.value,
                "source": source,
            },
        ),
    ]


def _is_current(state: OrchestratorState, service: Service, run_id: int) -> bool:
    return (
        service in state.in_flight
        and run_id == state.active_runs.for_service(service)
    )


def _finished(state: OrchestratorState, service: Service) -> OrchestratorState:
    """The active run ended on its own; nothing left to cancel."""
    return replace(state, in_flight=state.in_flight - {service})


def _cancel_service(
    state: OrchestratorState,
    event: Event,
    service: Service,
) -> tuple[OrchestratorState, list[Command]]:
    """
    - Cancellation does NOT bump run IDs
    - Cancel* is emitted only for an in-flight run; timers are always cleared
    - Completion is driven solely by CancelAck or CancelTimeout
    """
    cmds: list[Command] = [
        CancelTimer(timer_id=timer_id) for timer_id in _SERVICE_TIMERS[service]
    ]
    if service not in state.in_flight:
        return state, cmds

    run_id = state.active_runs.for_service(service)
    new_state = replace(
        state,
        in_flight=state.in_flight - {service},
        cancel_in_flight=state.cancel_in_flight | {(service, run_id)},
    )

    if service is Service.ASR:
        cmds.append(CancelTranscription(run_id=run_id))
    elif service is Service.LLM:
        cmds.append(CancelGeneration(run_id=run_id))
    elif service is Service.TTS:
        cmds.append(CancelSynthesis(run_id=run_id))

    cmds.append(
        _log(
            new_state,
            event,
            "request_cancel",
            {"service": service.value, "run_id": run_id},
        )
    )
    return new_state, cmds


def _cancel_all(
    state: OrchestratorState, event: Event
) -> tuple[OrchestratorState, list[Command]]:
    cmds: list[Command] = []
    for service in (Service.ASR, Service.LLM, Service.TTS):
        state, more = _cancel_service(state, event, service)
        cmds.extend(more)
    return state, cmds


# =============================================================================
# Turn bookkeeping resets
# =============================================================================

def _reset_reply(state: OrchestratorState) -> OrchestratorState:
    """
    Clean slate for reply generation + synthesis bookkeeping.

    State-only helper (pure). Timer cancel commands are emitted by callers.
    """
    return replace(
        state,
        active_reply_id=None,
        next_reply_seq=0,
        held_reply_chunks=(),
        reply_text="",
        generation_finished=False,
        tts_text_buffer="",
        first_audio_timer_armed=False,
        next_audio_seq=0,
        held_audio_chunks=(),
        playback_started=False,
        synthesis_finished=False,
    )


def _clear_turn(state: OrchestratorState) -> OrchestratorState:
    """Drop the active utterance and any partial reply."""
    return replace(
        _reset_reply(state),
        active_utterance_id=None,
        utterance_status=None,
        utterance=None,
        transcription_attempt=reset_attempt(),
        speech_end_ts_ms=None,
        user_text="",
        deferred_barge_in_utterance_id=None,
    )


def _open_deferred(
    prev: OrchestratorState,
    new: OrchestratorState,
    event: Event,
) -> tuple[OrchestratorState, list[Command]]:
    """
    The session is LISTENING again: speech deferred while the reply had
    no audio becomes the active open utterance.
    """
    utterance_id = prev.deferred_barge_in_utterance_id
    if utterance_id is None:
        return new, []
    new = replace(
        new,
        active_utterance_id=utterance_id,
        utterance_status=UtteranceStatus.OPEN,
        deferred_barge_in_utterance_id=None,
    )
    return new, [
        _log(new, event, "deferred_utterance_opened", {"utterance_id": utterance_id})
    ]


def _recover(
    state: OrchestratorState,
    event: Event,
    *,
    message: str,
    source: str,
    details: dict[str, Any] | None = None,
) -> tuple[OrchestratorState, list[Command]]:
    """
    Recoverable failure: cancel everything, discard partial output,
    publish exactly one error record, then state LISTENING.
    """
    new_state, cmds = _cancel_all(state, event)
    new_state = replace(
        _clear_turn(new_state),
        state=State.LISTENING,
        last_error=message,
    )
    new_state, opened = _open_deferred(state, new_state, event)
    cmds.extend(opened)
    cmds.append(SendToClient(message=error_message(message)))
    cmds.append(SendToClient(message=state_message(State.LISTENING.value)))
    cmds.append(
        _log(
            new_state,
            event,
            "state_changed",
            {
                "from_state": state.state.value,
                "to_state": State.LISTENING.value,
                "source": source,
            },
        )
    )
    cmds.append(
        _log(
            new_state,
            event,
            "recover",
            {"source": source, "message": message, **(details or {})},
        )
    )
    return new_state, cmds


def _arm_first_audio_timer(
    state: OrchestratorState,
) -> tuple[OrchestratorState, list[Command]]:
    """Start the first-audio deadline once synthesis has input to work on."""
    if state.first_audio_timer_armed:
        return state, []
    return replace(state, first_audio_timer_armed=True), [
        StartTimer(
            timer_id=TIMER_SYNTHESIS_FIRST_AUDIO,
            duration_ms=state.policy.synthesis_first_audio_timeout_ms,
            timeout_event_type=EventType.SYNTHESIS_FIRST_AUDIO_TIMEOUT,
            run_id=state.active_runs.tts,
        )
    ]


def _maybe_finish_turn(
    state: OrchestratorState,
    event: Event,
    cmds: list[Command],
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    """
    Complete the turn once generation AND synthesis are both finished.

    The exchange is committed to context only here: never on cancellation
    or failure.
    """
    if not (state.generation_finished and state.synthesis_finished):
        return state, _logs_last(tuple(cmds))

    turn_id = state.current_turn_id
    cmds.append(
        CommitTurn(
            turn_id=turn_id,
            user_text=state.user_text,
            assistant_text=state.reply_text.strip(),
        )
    )
    cmds.extend(
        CancelTimer(timer_id=timer_id)
        for timer_id in _SERVICE_TIMERS[Service.LLM] + _SERVICE_TIMERS[Service.TTS]
    )

    new_state = replace(
        _clear_turn(state),
        state=State.LISTENING,
        in_flight=frozenset(),
        current_turn_id=turn_id + 1,
    )
    new_state, opened = _open_deferred(state, new_state, event)
    cmds.extend(opened)
    cmds.extend(_announce(state, new_state, event, "turn_complete"))
    cmds.append(
        _log(
            new_state,
            event,
            "turn_complete",
            {
                "turn_id": turn_id,
                "reply_id": state.active_reply_id,
                "user_len": len(state.user_text),
                "assistant_len": len(state.reply_text),
                "audio_chunks": state.next_audio_seq,
            },
        )
    )
    return new_state, _logs_last(tuple(cmds))


# =============================================================================
# Reducer entrypoint
# =============================================================================

def reduce(
    state: OrchestratorState, event: Event
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    """
    Pure reducer for the duplex voice session state machine.

    Given the current orchestrator state and a single event, returns:
    - the next state
    - a tuple of commands describing required side effects

    Properties:
    - Deterministic: no IO, clocks, or randomness
    - Total: every (state, event) pair is handled or explicitly ignored
    - Version-safe: ignores events with stale run IDs or lineage ids
    """
    if isinstance(event, FatalError):
        return _on_fatal(state, event)

    if isinstance(event, SessionStarted):
        return state, (
            _log(state, event, "session_started", {"session_id": event.session_id}),
        )

    if isinstance(event, SessionEnded):
        return state, (
            _log(state, event, "session_ended", {"session_id": event.session_id}),
        )

    if isinstance(event, (CancelAck, CancelTimeout)):
        return _on_cancel_resolved(state, event)

    # ------------------------------------------------------------------
    # ERROR gating (terminal)
    # ------------------------------------------------------------------
    if state.state is State.ERROR:
        return _ignore(state, event, "in_error_state")

    if isinstance(event, TransportDisconnected):
        new_state, cmds = _cancel_all(state, event)
        new_state = _clear_turn(new_state)
        cmds.append(
            _log(
                new_state,
                event,
                "transport_disconnected",
                {"session_id": event.session_id, "reason": event.reason},
            )
        )
        return new_state, _logs_last(tuple(cmds))

    # ------------------------------------------------------------------
    # Client control
    # ------------------------------------------------------------------
    if isinstance(event, Pause):
        return _on_pause(state, event)

    if isinstance(event, Resume):
        if not state.paused:
            return _ignore(state, event, "not_paused")
        new_state = replace(state, paused=False)
        return new_state, (_log(new_state, event, "resumed"),)

    if isinstance(event, Stop):
        return _on_stop(state, event)

    # ------------------------------------------------------------------
    # Segmenter
    # ------------------------------------------------------------------
    if isinstance(event, (SpeechStart, SpeechInterrupt)):
        return _on_speech_start(state, event)

    if isinstance(event, SpeechEnd):
        return _on_speech_end(state, event)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    if isinstance(
        event,
        (TranscriptPartial, TranscriptFinal, TranscriptionFailed, TranscriptionTimeout),
    ):
        return _on_transcription(state, event)

    if isinstance(
        event,
        (
            ReplyChunkReceived,
            GenerationDone,
            GenerationFailed,
            GenerationFirstChunkTimeout,
            GenerationStallTimeout,
        ),
    ):
        return _on_generation(state, event)

    if isinstance(
        event,
        (
            AudioChunkReceived,
            SynthesisDone,
            SynthesisFailed,
            SynthesisFirstAudioTimeout,
            SynthesisStallTimeout,
        ),
    ):
        return _on_synthesis(state, event)

    return _ignore(state, event, "unhandled_event")


# =============================================================================
# Lifecycle
# =============================================================================

def _on_fatal(
    state: OrchestratorState, event: FatalError
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if state.state is State.ERROR:
        return _ignore(state, event, "already_in_error")

    new_state, cmds = _cancel_all(state, event)
    new_state = replace(
        _clear_turn(new_state),
        state=State.ERROR,
        last_error=event.reason,
    )
    cmds.extend(_announce(state, new_state, event, "fatal_error"))
    cmds.append(SendToClient(message=error_message(FATAL_ERROR_MESSAGE)))
    cmds.append(
        _log(
            new_state,
            event,
            "fatal_error",
            {"reason": event.reason, "context": event.context or {}},
        )
    )
    cmds.append(EndSession(reason=f"fatal:{event.reason}"))
    return new_state, _logs_last(tuple(cmds))


def _on_cancel_resolved(
    state: OrchestratorState, event: CancelAck | CancelTimeout
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    key = (event.service, event.run_id)
    if key not in state.cancel_in_flight:
        return _ignore(state, event, "cancel_not_pending")

    # ACK / timeout clears cancel_in_flight only: no run_id bump, no transition
    new_state = replace(state, cancel_in_flight=state.cancel_in_flight - {key})
    decision = "cancel_ack" if isinstance(event, CancelAck) else "cancel_timeout_abandoned"
    return new_state, (
        _log(
            new_state,
            event,
            decision,
            {"service": event.service.value, "run_id": event.run_id},
        ),
    )


# =============================================================================
# Client control
# =============================================================================

def _discard_open_utterance(
    state: OrchestratorState,
    event: Event,
    reason: str,
) -> tuple[OrchestratorState, list[Command]]:
    """
    Drop the open (not yet transcribed) utterance.

    The utterance stays active as CANCELLED so its late SpeechEnd is
    recognized and dropped. If it was a barge-in utterance (TRANSCRIBING
    with nothing in flight), the session falls back to LISTENING.
    """
    new_state = replace(state, utterance_status=UtteranceStatus.CANCELLED)
    if state.state is State.TRANSCRIBING and Service.ASR not in state.in_flight:
        new_state = replace(
            _clear_turn(new_state),
            state=State.LISTENING,
            active_utterance_id=state.active_utterance_id,
            utterance_status=UtteranceStatus.CANCELLED,
        )

    cmds = _announce(state, new_state, event, "utterance_discarded")
    cmds.append(
        _log(
            new_state,
            event,
            "utterance_discarded",
            {"utterance_id": state.active_utterance_id, "reason": reason},
        )
    )
    return new_state, cmds


def _on_pause(
    state: OrchestratorState, event: Pause
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if state.paused:
        return _ignore(state, event, "already_paused")

    new_state = replace(state, paused=True, deferred_barge_in_utterance_id=None)
    cmds: list[Command] = []
    if new_state.utterance_status is UtteranceStatus.OPEN:
        new_state, cmds = _discard_open_utterance(new_state, event, "paused")

    cmds.append(
        _log(
            new_state,
            event,
            "paused",
            {"discarded_deferred_utterance_id": state.deferred_barge_in_utterance_id},
        )
    )
    return new_state, _logs_last(tuple(cmds))


def _on_stop(
    state: OrchestratorState, event: Stop
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if (
        state.state is State.LISTENING
        and state.utterance_status is not UtteranceStatus.OPEN
        and not state.in_flight
    ):
        return _ignore(state, event, "nothing_to_stop")

    new_state, cmds = _cancel_all(state, event)
    new_state = replace(_clear_turn(new_state), state=State.LISTENING)
    if state.active_utterance_id is not None:
        new_state = replace(
            new_state,
            active_utterance_id=state.active_utterance_id,
            utterance_status=UtteranceStatus.CANCELLED,
        )
    cmds.extend(_announce(state, new_state, event, "stop"))
    cmds.append(
        _log(
            new_state,
            event,
            "stop",
            {
                "discarded_utterance_id": state.active_utterance_id,
                "discarded_deferred_utterance_id": state.deferred_barge_in_utterance_id,
                "discarded_reply_id": state.active_reply_id,
            },
        )
    )
    return new_state, _logs_last(tuple(cmds))


# =============================================================================
# Segmenter
# =============================================================================

def _on_speech_start(
    state: OrchestratorState, event: SpeechStart | SpeechInterrupt
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if state.paused:
        return _ignore(state, event, "paused")

    if event.utterance_id in (state.active_utterance_id, state.deferred_barge_in_utterance_id):
        return _ignore(state, event, "duplicate_speech_start")

    if state.state is State.LISTENING:
        new_state = replace(
            state,
            active_utterance_id=event.utterance_id,
            utterance_status=UtteranceStatus.OPEN,
            utterance=None,
            transcription_attempt=reset_attempt(),
        )
        return new_state, (
            _log(
                new_state,
                event,
                "utterance_opened",
                {"superseded_utterance_id": state.active_utterance_id},
            ),
        )

    # ------------------------------------------------------------------
    # Barge-in: a new utterance while the session is busy
    # ------------------------------------------------------------------
    if state.state is State.SPEAKING:
        policy = state.policy.barge_in
        if policy is BargeInPolicy.DISABLED:
            return _ignore(state, event, "barge_in_disabled")
        if policy is BargeInPolicy.AFTER_PLAYBACK_START and not state.playback_started:
            new_state = replace(state, deferred_barge_in_utterance_id=event.utterance_id)
            return new_state, (
                _log(
                    new_state,
                    event,
                    "barge_in_deferred",
                    {
                        "utterance_id": event.utterance_id,
                        "replaced_utterance_id": state.deferred_barge_in_utterance_id,
                    },
                ),
            )

    new_state, cmds = _barge_in(state, event, event.utterance_id)
    return new_state, _logs_last(tuple(cmds))


def _barge_in(
    state: OrchestratorState,
    event: Event,
    utterance_id: str,
) -> tuple[OrchestratorState, list[Command]]:
    """Cancel the turn in progress and open `utterance_id` in its place."""
    new_state, cmds = _cancel_all(state, event)
    new_state = replace(
        _clear_turn(new_state),
        state=State.TRANSCRIBING,
        active_utterance_id=utterance_id,
        utterance_status=UtteranceStatus.OPEN,
    )
    cmds.extend(_announce(state, new_state, event, "barge_in"))
    cmds.append(
        _log(
            new_state,
            event,
            "barge_in",
            {
                "from_state": state.state.value,
                "superseded_utterance_id": state.active_utterance_id,
                "superseded_utterance_status": (
                    UtteranceStatus.CANCELLED.value
                    if state.active_utterance_id is not None
                    else None
                ),
                "superseded_reply_id": state.active_reply_id,
                "policy": state.policy.barge_in.value,
                "deferred": utterance_id == state.deferred_barge_in_utterance_id,
            },
        )
    )
    return new_state, cmds


def _on_speech_end(
    state: OrchestratorState, event: SpeechEnd
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    utterance = event.utterance
    if utterance.utterance_id == state.deferred_barge_in_utterance_id:
        return _on_deferred_speech_end(state, event)

    if utterance.utterance_id != state.active_utterance_id:
        return _ignore(state, event, "speech_end_not_active")
    if state.utterance_status is UtteranceStatus.CANCELLED:
        return _ignore(state, event, "utterance_cancelled")
    if state.utterance_status is not UtteranceStatus.OPEN:
        return _ignore(state, event, "speech_end_not_active")

    if event.reason in _DISCARD_REASONS or state.paused:
        new_state, cmds = _discard_open_utterance(state, event, event.reason.value)
        return new_state, _logs_last(tuple(cmds))

    if state.state not in (State.LISTENING, State.TRANSCRIBING):
        return _ignore(state, event, "speech_end_unexpected_state")

    runs = state.active_runs.bumped(Service.ASR)
    new_state = replace(
        state,
        state=State.TRANSCRIBING,
        active_runs=runs,
        in_flight=state.in_flight | {Service.ASR},
        utterance_status=UtteranceStatus.CLOSED,
        utterance=utterance,
        transcription_attempt=reset_attempt(),
        speech_end_ts_ms=event.ts_ms,
    )

    cmds: list[Command] = [
        StartTranscription(run_id=runs.asr, utterance=utterance),
        StartTimer(
            timer_id=TIMER_TRANSCRIPTION,
            duration_ms=state.policy.transcription_timeout_ms,
            timeout_event_type=EventType.TRANSCRIPTION_TIMEOUT,
            run_id=runs.asr,
        ),
    ]
    cmds.extend(_announce(state, new_state, event, "speech_end"))
    cmds.append(
        _log(
            new_state,
            event,
            "start_transcription",
            {
                "utterance_id": utterance.utterance_id,
                "frames": len(utterance.frames),
                "duration_ms": utterance.duration_ms,
                "reason": event.reason.value,
            },
        )
    )
    return new_state, _logs_last(tuple(cmds))


def _on_deferred_speech_end(
    state: OrchestratorState, event: SpeechEnd
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    """
    The deferred utterance closed before the reply produced any audio.
    The newer input wins: the reply is cancelled and the utterance is
    transcribed, unless a pause or stop ended it.
    """
    utterance_id = event.utterance.utterance_id
    if event.reason in _DISCARD_REASONS:
        new_state = replace(state, deferred_barge_in_utterance_id=None)
        return new_state, (
            _log(
                new_state,
                event,
                "utterance_discarded",
                {
                    "utterance_id": utterance_id,
                    "reason": event.reason.value,
                    "deferred": True,
                },
            ),
        )

    barged, cmds = _barge_in(state, event, utterance_id)
    new_state, more = _on_speech_end(barged, event)
    return new_state, _logs_last(tuple(cmds) + more)


# =============================================================================
# Transcription
# =============================================================================

def _on_transcription(
    state: OrchestratorState,
    event: TranscriptPartial | TranscriptFinal | TranscriptionFailed | TranscriptionTimeout,
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if state.state is not State.TRANSCRIBING:
        return _ignore(state, event, "not_transcribing")
    if not _is_current(state, Service.ASR, event.run_id):
        return _ignore(state, event, "stale_transcription_run")
    if (
        not isinstance(event, TranscriptionTimeout)
        and event.utterance_id != state.active_utterance_id
    ):
        return _ignore(state, event, "stale_utterance")

    utterance_id = state.active_utterance_id or ""

    if isinstance(event, TranscriptPartial):
        return state, (
            SendToClient(
                message=transcript_message(
                    text=event.text, is_final=False, utterance_id=utterance_id
                )
            ),
            _log(state, event, "transcript_partial", {"text_len": len(event.text)}),
        )

    if isinstance(event, TranscriptFinal):
        return _on_transcript_final(state, event, utterance_id)

    # ------------------------------------------------------------------
    # Failure or deadline: retry once with the full utterance audio
    # ------------------------------------------------------------------
    cmds: list[Command] = [CancelTimer(timer_id=TIMER_TRANSCRIPTION)]
    if isinstance(event, TranscriptionFailed):
        failure = FailureType.ERROR
        reason = event.reason
        new_state = _finished(state, Service.ASR)
    else:
        failure = FailureType.FIRST_OUTPUT_TIMEOUT
        reason = f"no transcript within {state.policy.transcription_timeout_ms} ms"
        new_state, more = _cancel_service(state, event, Service.ASR)
        cmds.extend(more)

    if new_state.utterance is not None and should_retry(
        service=Service.ASR,
        attempt=state.transcription_attempt,
        transcription_limit=state.policy.transcription_max_retries,
    ):
        runs = new_state.active_runs.bumped(Service.ASR)
        attempt = next_attempt(state.transcription_attempt)
        new_state = replace(
            new_state,
            active_runs=runs,
            in_flight=new_state.in_flight | {Service.ASR},
            transcription_attempt=attempt,
        )
        cmds.extend((
            StartTranscription(run_id=runs.asr, utterance=new_state.utterance),
            StartTimer(
                timer_id=TIMER_TRANSCRIPTION,
                duration_ms=state.policy.transcription_timeout_ms,
                timeout_event_type=EventType.TRANSCRIPTION_TIMEOUT,
                run_id=runs.asr,
            ),
            _log(
                new_state,
                event,
                "transcription_retry",
                {
                    "attempt": attempt.attempt,
                    "failure": failure.value,
                    "reason": reason,
                },
            ),
        ))
        return new_state, _logs_last(tuple(cmds))

    recovered, more = _recover(
        new_state,
        event,
        message=f"Transcription failed: {reason}",
        source="transcription_failed",
        details={"failure": failure.value, "attempts": state.transcription_attempt.attempt + 1},
    )
    return recovered, _logs_last(tuple(cmds + more))


def _on_transcript_final(
    state: OrchestratorState,
    event: TranscriptFinal,
    utterance_id: str,
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    text = event.text.strip()
    new_state = _finished(state, Service.ASR)
    cmds: list[Command] = [
        CancelTimer(timer_id=TIMER_TRANSCRIPTION),
        SendToClient(
            message=transcript_message(
                text=text, is_final=True, utterance_id=utterance_id
            )
        ),
    ]

    if not text:
        new_state = replace(_clear_turn(new_state), state=State.LISTENING)
        cmds.extend(_announce(state, new_state, event, "empty_transcript"))
        cmds.append(_log(new_state, event, "empty_transcript"))
        return new_state, _logs_last(tuple(cmds))

    reply_id = reply_id_for(utterance_id)
    runs = new_state.active_runs.bumped(Service.LLM)
    new_state = replace(
        _reset_reply(new_state),
        state=State.GENERATING,
        active_runs=runs,
        in_flight=new_state.in_flight | {Service.LLM},
        utterance=None,
        user_text=text,
        active_reply_id=reply_id,
    )
    cmds.extend((
        StartGeneration(run_id=runs.llm, reply_id=reply_id, user_text=text),
        StartTimer(
            timer_id=TIMER_GENERATION_FIRST_CHUNK,
            duration_ms=state.policy.generation_first_chunk_timeout_ms,
            timeout_event_type=EventType.GENERATION_FIRST_CHUNK_TIMEOUT,
            run_id=runs.llm,
        ),
    ))
    cmds.extend(_announce(state, new_state, event, "transcript_final"))
    cmds.append(
        _log(new_state, event, "start_generation", {"text_len": len(text)})
    )
    return new_state, _logs_last(tuple(cmds))


# =============================================================================
# Generation
# =============================================================================

def _on_generation(
    state: OrchestratorState,
    event: (
        ReplyChunkReceived
        | GenerationDone
        | GenerationFailed
        | GenerationFirstChunkTimeout
        | GenerationStallTimeout
    ),
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if state.state not in (State.GENERATING, State.SPEAKING):
        return _ignore(state, event, "not_generating")
    if not _is_current(state, Service.LLM, event.run_id):
        return _ignore(state, event, "stale_generation_run")
    if (
        isinstance(event, (ReplyChunkReceived, GenerationDone, GenerationFailed))
        and event.reply_id != state.active_reply_id
    ):
        return _ignore(state, event, "stale_reply")

    if isinstance(event, ReplyChunkReceived):
        return _on_reply_chunk(state, event)

    if isinstance(event, GenerationDone):
        return _on_generation_done(state, event)

    if isinstance(event, GenerationFailed):
        new_state = _finished(state, Service.LLM)
        failure = FailureType.ERROR
        reason = event.reason
    elif isinstance(event, GenerationFirstChunkTimeout):
        new_state = state
        failure = FailureType.FIRST_OUTPUT_TIMEOUT
        reason = (
            f"no reply within {state.policy.generation_first_chunk_timeout_ms} ms"
        )
    else:
        new_state = state
        failure = FailureType.STALL_TIMEOUT
        reason = f"reply stalled for {state.policy.generation_stall_timeout_ms} ms"

    recovered, cmds = _recover(
        new_state,
        event,
        message=f"Reply generation failed: {reason}",
        source="generation_failed",
        details={"failure": failure.value},
    )
    return recovered, _logs_last(tuple(cmds))


def _on_reply_chunk(
    state: OrchestratorState, event: ReplyChunkReceived
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    held = dict(state.held_reply_chunks)
    if event.sequence_number < state.next_reply_seq or event.sequence_number in held:
        return _ignore(state, event, "duplicate_reply_chunk")

    held[event.sequence_number] = event.text
    next_seq = state.next_reply_seq
    released: list[tuple[int, str]] = []
    while next_seq in held:
        released.append((next_seq, held.pop(next_seq)))
        next_seq += 1

    new_state = replace(
        state,
        held_reply_chunks=tuple(sorted(held.items())),
        next_reply_seq=next_seq,
    )
    if not released:
        return new_state, (
            _log(
                new_state,
                event,
                "reply_chunk_held",
                {
                    "sequence_number": event.sequence_number,
                    "waiting_for": state.next_reply_seq,
                },
            ),
        )

    reply_id = state.active_reply_id or ""
    cmds: list[Command] = []

    # First in-order chunk: GENERATING -> SPEAKING, open the synthesis run
    if state.state is State.GENERATING:
        runs = new_state.active_runs.bumped(Service.TTS)
        new_state = replace(
            new_state,
            state=State.SPEAKING,
            active_runs=runs,
            in_flight=new_state.in_flight | {Service.TTS},
        )
        cmds.append(CancelTimer(timer_id=TIMER_GENERATION_FIRST_CHUNK))
        cmds.append(StartSynthesis(run_id=runs.tts, reply_id=reply_id))
        cmds.extend(_announce(state, new_state, event, "first_reply_chunk"))

    reply_text = new_state.reply_text
    buffer = new_state.tts_text_buffer
    for sequence_number, text in released:
        cmds.append(
            SendToClient(
                message=reply_chunk_message(
                    text=text, reply_id=reply_id, sequence_number=sequence_number
                )
            )
        )
        reply_text += text
        buffer += text

    units, buffer = split_ready_units(buffer)
    new_state = replace(new_state, reply_text=reply_text, tts_text_buffer=buffer)
    if units:
        cmds.extend(
            SendSynthesisText(run_id=new_state.active_runs.tts, text=unit)
            for unit in units
        )
        new_state, more = _arm_first_audio_timer(new_state)
        cmds.extend(more)

    cmds.append(
        StartTimer(
            timer_id=TIMER_GENERATION_STALL,
            duration_ms=state.policy.generation_stall_timeout_ms,
            timeout_event_type=EventType.GENERATION_STALL_TIMEOUT,
            run_id=new_state.active_runs.llm,
        )
    )
    cmds.append(
        _log(
            new_state,
            event,
            "reply_chunk",
            {
                "released": [seq for seq, _ in released],
                "synthesis_units": len(units),
                "buffer_len": len(buffer),
            },
        )
    )
    return new_state, _logs_last(tuple(cmds))


def _on_generation_done(
    state: OrchestratorState, event: GenerationDone
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    new_state = replace(_finished(state, Service.LLM), generation_finished=True)
    cmds: list[Command] = [
        CancelTimer(timer_id=TIMER_GENERATION_FIRST_CHUNK),
        CancelTimer(timer_id=TIMER_GENERATION_STALL),
    ]

    if not state.reply_text.strip():
        recovered, more = _recover(
            new_state,
            event,
            message="Reply generation failed: the model returned an empty reply",
            source="empty_reply",
            details={"held_chunks": len(state.held_reply_chunks)},
        )
        return recovered, _logs_last(tuple(cmds + more))

    if state.held_reply_chunks:
        cmds.append(
            _log(
                new_state,
                event,
                "held_reply_chunks_discarded",
                {"sequence_numbers": [seq for seq, _ in state.held_reply_chunks]},
            )
        )
        new_state = replace(new_state, held_reply_chunks=())

    tts_run_id = new_state.active_runs.tts
    unit = flush(new_state.tts_text_buffer)
    if unit is not None:
        cmds.append(SendSynthesisText(run_id=tts_run_id, text=unit))
    cmds.append(EndSynthesisInput(run_id=tts_run_id))
    new_state = replace(new_state, tts_text_buffer="")
    new_state, more = _arm_first_audio_timer(new_state)
    cmds.extend(more)

    cmds.append(
        _log(
            new_state,
            event,
            "generation_done",
            {"reply_len": len(new_state.reply_text), "flushed": unit is not None},
        )
    )
    return _maybe_finish_turn(new_state, event, cmds)


# =============================================================================
# Synthesis
# =============================================================================

def _on_synthesis(
    state: OrchestratorState,
    event: (
        AudioChunkReceived
        | SynthesisDone
        | SynthesisFailed
        | SynthesisFirstAudioTimeout
        | SynthesisStallTimeout
    ),
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if state.state is not State.SPEAKING:
        return _ignore(state, event, "not_speaking")
    if not _is_current(state, Service.TTS, event.run_id):
        return _ignore(state, event, "stale_synthesis_run")
    if (
        isinstance(event, (AudioChunkReceived, SynthesisDone, SynthesisFailed))
        and event.reply_id != state.active_reply_id
    ):
        return _ignore(state, event, "stale_reply")

    if isinstance(event, AudioChunkReceived):
        return _on_audio_chunk(state, event)

    if isinstance(event, SynthesisDone):
        return _on_synthesis_done(state, event)

    if isinstance(event, SynthesisFailed):
        new_state = _finished(state, Service.TTS)
        failure = FailureType.ERROR
        reason = event.reason
    elif isinstance(event, SynthesisFirstAudioTimeout):
        new_state = state
        failure = FailureType.FIRST_OUTPUT_TIMEOUT
        reason = f"no audio within {state.policy.synthesis_first_audio_timeout_ms} ms"
    else:
        new_state = state
        failure = FailureType.STALL_TIMEOUT
        reason = f"audio stalled for {state.policy.synthesis_stall_timeout_ms} ms"

    recovered, cmds = _recover(
        new_state,
        event,
        message=f"Speech synthesis failed: {reason}",
        source="synthesis_failed",
        details={"failure": failure.value},
    )
    return recovered, _logs_last(tuple(cmds))


def _on_audio_chunk(
    state: OrchestratorState, event: AudioChunkReceived
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    if state.synthesis_finished:
        return _ignore(state, event, "audio_after_final_chunk")

    held = {seq: (data, is_final) for seq, data, is_final in state.held_audio_chunks}
    if event.sequence_number < state.next_audio_seq or event.sequence_number in held:
        return _ignore(state, event, "duplicate_audio_chunk")

    held[event.sequence_number] = (event.data, event.is_final)
    next_seq = state.next_audio_seq
    released: list[tuple[int, bytes, bool]] = []
    while next_seq in held:
        data, is_final = held.pop(next_seq)
        released.append((next_seq, data, is_final))
        next_seq += 1
        if is_final:
            break

    new_state = replace(
        state,
        held_audio_chunks=tuple(
            (seq, data, is_final) for seq, (data, is_final) in sorted(held.items())
        ),
        next_audio_seq=next_seq,
    )
    if not released:
        return new_state, (
            _log(
                new_state,
                event,
                "audio_chunk_held",
                {
                    "sequence_number": event.sequence_number,
                    "waiting_for": state.next_audio_seq,
                },
            ),
        )

    reply_id = state.active_reply_id or ""
    cmds: list[Command] = []
    for sequence_number, data, is_final in released:
        cmds.append(
            SendToClient(
                message=audio_chunk_message(
                    data=data,
                    reply_id=reply_id,
                    sequence_number=sequence_number,
                    is_final=is_final,
                )
            )
        )
        if not new_state.playback_started:
            new_state = replace(new_state, playback_started=True)
            cmds.append(CancelTimer(timer_id=TIMER_SYNTHESIS_FIRST_AUDIO))
            if state.speech_end_ts_ms is not None:
                cmds.append(
                    RecordMetric(
                        name=METRIC_SPEECH_END_TO_FIRST_AUDIO,
                        value=float(event.ts_ms - state.speech_end_ts_ms),
                        tags=(("reply_id", reply_id),),
                    )
                )
        if is_final:
            new_state = replace(new_state, synthesis_finished=True, held_audio_chunks=())

    if new_state.synthesis_finished:
        cmds.append(CancelTimer(timer_id=TIMER_SYNTHESIS_STALL))
    else:
        cmds.append(
            StartTimer(
                timer_id=TIMER_SYNTHESIS_STALL,
                duration_ms=state.policy.synthesis_stall_timeout_ms,
                timeout_event_type=EventType.SYNTHESIS_STALL_TIMEOUT,
                run_id=state.active_runs.tts,
            )
        )

    cmds.append(
        _log(
            new_state,
            event,
            "audio_chunk",
            {
                "released": [seq for seq, _, _ in released],
                "final": new_state.synthesis_finished,
            },
        )
    )

    # Playback has started: a deferred barge-in now interrupts the reply,
    # unless this chunk completed it
    deferred = state.deferred_barge_in_utterance_id
    if deferred is not None and not (
        new_state.generation_finished and new_state.synthesis_finished
    ):
        barged, more = _barge_in(new_state, event, deferred)
        return barged, _logs_last(tuple(cmds + more))
    return _maybe_finish_turn(new_state, event, cmds)


def _on_synthesis_done(
    state: OrchestratorState, event: SynthesisDone
) -> tuple[OrchestratorState, tuple[Command, ...]]:
    new_state = _finished(state, Service.TTS)
    cmds: list[Command] = [
        CancelTimer(timer_id=TIMER_SYNTHESIS_FIRST_AUDIO),
        CancelTimer(timer_id=TIMER_SYNTHESIS_STALL),
    ]

    if not state.generation_finished:
        recovered, more = _recover(
            new_state,
            event,
            message="Speech synthesis failed: audio ended before the reply was complete",
            source="synthesis_ended_early",
        )
        return recovered, _logs_last(tuple(cmds + more))

    if not state.synthesis_finished:
        # Stream ended without a final chunk: close the reply for the client
        if state.held_audio_chunks:
            cmds.append(
                _log(
                    new_state,
                    event,
                    "held_audio_chunks_discarded",
                    {"sequence_numbers": [seq for seq, _, _ in state.held_audio_chunks]},
                )
            )
        cmds.append(
            SendToClient(
                message=audio_chunk_message(
                    data=b"",
                    reply_id=state.active_reply_id or "",
                    sequence_number=state.next_audio_seq,
                    is_final=True,
                )
            )
        )
        new_state = replace(
            new_state,
            synthesis_finished=True,
            held_audio_chunks=(),
            next_audio_seq=state.next_audio_seq + 1,
        )

    cmds.append(
        _log(new_state, event, "synthesis_done", {"audio_chunks": new_state.next_audio_seq})
    )
    return _maybe_finish_turn(new_state, event, cmds)

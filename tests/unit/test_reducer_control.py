# pylint: disable=missing-module-docstring,missing-function-docstring
from dataclasses import replace

import pytest

from audio.frames import EndReason, UtteranceStatus
from orchestrator.commands import (
    CancelGeneration,
    CancelSynthesis,
    CancelTranscription,
    CommitTurn,
    EndSession,
    LogEvent,
    StartTranscription,
)
from orchestrator.enums.barge_in import BargeInPolicy
from orchestrator.enums.service import Service
from orchestrator.enums.state import State
from orchestrator.events import (
    CancelAck,
    CancelTimeout,
    EventType,
    FatalError,
    Pause,
    Resume,
    Stop,
    SynthesisFirstAudioTimeout,
    TransportDisconnected,
)
from orchestrator.reducer import FATAL_ERROR_MESSAGE, reduce
from orchestrator.state_dataclass import OrchestratorState, SessionPolicy
from fakes import (
    audio_chunk,
    client_messages,
    decisions,
    drive,
    generation_done,
    of_type,
    reply_chunk,
    speech_end,
    speech_interrupt,
    speech_start,
    transcript_final,
)

RID = "u1:reply"


def _speaking(policy=BargeInPolicy.AFTER_PLAYBACK_START, *, playback=False):
    state = OrchestratorState(policy=SessionPolicy(barge_in=policy))
    events = [
        speech_start("u1"),
        speech_end("u1"),
        transcript_final(1, "u1", "hello"),
        reply_chunk(1, RID, "Sure, let me explain. ", 0),
    ]
    if playback:
        events.append(audio_chunk(1, RID, 0))
    state, _ = drive(state, *events)
    assert state.state is State.SPEAKING
    return state


def _pause():
    return Pause(event_type=EventType.PAUSE, ts_ms=5)


def _resume():
    return Resume(event_type=EventType.RESUME, ts_ms=6)


def _stop():
    return Stop(event_type=EventType.STOP, ts_ms=7)


# ---------------------------------------------------------------------
# Barge-in
# ---------------------------------------------------------------------

def test_barge_in_allowed_cancels_reply_and_opens_new_utterance():
    state = _speaking(BargeInPolicy.ALLOW)

    state, cmds = drive(state, speech_interrupt("u2"))

    assert of_type(cmds, CancelGeneration) == [CancelGeneration(run_id=1)]
    assert of_type(cmds, CancelSynthesis) == [CancelSynthesis(run_id=1)]
    assert state.state is State.TRANSCRIBING
    assert state.active_utterance_id == "u2"
    assert state.utterance_status is UtteranceStatus.OPEN
    assert state.active_reply_id is None
    assert state.cancel_in_flight == frozenset({(Service.LLM, 1), (Service.TTS, 1)})
    assert client_messages(cmds) == [{"type": "state", "value": "TRANSCRIBING"}]
    assert "barge_in" in decisions(cmds)


def test_barge_in_after_playback_start_defers_speech_before_first_audio():
    state = _speaking(BargeInPolicy.AFTER_PLAYBACK_START)

    new_state, cmds = drive(state, speech_interrupt("u2"))
    assert new_state == replace(state, deferred_barge_in_utterance_id="u2")
    assert decisions(cmds) == ["barge_in_deferred"]
    assert of_type(cmds, CancelSynthesis) == []
    assert client_messages(cmds) == []

    state = _speaking(BargeInPolicy.AFTER_PLAYBACK_START, playback=True)
    state, cmds = drive(state, speech_interrupt("u2"))
    assert state.state is State.TRANSCRIBING
    assert len(of_type(cmds, CancelSynthesis)) == 1


def test_deferred_barge_in_interrupts_once_first_audio_is_published():
    state = _speaking(BargeInPolicy.AFTER_PLAYBACK_START)
    state, _ = drive(state, speech_interrupt("u2"))

    state, cmds = drive(state, audio_chunk(1, RID, 0))

    assert [m["type"] for m in client_messages(cmds)] == ["audio_chunk", "state"]
    assert client_messages(cmds)[-1] == {"type": "state", "value": "TRANSCRIBING"}
    assert of_type(cmds, CancelGeneration) == [CancelGeneration(run_id=1)]
    assert of_type(cmds, CancelSynthesis) == [CancelSynthesis(run_id=1)]
    assert state.state is State.TRANSCRIBING
    assert state.active_utterance_id == "u2"
    assert state.utterance_status is UtteranceStatus.OPEN
    assert state.deferred_barge_in_utterance_id is None
    barge_in = [c for c in of_type(cmds, LogEvent) if c.event["decision"] == "barge_in"]
    assert barge_in[0].event["details"]["deferred"] is True

    state, cmds = drive(state, speech_end("u2"))

    assert [(c.run_id, c.utterance.utterance_id) for c in of_type(cmds, StartTranscription)] == [
        (2, "u2")
    ]


def test_speech_spanning_first_audio_is_transcribed():
    state, cmds = drive(
        OrchestratorState(),
        speech_start("u1"),
        speech_end("u1"),
        transcript_final(1, "u1", "hello"),
        reply_chunk(1, RID, "Sure, let me explain. ", 0),
        speech_interrupt("u2"),
        audio_chunk(1, RID, 0),
        speech_end("u2"),
    )

    assert state.state is State.TRANSCRIBING
    assert state.active_utterance_id == "u2"
    assert [c.utterance.utterance_id for c in of_type(cmds, StartTranscription)] == ["u1", "u2"]
    assert of_type(cmds, CommitTurn) == []


def test_deferred_utterance_ending_before_first_audio_wins():
    state = _speaking(BargeInPolicy.AFTER_PLAYBACK_START)
    state, _ = drive(state, speech_interrupt("u2"))

    state, cmds = drive(state, speech_end("u2"))

    assert of_type(cmds, CancelGeneration) == [CancelGeneration(run_id=1)]
    assert of_type(cmds, CancelSynthesis) == [CancelSynthesis(run_id=1)]
    assert [c.run_id for c in of_type(cmds, StartTranscription)] == [2]
    assert client_messages(cmds) == [{"type": "state", "value": "TRANSCRIBING"}]
    assert state.active_utterance_id == "u2"
    assert state.utterance_status is UtteranceStatus.CLOSED
    assert state.deferred_barge_in_utterance_id is None


def test_deferred_utterance_opens_when_reply_finishes_with_first_audio():
    state = _speaking(BargeInPolicy.AFTER_PLAYBACK_START)
    state, _ = drive(state, speech_interrupt("u2"), generation_done(1, RID))

    state, cmds = drive(state, audio_chunk(1, RID, 0, is_final=True))

    assert len(of_type(cmds, CommitTurn)) == 1
    assert of_type(cmds, CancelSynthesis) == []
    assert state.state is State.LISTENING
    assert state.active_utterance_id == "u2"
    assert state.utterance_status is UtteranceStatus.OPEN
    assert state.deferred_barge_in_utterance_id is None
    assert "deferred_utterance_opened" in decisions(cmds)

    state, cmds = drive(state, speech_end("u2"))
    assert [c.run_id for c in of_type(cmds, StartTranscription)] == [2]


def test_deferred_utterance_opens_after_synthesis_failure():
    state = _speaking(BargeInPolicy.AFTER_PLAYBACK_START)
    state, _ = drive(state, speech_interrupt("u2"))

    timeout = SynthesisFirstAudioTimeout(
        event_type=EventType.SYNTHESIS_FIRST_AUDIO_TIMEOUT, ts_ms=4_000, run_id=1
    )
    state, cmds = drive(state, timeout)

    assert client_messages(cmds)[-1] == {"type": "state", "value": "LISTENING"}
    assert state.active_utterance_id == "u2"
    assert state.utterance_status is UtteranceStatus.OPEN


@pytest.mark.parametrize("control", [_pause, _stop])
def test_pause_or_stop_drops_deferred_barge_in(control):
    state = _speaking(BargeInPolicy.AFTER_PLAYBACK_START)
    state, _ = drive(state, speech_interrupt("u2"))

    state, _ = drive(state, control())
    assert state.deferred_barge_in_utterance_id is None

    reason = EndReason.PAUSE if control is _pause else EndReason.STOP
    new_state, cmds = drive(state, speech_end("u2", reason=reason))
    assert new_state == state
    assert of_type(cmds, StartTranscription) == []


def test_deferred_utterance_closed_by_pause_marker_is_discarded():
    state = _speaking(BargeInPolicy.AFTER_PLAYBACK_START)
    state, _ = drive(state, speech_interrupt("u2"))

    state, cmds = drive(state, speech_end("u2", reason=EndReason.PAUSE))

    assert state.state is State.SPEAKING
    assert state.deferred_barge_in_utterance_id is None
    assert of_type(cmds, CancelSynthesis) == []
    assert decisions(cmds) == ["utterance_discarded"]


def test_barge_in_disabled_ignores_speech_while_speaking():
    state = _speaking(BargeInPolicy.DISABLED, playback=True)

    new_state, cmds = drive(state, speech_interrupt("u2"))

    assert new_state == state
    assert of_type(cmds, CancelGeneration) == []


def test_barge_in_during_generation_is_always_honored():
    state, _ = drive(
        OrchestratorState(policy=SessionPolicy(barge_in=BargeInPolicy.DISABLED)),
        speech_start("u1"),
        speech_end("u1"),
        transcript_final(1, "u1", "hello"),
    )

    state, cmds = drive(state, speech_interrupt("u2"))

    assert of_type(cmds, CancelGeneration) == [CancelGeneration(run_id=1)]
    assert state.state is State.TRANSCRIBING


def test_barge_in_during_transcription_cancels_it():
    state, _ = drive(OrchestratorState(), speech_start("u1"), speech_end("u1"))

    state, cmds = drive(state, speech_interrupt("u2"))

    assert of_type(cmds, CancelTranscription) == [CancelTranscription(run_id=1)]
    assert state.active_utterance_id == "u2"


def test_output_of_interrupted_reply_is_suppressed():
    state = _speaking(BargeInPolicy.ALLOW)
    state, _ = drive(state, speech_interrupt("u2"))

    new_state, cmds = drive(
        state,
        reply_chunk(1, RID, "more text", 1),
        audio_chunk(1, RID, 0),
    )

    assert new_state == state
    assert client_messages(cmds) == []
    assert of_type(cmds, CommitTurn) == []


def test_interrupting_utterance_flows_into_a_new_turn():
    state = _speaking(BargeInPolicy.ALLOW)

    state, cmds = drive(
        state,
        speech_interrupt("u2"),
        speech_end("u2"),
        transcript_final(2, "u2", "stop please"),
    )

    assert [c.run_id for c in of_type(cmds, StartTranscription)] == [2]
    assert state.state is State.GENERATING
    assert state.active_reply_id == "u2:reply"
    assert state.active_runs.llm == 2


def test_barge_in_utterance_discarded_by_pause_returns_to_listening():
    state = _speaking(BargeInPolicy.ALLOW)
    state, _ = drive(state, speech_interrupt("u2"))

    state, cmds = drive(state, _pause())

    assert state.state is State.LISTENING
    assert state.active_utterance_id == "u2"
    assert state.utterance_status is UtteranceStatus.CANCELLED
    assert client_messages(cmds) == [{"type": "state", "value": "LISTENING"}]


# ---------------------------------------------------------------------
# Cancellation bookkeeping
# ---------------------------------------------------------------------

def test_cancel_ack_clears_pending_cancellation():
    state = _speaking(BargeInPolicy.ALLOW)
    state, _ = drive(state, speech_interrupt("u2"))

    ack = CancelAck(event_type=EventType.CANCEL_ACK, ts_ms=9, service=Service.LLM, run_id=1)
    state, cmds = drive(state, ack)

    assert state.cancel_in_flight == frozenset({(Service.TTS, 1)})
    assert decisions(cmds) == ["cancel_ack"]


def test_cancel_timeout_abandons_run_without_error():
    state = _speaking(BargeInPolicy.ALLOW)
    state, _ = drive(state, speech_interrupt("u2"))

    timeout = CancelTimeout(
        event_type=EventType.CANCEL_TIMEOUT, ts_ms=600, service=Service.TTS, run_id=1
    )
    state, cmds = drive(state, timeout)

    assert (Service.TTS, 1) not in state.cancel_in_flight
    assert state.state is State.TRANSCRIBING
    assert decisions(cmds) == ["cancel_timeout_abandoned"]
    assert client_messages(cmds) == []


def test_unexpected_cancel_ack_is_ignored():
    state = OrchestratorState()
    ack = CancelAck(event_type=EventType.CANCEL_ACK, ts_ms=9, service=Service.ASR, run_id=3)

    new_state, cmds = reduce(state, ack)

    assert new_state == state
    assert cmds[0].event["details"]["reason"] == "cancel_not_pending"


# ---------------------------------------------------------------------
# Pause / resume / stop
# ---------------------------------------------------------------------

def test_pause_discards_open_utterance():
    state, _ = drive(OrchestratorState(), speech_start("u1"))

    state, _ = drive(state, _pause())

    assert state.paused
    assert state.active_utterance_id == "u1"
    assert state.utterance_status is UtteranceStatus.CANCELLED

    # The PAUSE marker's SpeechEnd arrives after the control event
    new_state, cmds = drive(state, speech_end("u1", reason=EndReason.PAUSE))
    assert new_state == state
    assert cmds[0].event["details"]["reason"] == "utterance_cancelled"
    assert of_type(cmds, StartTranscription) == []


def test_speech_ignored_while_paused_until_resume():
    state, _ = drive(OrchestratorState(), _pause())

    new_state, _ = drive(state, speech_start("u1"))
    assert new_state.active_utterance_id is None

    state, cmds = drive(state, _resume())
    assert not state.paused
    assert decisions(cmds) == ["resumed"]

    state, _ = drive(state, speech_start("u1"))
    assert state.active_utterance_id == "u1"


def test_pause_and_resume_are_idempotent():
    state, _ = drive(OrchestratorState(), _pause())

    again, cmds = drive(state, _pause())
    assert again == state
    assert cmds[0].event["details"]["reason"] == "already_paused"

    state, _ = drive(state, _resume())
    again, cmds = drive(state, _resume())
    assert again == state
    assert cmds[0].event["details"]["reason"] == "not_paused"


def test_pause_does_not_interrupt_reply_in_progress():
    state = _speaking(BargeInPolicy.ALLOW)

    state, cmds = drive(state, _pause())

    assert state.state is State.SPEAKING
    assert state.paused
    assert of_type(cmds, CancelSynthesis) == []


def test_stop_while_speaking_cancels_everything():
    state = _speaking(BargeInPolicy.ALLOW, playback=True)

    state, cmds = drive(state, _stop())

    assert state.state is State.LISTENING
    assert of_type(cmds, CancelGeneration) == [CancelGeneration(run_id=1)]
    assert of_type(cmds, CancelSynthesis) == [CancelSynthesis(run_id=1)]
    assert client_messages(cmds) == [{"type": "state", "value": "LISTENING"}]
    assert of_type(cmds, CommitTurn) == []


def test_stopped_utterance_is_marked_cancelled():
    state, _ = drive(OrchestratorState(), speech_start("u1"))

    state, cmds = drive(state, _stop())

    assert state.active_utterance_id == "u1"
    assert state.utterance_status is UtteranceStatus.CANCELLED
    assert decisions(cmds) == ["stop"]

    new_state, cmds = drive(state, speech_end("u1", reason=EndReason.STOP))
    assert new_state == state
    assert cmds[0].event["details"]["reason"] == "utterance_cancelled"

    state, _ = drive(state, speech_start("u2"))
    assert state.active_utterance_id == "u2"
    assert state.utterance_status is UtteranceStatus.OPEN


def test_barge_in_logs_superseded_utterance_as_cancelled():
    state = _speaking(BargeInPolicy.ALLOW)

    _, cmds = drive(state, speech_interrupt("u2"))

    barge_in = [c for c in of_type(cmds, LogEvent) if c.event["decision"] == "barge_in"]
    assert barge_in[0].event["details"]["superseded_utterance_id"] == "u1"
    assert barge_in[0].event["details"]["superseded_utterance_status"] == "cancelled"


def test_stop_while_idle_is_a_noop():
    state = OrchestratorState()

    new_state, cmds = drive(state, _stop())

    assert new_state == state
    assert cmds[0].event["details"]["reason"] == "nothing_to_stop"


def test_speech_end_with_stop_reason_is_discarded():
    state, _ = drive(OrchestratorState(), speech_start("u1"))

    state, cmds = drive(state, speech_end("u1", reason=EndReason.STOP))

    assert state.state is State.LISTENING
    assert state.active_utterance_id == "u1"
    assert state.utterance_status is UtteranceStatus.CANCELLED
    assert of_type(cmds, StartTranscription) == []


def test_speech_end_at_max_length_is_transcribed():
    state, _ = drive(OrchestratorState(), speech_start("u1"))

    state, cmds = drive(state, speech_end("u1", reason=EndReason.MAX_LENGTH))

    assert state.state is State.TRANSCRIBING
    assert [c.run_id for c in of_type(cmds, StartTranscription)] == [1]


def test_duplicate_speech_start_is_ignored():
    state, _ = drive(OrchestratorState(), speech_start("u1"))

    new_state, cmds = drive(state, speech_start("u1"))

    assert new_state == state
    assert cmds[0].event["details"]["reason"] == "duplicate_speech_start"


# ---------------------------------------------------------------------
# Fatal / transport
# ---------------------------------------------------------------------

def test_fatal_error_enters_error_and_ends_session():
    state = _speaking(BargeInPolicy.ALLOW)
    fatal = FatalError(event_type=EventType.FATAL_ERROR, ts_ms=9, reason="boom")

    state, cmds = drive(state, fatal)

    assert state.state is State.ERROR
    assert client_messages(cmds) == [
        {"type": "state", "value": "ERROR"},
        {"type": "error", "message": FATAL_ERROR_MESSAGE},
    ]
    assert of_type(cmds, EndSession) == [EndSession(reason="fatal:boom")]
    assert len(of_type(cmds, CancelSynthesis)) == 1


def test_error_state_is_terminal():
    state, _ = drive(
        OrchestratorState(),
        FatalError(event_type=EventType.FATAL_ERROR, ts_ms=9, reason="boom"),
    )

    for event in (speech_start("u9"), _stop(), _resume()):
        new_state, cmds = reduce(state, event)
        assert new_state == state
        assert cmds[0].event["details"]["reason"] == "in_error_state"

    again, cmds = reduce(
        state, FatalError(event_type=EventType.FATAL_ERROR, ts_ms=10, reason="again")
    )
    assert again == state
    assert of_type(cmds, EndSession) == []


def test_transport_disconnect_cancels_in_flight_work():
    state = _speaking(BargeInPolicy.ALLOW)
    event = TransportDisconnected(
        event_type=EventType.TRANSPORT_DISCONNECTED, ts_ms=9, session_id="s", reason="gone"
    )

    state, cmds = drive(state, event)

    assert state.in_flight == frozenset()
    assert client_messages(cmds) == []
    assert len(of_type(cmds, CancelGeneration)) == 1


# ---------------------------------------------------------------------
# LogEvent contract
# ---------------------------------------------------------------------

@pytest.mark.parametrize("policy", list(BargeInPolicy))
def test_logs_follow_side_effects_and_state_changes_come_last(policy):
    state = replace(OrchestratorState(), policy=SessionPolicy(barge_in=policy))
    events = [
        speech_start("u1"),
        speech_end("u1"),
        transcript_final(1, "u1", "hello"),
        reply_chunk(1, RID, "Okay. ", 0),
        audio_chunk(1, RID, 0),
        speech_interrupt("u2"),
        _stop(),
    ]

    for event in events:
        state, cmds = reduce(state, event)
        kinds = [isinstance(c, LogEvent) for c in cmds]
        assert kinds == sorted(kinds), f"log before side effect for {event.event_type}"

        log_decisions = [c.event["decision"] for c in cmds if isinstance(c, LogEvent)]
        if "state_changed" in log_decisions:
            first = log_decisions.index("state_changed")
            assert set(log_decisions[first:]) == {"state_changed"}

        for c in cmds:
            if isinstance(c, LogEvent):
                assert c.event["event_type"] == event.event_type.value
                assert c.event["ts_ms"] == event.ts_ms

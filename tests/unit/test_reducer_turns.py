# pylint: disable=missing-module-docstring,missing-function-docstring
from constants import METRIC_SPEECH_END_TO_FIRST_AUDIO
from orchestrator.commands import (
    CancelTimer,
    CommitTurn,
    EndSynthesisInput,
    RecordMetric,
    SendSynthesisText,
    StartGeneration,
    StartSynthesis,
    StartTimer,
    StartTranscription,
)
from orchestrator.enums.service import Service
from orchestrator.enums.state import State
from orchestrator.events import (
    EventType,
    GenerationFirstChunkTimeout,
    TranscriptPartial,
    TranscriptionTimeout,
)
from orchestrator.reducer import TIMER_TRANSCRIPTION
from orchestrator.state_dataclass import OrchestratorState
from fakes import (
    audio_chunk,
    client_messages,
    decisions,
    drive,
    generation_done,
    of_type,
    reply_chunk,
    speech_end,
    speech_start,
    synthesis_done,
    transcript_final,
    transcription_failed,
)

RID = "u1:reply"


def _generating():
    return drive(
        OrchestratorState(),
        speech_start("u1"),
        speech_end("u1", ts_ms=1_000),
        transcript_final(1, "u1", "hello"),
    )


def test_speech_end_starts_transcription():
    state, cmds = drive(OrchestratorState(), speech_start("u1"), speech_end("u1"))

    assert state.state is State.TRANSCRIBING
    assert state.active_runs.asr == 1
    assert Service.ASR in state.in_flight

    starts = of_type(cmds, StartTranscription)
    assert len(starts) == 1
    assert starts[0].run_id == 1
    assert starts[0].utterance.utterance_id == "u1"

    timers = of_type(cmds, StartTimer)
    assert timers[0].timer_id == TIMER_TRANSCRIPTION
    assert timers[0].run_id == 1
    assert timers[0].timeout_event_type is EventType.TRANSCRIPTION_TIMEOUT

    assert client_messages(cmds) == [{"type": "state", "value": "TRANSCRIBING"}]


def test_partial_transcript_is_forwarded():
    state, _ = drive(OrchestratorState(), speech_start("u1"), speech_end("u1"))
    partial = TranscriptPartial(
        event_type=EventType.TRANSCRIPT_PARTIAL,
        ts_ms=1_050,
        service=Service.ASR,
        run_id=1,
        utterance_id="u1",
        text="hel",
    )

    new_state, cmds = drive(state, partial)

    assert new_state == state
    assert client_messages(cmds) == [
        {"type": "transcript", "text": "hel", "isFinal": False, "utteranceId": "u1"}
    ]


def test_final_transcript_starts_generation():
    state, cmds = _generating()

    assert state.state is State.GENERATING
    assert state.active_reply_id == RID
    assert state.user_text == "hello"
    assert state.in_flight == frozenset({Service.LLM})

    gens = of_type(cmds, StartGeneration)
    assert gens == [StartGeneration(run_id=1, reply_id=RID, user_text="hello")]

    assert client_messages(cmds)[1:] == [
        {"type": "transcript", "text": "hello", "isFinal": True, "utteranceId": "u1"},
        {"type": "state", "value": "GENERATING"},
    ]


def test_full_turn_publishes_in_order_and_commits():
    state, cmds = _generating()
    events = (
        reply_chunk(1, RID, "Hi there. ", 0),
        reply_chunk(1, RID, "How are you", 1),
        generation_done(1, RID),
        audio_chunk(1, RID, 0, ts_ms=1_500),
        audio_chunk(1, RID, 1, is_final=True, ts_ms=1_600),
    )
    state, turn_cmds = drive(state, *events)
    cmds += turn_cmds

    types = [(m["type"], m.get("value")) for m in client_messages(cmds)]
    assert types == [
        ("state", "TRANSCRIBING"),
        ("transcript", None),
        ("state", "GENERATING"),
        ("state", "SPEAKING"),
        ("reply_chunk", None),
        ("reply_chunk", None),
        ("audio_chunk", None),
        ("audio_chunk", None),
        ("state", "LISTENING"),
    ]

    assert of_type(turn_cmds, StartSynthesis) == [StartSynthesis(run_id=1, reply_id=RID)]
    assert [c.text for c in of_type(turn_cmds, SendSynthesisText)] == [
        "Hi there.",
        "How are you",
    ]
    assert of_type(turn_cmds, EndSynthesisInput) == [EndSynthesisInput(run_id=1)]
    assert of_type(turn_cmds, CommitTurn) == [
        CommitTurn(turn_id=0, user_text="hello", assistant_text="Hi there. How are you")
    ]

    assert state.state is State.LISTENING
    assert state.current_turn_id == 1
    assert state.in_flight == frozenset()
    assert state.active_reply_id is None


def test_speech_end_to_first_audio_metric():
    state, _ = _generating()
    state, cmds = drive(
        state,
        reply_chunk(1, RID, "Hi there.", 0),
        audio_chunk(1, RID, 0, ts_ms=1_750),
    )

    metrics = of_type(cmds, RecordMetric)
    assert len(metrics) == 1
    assert metrics[0].name == METRIC_SPEECH_END_TO_FIRST_AUDIO
    assert metrics[0].value == 750.0
    assert metrics[0].tags == (("reply_id", RID),)
    assert state.playback_started


def test_synthesis_done_after_final_chunk_is_ignored():
    state, _ = _generating()
    state, _ = drive(
        state,
        reply_chunk(1, RID, "Hi.", 0),
        generation_done(1, RID),
        audio_chunk(1, RID, 0, is_final=True),
    )
    assert state.state is State.LISTENING

    new_state, cmds = drive(state, synthesis_done(1, RID))

    assert new_state == state
    assert decisions(cmds) == ["ignore"]


def test_synthesis_done_without_final_chunk_closes_reply():
    state, _ = _generating()
    state, cmds = drive(
        state,
        reply_chunk(1, RID, "Hi.", 0),
        generation_done(1, RID),
        audio_chunk(1, RID, 0),
        synthesis_done(1, RID),
    )

    audio = [m for m in client_messages(cmds) if m["type"] == "audio_chunk"]
    assert [(m["sequenceNumber"], m["isFinal"]) for m in audio] == [(0, False), (1, True)]
    assert audio[-1]["data"] == ""
    assert len(of_type(cmds, CommitTurn)) == 1
    assert state.state is State.LISTENING


def test_out_of_order_reply_chunks_are_released_in_order():
    state, _ = _generating()

    state, held_cmds = drive(state, reply_chunk(1, RID, "world. ", 1))
    assert client_messages(held_cmds) == []
    assert state.state is State.GENERATING
    assert "reply_chunk_held" in decisions(held_cmds)

    state, cmds = drive(state, reply_chunk(1, RID, "Hello ", 0))
    chunks = [m for m in client_messages(cmds) if m["type"] == "reply_chunk"]
    assert [(m["sequenceNumber"], m["text"]) for m in chunks] == [
        (0, "Hello "),
        (1, "world. "),
    ]
    assert state.reply_text == "Hello world. "


def test_duplicate_reply_chunk_is_ignored():
    state, _ = _generating()
    state, _ = drive(state, reply_chunk(1, RID, "Hello ", 0))

    new_state, cmds = drive(state, reply_chunk(1, RID, "Hello ", 0))

    assert new_state == state
    assert client_messages(cmds) == []


def test_out_of_order_audio_is_released_in_order():
    state, _ = _generating()
    state, _ = drive(state, reply_chunk(1, RID, "Hi.", 0))

    state, cmds = drive(state, audio_chunk(1, RID, 1))
    assert client_messages(cmds) == []

    state, cmds = drive(state, audio_chunk(1, RID, 0))
    audio = [m["sequenceNumber"] for m in client_messages(cmds)]
    assert audio == [0, 1]
    assert state.next_audio_seq == 2


def test_empty_transcript_returns_to_listening_without_generation():
    state, cmds = drive(
        OrchestratorState(),
        speech_start("u1"),
        speech_end("u1"),
        transcript_final(1, "u1", "   "),
    )

    assert state.state is State.LISTENING
    assert of_type(cmds, StartGeneration) == []
    assert client_messages(cmds)[-2:] == [
        {"type": "transcript", "text": "", "isFinal": True, "utteranceId": "u1"},
        {"type": "state", "value": "LISTENING"},
    ]


def test_empty_reply_surfaces_error():
    state, _ = _generating()

    state, cmds = drive(state, generation_done(1, RID))

    assert state.state is State.LISTENING
    msgs = client_messages(cmds)
    assert msgs[0]["type"] == "error"
    assert "empty reply" in msgs[0]["message"]
    assert msgs[1] == {"type": "state", "value": "LISTENING"}
    assert of_type(cmds, CommitTurn) == []


def test_transcription_failure_is_retried_once_silently():
    state, _ = drive(OrchestratorState(), speech_start("u1"), speech_end("u1"))

    state, cmds = drive(state, transcription_failed(1, "u1"))

    assert state.state is State.TRANSCRIBING
    assert state.active_runs.asr == 2
    assert state.transcription_attempt.attempt == 1
    retry = of_type(cmds, StartTranscription)
    assert len(retry) == 1
    assert retry[0].run_id == 2
    assert retry[0].utterance.utterance_id == "u1"
    assert client_messages(cmds) == []
    assert "transcription_retry" in decisions(cmds)

    # The retry succeeds: the turn proceeds as if nothing happened
    state, cmds = drive(state, transcript_final(2, "u1", "hello"))
    assert state.state is State.GENERATING
    assert [m["type"] for m in client_messages(cmds)] == ["transcript", "state"]


def test_second_transcription_failure_surfaces_one_error():
    state, _ = drive(
        OrchestratorState(),
        speech_start("u1"),
        speech_end("u1"),
        transcription_failed(1, "u1"),
    )

    state, cmds = drive(state, transcription_failed(2, "u1"))

    assert state.state is State.LISTENING
    assert client_messages(cmds) == [
        {"type": "error", "message": "Transcription failed: engine unavailable"},
        {"type": "state", "value": "LISTENING"},
    ]
    assert of_type(cmds, StartTranscription) == []


def test_transcription_timeout_cancels_and_retries():
    state, _ = drive(OrchestratorState(), speech_start("u1"), speech_end("u1"))
    timeout = TranscriptionTimeout(
        event_type=EventType.TRANSCRIPTION_TIMEOUT, ts_ms=11_000, run_id=1
    )

    state, cmds = drive(state, timeout)

    assert (Service.ASR, 1) in state.cancel_in_flight
    assert state.active_runs.asr == 2
    assert [c.run_id for c in of_type(cmds, StartTranscription)] == [2]


def test_result_from_superseded_transcription_run_is_ignored():
    state, _ = drive(
        OrchestratorState(),
        speech_start("u1"),
        speech_end("u1"),
        transcription_failed(1, "u1"),
    )

    new_state, cmds = drive(state, transcript_final(1, "u1", "late"))

    assert new_state == state
    assert client_messages(cmds) == []


def test_generation_first_chunk_timeout_recovers():
    state, _ = _generating()
    timeout = GenerationFirstChunkTimeout(
        event_type=EventType.GENERATION_FIRST_CHUNK_TIMEOUT, ts_ms=7_000, run_id=1
    )

    state, cmds = drive(state, timeout)

    assert state.state is State.LISTENING
    assert (Service.LLM, 1) in state.cancel_in_flight
    assert client_messages(cmds)[0] == {
        "type": "error",
        "message": "Reply generation failed: no reply within 5500 ms",
    }


def test_stale_timer_is_ignored():
    state, _ = _generating()
    stale = GenerationFirstChunkTimeout(
        event_type=EventType.GENERATION_FIRST_CHUNK_TIMEOUT, ts_ms=7_000, run_id=0
    )

    new_state, cmds = drive(state, stale)

    assert new_state == state
    assert decisions(cmds) == ["ignore"]


def test_synthesis_ending_before_reply_is_complete_recovers():
    state, _ = _generating()
    state, _ = drive(state, reply_chunk(1, RID, "Hi.", 0))

    state, cmds = drive(state, synthesis_done(1, RID))

    assert state.state is State.LISTENING
    assert client_messages(cmds)[0]["type"] == "error"
    assert (Service.LLM, 1) in state.cancel_in_flight
    assert of_type(cmds, CommitTurn) == []


def test_turn_completion_cancels_reply_timers():
    state, _ = _generating()
    _, cmds = drive(
        state,
        reply_chunk(1, RID, "Hi.", 0),
        generation_done(1, RID),
        audio_chunk(1, RID, 0, is_final=True),
    )

    cancelled = {c.timer_id for c in of_type(cmds, CancelTimer)}
    assert {
        "generation_first_chunk_timeout",
        "generation_stall_timeout",
        "synthesis_first_audio_timeout",
        "synthesis_stall_timeout",
    } <= cancelled

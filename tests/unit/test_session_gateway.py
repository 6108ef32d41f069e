# pylint: disable=missing-module-docstring,missing-function-docstring
import asyncio

from audio.buffer import AudioFrameBuffer
from config import AppConfig
from protocol.binary import encode_c2s_frame
from session.connection_status import ConnectionStatus
from session.gateway import SessionGateway
from fakes import SILENT_PCM, VOICED_PCM, FakeTranscription, fake_adapters


def _gateway(env=None, **adapter_kwargs):
    adapters = fake_adapters(**adapter_kwargs)
    config = AppConfig.load_from_env(env or {})
    return SessionGateway(config=config, adapters=adapters), adapters


async def _send_frames(gateway, pattern, start_seq=1):
    seq = start_seq
    for voiced in pattern:
        pcm = VOICED_PCM if voiced else SILENT_PCM
        await gateway.on_binary_message(encode_c2s_frame(sequence_num=seq, pcm_bytes=pcm))
        seq += 1
    return seq


async def _read_until(gateway, done, timeout=2.0):
    out = []

    async def pull():
        async for message in gateway.outbound():
            out.append(message)
            if done(message):
                return

    await asyncio.wait_for(pull(), timeout)
    return out


def _listening(message):
    return message == {"type": "state", "value": "LISTENING"}


def test_session_record_is_first():
    async def scenario():
        gateway, _ = _gateway()
        session_id = await gateway.on_ws_connect()
        first = gateway.session.outbound.get_nowait()
        status = gateway.session.connection_status
        await gateway.on_ws_disconnect("test_done")
        return session_id, first, status, gateway.session.connection_status

    session_id, first, status, closed_status = asyncio.run(scenario())

    assert session_id.startswith("sess_")
    assert first["type"] == "session"
    assert first["sessionId"] == session_id
    assert first["state"] == "LISTENING"
    assert first["inputAudio"]["sampleRate"] == 16000
    assert status is ConnectionStatus.UP
    assert closed_status is ConnectionStatus.CLOSED


def test_speech_then_silence_runs_a_turn():
    async def scenario():
        gateway, adapters = _gateway()
        session_id = await gateway.on_ws_connect()

        # 200 ms of speech, then 1200 ms of silence
        await _send_frames(gateway, [True] * 10 + [False] * 60)
        records = await _read_until(gateway, _listening)

        await gateway.on_ws_disconnect("test_done")
        return session_id, records, adapters

    session_id, records, adapters = asyncio.run(scenario())

    utterance_id = f"utt_{session_id.split('_')[-1]}_1"
    assert adapters.transcription.calls == [utterance_id]
    assert [r["type"] for r in records] == [
        "session",
        "state",
        "transcript",
        "state",
        "state",
        "reply_chunk",
        "audio_chunk",
        "audio_chunk",
        "state",
    ]
    assert records[2]["utteranceId"] == utterance_id
    assert records[5]["replyId"] == f"{utterance_id}:reply"


def test_end_utterance_closes_turn_without_silence():
    async def scenario():
        gateway, adapters = _gateway()
        await gateway.on_ws_connect()

        await _send_frames(gateway, [True] * 8)
        await gateway.on_json_message('{"type":"end_utterance"}')
        records = await _read_until(gateway, lambda m: m.get("type") == "transcript")

        await gateway.on_ws_disconnect("test_done")
        return records, adapters

    records, adapters = asyncio.run(scenario())

    assert records[-1]["text"] == "hello"
    assert len(adapters.transcription.calls) == 1


def test_paused_session_discards_audio():
    async def scenario():
        transcription = FakeTranscription()
        gateway, _ = _gateway(transcription=transcription)
        await gateway.on_ws_connect()

        await gateway.on_json_message('{"type":"pause"}')
        await _send_frames(gateway, [True] * 10 + [False] * 60)
        snapshot = gateway.session.frame_buffer.snapshot()
        await asyncio.sleep(0.05)

        await gateway.on_ws_disconnect("test_done")
        return snapshot, transcription.calls

    snapshot, calls = asyncio.run(scenario())

    assert snapshot["frames"] == 0
    assert calls == []


def test_invalid_input_is_dropped():
    async def scenario():
        gateway, _ = _gateway()
        await gateway.on_ws_connect()

        await gateway.on_json_message("not json")
        await gateway.on_json_message('{"type":"dance"}')
        await gateway.on_binary_message(b"\x01\x00")
        await gateway.on_binary_message(b"\x00\x00\x00\x00" + SILENT_PCM)
        await asyncio.sleep(0.02)

        depth = gateway.session.outbound.qsize()
        ended = gateway.session_ended
        await gateway.on_ws_disconnect("test_done")
        return depth, ended

    depth, ended = asyncio.run(scenario())

    # Only the session record
    assert depth == 1
    assert not ended


def test_overflow_drops_oldest_frames():
    async def scenario():
        gateway, _ = _gateway({"FRAME_BUFFER_MAX_FRAMES": "5"})
        await gateway.on_ws_connect()

        # No await point lets the segmenter drain in between
        await _send_frames(gateway, [False] * 20)
        snapshot = gateway.session.frame_buffer.snapshot()

        await gateway.on_ws_disconnect("test_done")
        return snapshot

    snapshot = asyncio.run(scenario())

    assert snapshot["frames"] == 5
    assert snapshot["dropped_evicted"] == 15


def test_frame_larger_than_byte_cap_is_rejected_without_evicting():
    async def scenario():
        gateway, _ = _gateway()
        await gateway.on_ws_connect()
        # A session built with a byte cap below the largest legal frame
        gateway.session.frame_buffer = AudioFrameBuffer(max_frames=10, max_bytes=1_000)

        await gateway.on_binary_message(encode_c2s_frame(sequence_num=1, pcm_bytes=SILENT_PCM))
        await gateway.on_binary_message(
            encode_c2s_frame(sequence_num=2, pcm_bytes=SILENT_PCM * 2)
        )
        snapshot = gateway.session.frame_buffer.snapshot()
        ended = gateway.session_ended

        await gateway.on_ws_disconnect("test_done")
        return snapshot, ended

    snapshot, ended = asyncio.run(scenario())

    assert snapshot["frames"] == 1
    assert snapshot["dropped_evicted"] == 0
    assert snapshot["dropped_rejected"] == 2
    assert not ended


def test_disconnect_is_idempotent_and_stops_tasks():
    async def scenario():
        gateway, _ = _gateway()
        await gateway.on_ws_connect()

        await gateway.on_ws_disconnect("client_disconnect")
        await gateway.on_ws_disconnect("again")
        return gateway

    gateway = asyncio.run(scenario())

    assert gateway.session_ended
    assert all(task.done() for task in gateway.session.tasks)


def test_messages_before_connect_are_ignored():
    async def scenario():
        gateway, _ = _gateway()
        await gateway.on_json_message('{"type":"pause"}')
        await gateway.on_binary_message(encode_c2s_frame(sequence_num=1, pcm_bytes=SILENT_PCM))
        await gateway.on_ws_disconnect("never_connected")
        return gateway

    gateway = asyncio.run(scenario())

    assert gateway.session is None
    assert not gateway.session_ended

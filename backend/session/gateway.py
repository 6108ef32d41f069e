"""
Session gateway.

Responsibilities:
- Owns VoiceSession lifecycle (one gateway == one connection == one session)
- Tracks connection_status independently of orchestrator state
- Routes inbound JSON control records -> orchestrator events / buffer markers
- Routes inbound binary audio frames -> frame buffer (drop-oldest on overflow)
- Detects sequence gaps and logs them
- Exposes the session's ordered outbound records to the transport

NOT responsible for:
- Executing commands
- Segmentation or any state machine logic
- Serializing records onto the socket (the route does that)
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator
from uuid import uuid4

from adapters.registry import AdapterSet
from audio.frames import EndReason
from audio.segmenter import VoiceActivitySegmenter
from audio.vad import EnergyVAD
from config import AppConfig
from constants import INPUT_AUDIO_FORMAT, OUTPUT_AUDIO_FORMAT
from errors import BufferOverflow
from observability.logger import log_event, log_exception, now_ms
from orchestrator.enums.state import State
from orchestrator.events import (
    Event,
    EventType,
    FatalError,
    Pause,
    Resume,
    SessionStarted,
    Stop,
)
from orchestrator.runtime import Runtime
from orchestrator.runtime_context import RuntimeExecutionContext
from orchestrator.state_dataclass import OrchestratorState
from protocol.binary import BinaryProtocolError, check_sequence_gap, decode_c2s_frame
from protocol.messages import (
    ControlType,
    InvalidControlMessage,
    parse_control,
    session_message,
)
from session.connection_status import ConnectionStatus
from session.voice_session import VoiceSession


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _new_session_id() -> str:
    return f"sess_{uuid4().hex[:12]}"


# ------------------------------------------------------------------
# SessionGateway
# ------------------------------------------------------------------

class SessionGateway:
    """
    One gateway == one voice session.

    Adapters are process-wide and shared; everything else is built per
    connection in on_ws_connect().
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        adapters: AdapterSet,
    ) -> None:
        self._config = config
        self._adapters = adapters
        self.session: VoiceSession | None = None
        self._last_ingest_seq: int | None = None
        self._paused = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def on_ws_connect(self) -> str:
        """
        Build the session, queue the session record, start its tasks.

        Returns:
            The new session_id.
        """
        session_id = _new_session_id()
        config = self._config

        session = VoiceSession(
            session_id=session_id,
            adapters=self._adapters,
            frame_buffer_max_frames=config.frame_buffer_max_frames,
            frame_buffer_max_bytes=config.frame_buffer_max_bytes,
        )
        session.connection_status = ConnectionStatus.UP
        self.session = session

        runtime = Runtime(
            initial_state=OrchestratorState(policy=config.session_policy()),
            context=RuntimeExecutionContext(session=session),
        )
        session.attach_runtime(runtime)

        segmenter = VoiceActivitySegmenter(
            session_id=session_id,
            emit_event=runtime.post,
            get_state=lambda: runtime.state,
            vad=EnergyVAD(config.vad_energy_threshold),
            onset_frames=config.vad_onset_frames,
            silence_timeout_ms=config.silence_timeout_ms,
        )
        session.attach_segmenter(segmenter)

        # The session record precedes every runtime-produced record
        session.outbound.put_nowait(
            session_message(
                session_id=session_id,
                input_audio=INPUT_AUDIO_FORMAT,
                output_audio=OUTPUT_AUDIO_FORMAT,
                state=State.LISTENING.value,
            )
        )

        session.tasks.append(runtime.start())
        session.tasks.append(
            asyncio.create_task(
                self._run_segmenter(session, segmenter, runtime),
                name=f"{session_id}:segmenter",
            )
        )

        self._last_ingest_seq = None
        self._paused = False

        log_event({
            "event_type": "WS_CONNECTED",
            **session.log_context(),
            "barge_in_policy": config.barge_in_policy.value,
            "silence_timeout_ms": config.silence_timeout_ms,
        })
        await self._dispatch(
            SessionStarted(
                event_type=EventType.SESSION_STARTED,
                ts_ms=now_ms(),
                session_id=session_id,
            )
        )
        return session_id

    async def on_ws_disconnect(self, reason: str | None = None) -> None:
        """Called when the WebSocket goes away. Idempotent."""
        if self.session is None:
            log_event({
                "event_type": "WS_DISCONNECT_WITHOUT_SESSION",
                "reason": reason,
            })
            return
        if self._closed:
            return
        self._closed = True

        session = self.session
        session.connection_status = ConnectionStatus.CLOSED
        session.frame_buffer.close()

        if session.runtime is not None:
            await session.runtime.shutdown(reason)

        for task in session.tasks:
            task.cancel()
        await asyncio.gather(*session.tasks, return_exceptions=True)

        log_event({
            "event_type": "WS_DISCONNECTED",
            **session.log_context(),
            "reason": reason,
            "buffer": session.frame_buffer.snapshot(),
            "context_turns": len(session.conversation_context),
        })

    @property
    def session_ended(self) -> bool:
        """True once the runtime stopped (fatal error or teardown)."""
        if self.session is None or self.session.runtime is None:
            return False
        return self.session.runtime.ended

    # ------------------------------------------------------------------
    # Egress
    # ------------------------------------------------------------------

    async def outbound(self) -> AsyncIterator[dict[str, Any]]:
        """Ordered client records until the session ends."""
        if self.session is None:
            return
        queue = self.session.outbound
        while True:
            message = await queue.get()
            if message is None:
                return
            yield message

    # ------------------------------------------------------------------
    # Ingress: control
    # ------------------------------------------------------------------

    async def on_json_message(self, payload: str) -> None:
        """Route an inbound control record."""
        if self.session is None:
            log_event({
                "event_type": "MESSAGE_WITHOUT_SESSION",
                "payload_preview": payload[:100],
            })
            return

        try:
            control = parse_control(payload)
        except InvalidControlMessage as e:
            log_event({
                "event_type": "CONTROL_MESSAGE_REJECTED",
                "session_id": self.session.session_id,
                "error": str(e),
                "payload_preview": payload[:100],
            })
            return

        ts_ms = now_ms()
        buffer = self.session.frame_buffer

        if control is ControlType.END_UTTERANCE:
            # In-band, so it lands after the audio sent before it
            buffer.push_end_of_utterance(ts_ms, EndReason.CLIENT)

        elif control is ControlType.PAUSE:
            self._paused = True
            await self._dispatch(Pause(event_type=EventType.PAUSE, ts_ms=ts_ms))
            buffer.push_end_of_utterance(ts_ms, EndReason.PAUSE)

        elif control is ControlType.RESUME:
            self._paused = False
            await self._dispatch(Resume(event_type=EventType.RESUME, ts_ms=ts_ms))

        elif control is ControlType.STOP:
            await self._dispatch(Stop(event_type=EventType.STOP, ts_ms=ts_ms))
            buffer.push_end_of_utterance(ts_ms, EndReason.STOP)

        log_event({
            "event_type": "CONTROL_MESSAGE",
            "session_id": self.session.session_id,
            "control": control.value,
            "paused": self._paused,
        })

    # ------------------------------------------------------------------
    # Ingress: audio
    # ------------------------------------------------------------------

    async def on_binary_message(self, payload: bytes) -> None:
        """
        Handle one inbound binary mic frame.

        - Decode + validate (malformed frames are logged and dropped)
        - Detect sequence gaps
        - Discard while paused
        - Push into the frame buffer; drop oldest on overflow
        """
        if self.session is None:
            log_event({
                "event_type": "BINARY_WITHOUT_SESSION",
                "payload_len": len(payload),
            })
            return

        try:
            frame = decode_c2s_frame(payload, ts_ms=now_ms())
        except BinaryProtocolError as e:
            log_event({
                "event_type": "BINARY_DECODE_ERROR",
                "session_id": self.session.session_id,
                "error": str(e),
                "payload_len": len(payload),
            })
            return

        gap_result = check_sequence_gap(
            last_seq=self._last_ingest_seq,
            current_seq=frame.sequence_num,
        )
        if gap_result.gap:
            log_event({
                "event_type": "SEQ_GAP_DETECTED",
                "session_id": self.session.session_id,
                "expected": gap_result.expected,
                "actual": gap_result.actual,
                "gap_size": gap_result.gap_size,
            })
        self._last_ingest_seq = frame.sequence_num

        if self._paused:
            return

        buffer = self.session.frame_buffer
        try:
            buffer.push(frame)
        except BufferOverflow as e:
            evicted = buffer.make_room(frame)
            try:
                buffer.push(frame)
            except BufferOverflow:
                # Larger than the whole byte cap: nothing left to evict
                log_event({
                    "event_type": "AUDIO_FRAME_REJECTED",
                    "session_id": self.session.session_id,
                    "seq_num": frame.sequence_num,
                    "frame_bytes": len(frame.pcm_bytes),
                    "evicted": evicted,
                    "buffer": buffer.snapshot(),
                })
                return
            log_event({
                "event_type": "AUDIO_FRAMES_DROPPED",
                "session_id": self.session.session_id,
                "seq_num": frame.sequence_num,
                "evicted": evicted,
                "cause": str(e),
                "buffer": buffer.snapshot(),
            })

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _run_segmenter(
        self,
        session: VoiceSession,
        segmenter: VoiceActivitySegmenter,
        runtime: Runtime,
    ) -> None:
        try:
            await segmenter.run(session.frame_buffer.drain())
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception("SEGMENTER_FAILED", exc, session_id=session.session_id)
            await runtime.post(
                FatalError(
                    event_type=EventType.FATAL_ERROR,
                    ts_ms=now_ms(),
                    reason="segmenter_failed",
                    context={"exception": type(exc).__name__, "message": str(exc)},
                )
            )

    async def _dispatch(self, event: Event) -> None:
        """Forward an event into the runtime inbox."""
        if self.session is None or self.session.runtime is None:
            log_event({
                "event_type": "DISPATCH_WITHOUT_SESSION",
                "dropped_event": event.event_type.value,
            })
            return
        await self.session.runtime.post(event)

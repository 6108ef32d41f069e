"""
Voice activity segmenter.

Consumes the frame buffer's drained sequence and turns it into utterance
boundary events for the orchestrator:

    SpeechStart(utterance_id)       onset while the session is LISTENING
    SpeechInterrupt(utterance_id)   onset while it is not (barge-in)
    SpeechEnd(utterance, reason)    offset, client end_utterance, pause/stop

Debounce on both edges:
- Onset: `onset_frames` consecutive voiced frames open an utterance. The
  onset frames themselves belong to it.
- Offset: consecutive silence totalling `silence_timeout_ms` of audio
  closes it. Silence is measured from frame payload length, not wall clock.
- Length cap: an utterance reaching `max_utterance_ms` of audio is closed
  with MAX_LENGTH and transcribed. Voiced audio right after the cut is
  dropped until a silent frame, so steady noise cannot loop cut segments.

Non-responsibilities:
- No orchestration decisions (the reducer decides what an event means)
- No transport or buffering policy
"""

from __future__ import annotations

from collections import deque
from typing import AsyncIterable, Awaitable, Callable, Deque

from audio.buffer import BufferItem
from audio.frames import (
    AudioFrame,
    EndOfUtteranceMarker,
    EndReason,
    Utterance,
    UtteranceStatus,
)
from audio.vad import EnergyVAD
from constants import MAX_UTTERANCE_MS, UTTERANCE_ID_PREFIX
from observability.logger import log_event
from orchestrator.enums.state import State
from orchestrator.events import (
    Event,
    EventType,
    SpeechEnd,
    SpeechInterrupt,
    SpeechStart,
)
from orchestrator.state_dataclass import OrchestratorState

EmitEvent = Callable[[Event], Awaitable[None]]
GetState = Callable[[], OrchestratorState]


class VoiceActivitySegmenter:
    """
    Per-session utterance segmenter.

    get_state:
        Read-only view of the orchestrator state; used only to pick
        SpeechStart vs SpeechInterrupt.
    """

    def __init__(
        self,
        *,
        session_id: str,
        emit_event: EmitEvent,
        get_state: GetState,
        vad: EnergyVAD,
        onset_frames: int,
        silence_timeout_ms: int,
        max_utterance_ms: int = MAX_UTTERANCE_MS,
    ) -> None:
        if onset_frames <= 0:
            raise ValueError("onset_frames must be > 0")
        if silence_timeout_ms <= 0:
            raise ValueError("silence_timeout_ms must be > 0")
        if max_utterance_ms <= 0:
            raise ValueError("max_utterance_ms must be > 0")

        self._session_id = session_id
        self._emit_event = emit_event
        self._get_state = get_state
        self._vad = vad
        self._onset_frames = onset_frames
        self._silence_timeout_ms = silence_timeout_ms
        self._max_utterance_ms = max_utterance_ms

        self._id_suffix = session_id.rsplit("_", 1)[-1]
        self._counter = 0

        # Candidate onset frames while no utterance is open
        self._preroll: Deque[AudioFrame] = deque(maxlen=onset_frames)
        self._voiced_run = 0
        # Set by a MAX_LENGTH cut; onset waits for a silent frame
        self._await_silence = False

        # Open utterance
        self._utterance_id: str | None = None
        self._frames: list[AudioFrame] = []
        self._started_at_ms = 0
        self._silence_ms = 0.0
        self._duration_ms = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def utterance_open(self) -> bool:
        return self._utterance_id is not None

    async def run(self, items: AsyncIterable[BufferItem]) -> None:
        """Consume items until the source ends."""
        async for item in items:
            await self.process(item)

    async def process(self, item: BufferItem) -> None:
        """Feed one frame or end-of-utterance marker."""
        if isinstance(item, EndOfUtteranceMarker):
            await self._on_marker(item)
            return

        voiced = self._vad.is_voiced(item.pcm_bytes)
        if self._utterance_id is None:
            await self._track_onset(item, voiced)
        else:
            await self._track_offset(item, voiced)

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    async def _track_onset(self, frame: AudioFrame, voiced: bool) -> None:
        if self._await_silence:
            if voiced:
                return
            self._await_silence = False

        self._preroll.append(frame)
        self._voiced_run = self._voiced_run + 1 if voiced else 0
        if self._voiced_run < self._onset_frames:
            return

        self._counter += 1
        utterance_id = f"{UTTERANCE_ID_PREFIX}_{self._id_suffix}_{self._counter}"
        self._utterance_id = utterance_id
        self._frames = list(self._preroll)
        self._started_at_ms = self._frames[0].ts_ms
        self._silence_ms = 0.0
        self._duration_ms = sum(f.duration_ms for f in self._frames)
        self._preroll.clear()
        self._voiced_run = 0

        listening = self._get_state().state is State.LISTENING
        event: Event
        if listening:
            event = SpeechStart(
                event_type=EventType.SPEECH_START,
                ts_ms=frame.ts_ms,
                utterance_id=utterance_id,
            )
        else:
            event = SpeechInterrupt(
                event_type=EventType.SPEECH_INTERRUPT,
                ts_ms=frame.ts_ms,
                utterance_id=utterance_id,
            )

        log_event({
            "ts_ms": frame.ts_ms,
            "event_type": "vad_speech_start" if listening else "vad_speech_interrupt",
            "session_id": self._session_id,
            "utterance_id": utterance_id,
            "onset_frames": len(self._frames),
        })
        await self._emit_event(event)

    async def _track_offset(self, frame: AudioFrame, voiced: bool) -> None:
        self._frames.append(frame)
        self._duration_ms += frame.duration_ms
        if voiced:
            self._silence_ms = 0.0
        else:
            self._silence_ms += frame.duration_ms
            if self._silence_ms >= self._silence_timeout_ms:
                await self._close(ts_ms=frame.ts_ms, reason=EndReason.SILENCE)
                return

        if self._duration_ms >= self._max_utterance_ms:
            self._await_silence = True
            await self._close(ts_ms=frame.ts_ms, reason=EndReason.MAX_LENGTH)

    async def _on_marker(self, marker: EndOfUtteranceMarker) -> None:
        # Stale onset candidates never carry across an explicit boundary
        self._preroll.clear()
        self._voiced_run = 0
        self._await_silence = False

        if self._utterance_id is None:
            log_event({
                "ts_ms": marker.ts_ms,
                "event_type": "vad_end_marker_noop",
                "session_id": self._session_id,
                "reason": marker.reason.value,
            })
            return

        await self._close(ts_ms=marker.ts_ms, reason=marker.reason)

    async def _close(self, *, ts_ms: int, reason: EndReason) -> None:
        utterance = Utterance(
            utterance_id=self._utterance_id or "",
            started_at_ms=self._started_at_ms,
            ended_at_ms=ts_ms,
            frames=tuple(self._frames),
            status=UtteranceStatus.CLOSED,
        )
        self._utterance_id = None
        self._frames = []
        self._silence_ms = 0.0
        self._duration_ms = 0.0

        log_event({
            "ts_ms": ts_ms,
            "event_type": "vad_speech_end",
            "session_id": self._session_id,
            "utterance_id": utterance.utterance_id,
            "reason": reason.value,
            "frames": len(utterance.frames),
            "duration_ms": utterance.duration_ms,
        })
        await self._emit_event(
            SpeechEnd(
                event_type=EventType.SPEECH_END,
                ts_ms=ts_ms,
                utterance=utterance,
                reason=reason,
            )
        )

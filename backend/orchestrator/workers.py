"""
Worker task supervision for one session.

Responsibilities:
- Run one asyncio task per (service, run_id) iterating an adapter stream
- Tag every produced item with the run_id that started it
- Drop items whose lineage id does not match the invocation
- Convert adapter exceptions into *Failed events
- Feed synthesis text units through a per-run channel
- Cancel tasks and hand them to the cancellation watcher

Non-responsibilities:
- No retries (the reducer decides)
- No timers
- No state machine decisions

Adapter streams are always consumed through contextlib.aclosing so a
cancelled task releases provider resources (HTTP streams) promptly.
"""

from __future__ import annotations

import asyncio
from asyncio import Task
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from adapters.registry import AdapterSet
from adapters.types import UtteranceAudio
from audio.frames import Utterance
from errors import TranscriptionFailure, WorkerFailure
from observability.logger import log_event, log_exception, now_ms
from observability.metrics import timed
from orchestrator.cancellation import CancellationManager
from orchestrator.enums.service import Service
from orchestrator.events import (
    AudioChunkReceived,
    Event,
    EventType,
    GenerationDone,
    GenerationFailed,
    ReplyChunkReceived,
    SynthesisDone,
    SynthesisFailed,
    TranscriptFinal,
    TranscriptionFailed,
    TranscriptPartial,
)

EventSink = Callable[[Event], Awaitable[None]]


def _reason(exc: BaseException) -> str:
    if isinstance(exc, WorkerFailure):
        return exc.reason
    return str(exc) or type(exc).__name__


async def _iter_channel(channel: asyncio.Queue[str | None]) -> AsyncIterator[str]:
    # None closes the channel
    while True:
        text = await channel.get()
        if text is None:
            return
        yield text


class WorkerSupervisor:
    """
    Owns the worker tasks of a single session.

    All start/send/cancel methods are synchronous and never block, so the
    runtime can call them while executing reducer commands.
    """

    def __init__(
        self,
        *,
        session_id: str,
        adapters: AdapterSet,
        emit_event: EventSink,
        cancellation: CancellationManager,
    ) -> None:
        self._session_id = session_id
        self._adapters = adapters
        self._emit_event = emit_event
        self._cancellation = cancellation

        self._tasks: dict[tuple[Service, int], Task[None]] = {}
        self._text_channels: dict[int, asyncio.Queue[str | None]] = {}

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start_transcription(self, *, run_id: int, utterance: Utterance) -> None:
        self._spawn(Service.ASR, run_id, self._transcribe(run_id, utterance))

    def start_generation(
        self,
        *,
        run_id: int,
        reply_id: str,
        context: Sequence[dict[str, str]],
        user_text: str,
    ) -> None:
        self._spawn(
            Service.LLM,
            run_id,
            self._generate(run_id, reply_id, context, user_text),
        )

    def start_synthesis(self, *, run_id: int, reply_id: str) -> None:
        channel: asyncio.Queue[str | None] = asyncio.Queue()
        self._text_channels[run_id] = channel
        self._spawn(Service.TTS, run_id, self._synthesize(run_id, reply_id, channel))

    # ------------------------------------------------------------------
    # Synthesis text channel
    # ------------------------------------------------------------------

    def send_synthesis_text(self, *, run_id: int, text: str) -> None:
        channel = self._text_channels.get(run_id)
        if channel is None:
            log_event({
                "event_type": "synthesis_text_dropped",
                "session_id": self._session_id,
                "tts_run_id": run_id,
                "text_len": len(text),
            })
            return
        channel.put_nowait(text)

    def end_synthesis_input(self, *, run_id: int) -> None:
        channel = self._text_channels.get(run_id)
        if channel is not None:
            channel.put_nowait(None)

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel(self, service: Service, run_id: int) -> None:
        """
        Cancel a run and start its grace watcher.

        A run that already finished is acknowledged immediately.
        """
        task = self._tasks.pop((service, run_id), None)
        if service is Service.TTS:
            self._text_channels.pop(run_id, None)

        running = task is not None and not task.done()
        if running:
            task.cancel()
        self._cancellation.watch(service=service, run_id=run_id, task=task)

        log_event({
            "event_type": "worker_cancel_requested",
            "session_id": self._session_id,
            "service": service.value,
            "run_id": run_id,
            "was_running": running,
        })

    async def cancel_all(self) -> None:
        """Cancel every task and wait for them to finish. Used on teardown."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._text_channels.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def running(self) -> tuple[tuple[Service, int], ...]:
        return tuple(self._tasks)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _spawn(self, service: Service, run_id: int, coro: Any) -> None:
        key = (service, run_id)
        task = asyncio.create_task(coro, name=f"{self._session_id}:{service.value}:{run_id}")
        self._tasks[key] = task

        def _forget(done: Task[None]) -> None:
            if self._tasks.get(key) is done:
                del self._tasks[key]

        task.add_done_callback(_forget)

    def _log_lineage_drop(self, service: Service, run_id: int, expected: str, got: str) -> None:
        log_event({
            "event_type": "worker_item_lineage_mismatch",
            "session_id": self._session_id,
            "service": service.value,
            "run_id": run_id,
            "expected": expected,
            "got": got,
        })

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _transcribe(self, run_id: int, utterance: Utterance) -> None:
        utterance_id = utterance.utterance_id
        audio = UtteranceAudio.from_utterance(utterance)
        got_final = False

        try:
            with timed(
                "transcription_ms",
                session_id=self._session_id,
                details={"run_id": run_id, "utterance_id": utterance_id},
            ):
                stream = self._adapters.transcription.transcribe(
                    audio, utterance_id=utterance_id
                )
                async with aclosing(stream) as transcripts:
                    async for transcript in transcripts:
                        if transcript.utterance_id != utterance_id:
                            self._log_lineage_drop(
                                Service.ASR, run_id, utterance_id, transcript.utterance_id
                            )
                            continue

                        if transcript.is_final:
                            got_final = True
                            await self._emit_event(
                                TranscriptFinal(
                                    event_type=EventType.TRANSCRIPT_FINAL,
                                    ts_ms=now_ms(),
                                    service=Service.ASR,
                                    run_id=run_id,
                                    utterance_id=utterance_id,
                                    text=transcript.text,
                                )
                            )
                            break

                        await self._emit_event(
                            TranscriptPartial(
                                event_type=EventType.TRANSCRIPT_PARTIAL,
                                ts_ms=now_ms(),
                                service=Service.ASR,
                                run_id=run_id,
                                utterance_id=utterance_id,
                                text=transcript.text,
                            )
                        )

            if not got_final:
                raise TranscriptionFailure("stream ended without a final transcript")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception(
                "transcription_worker_failed",
                exc,
                session_id=self._session_id,
                run_id=run_id,
                utterance_id=utterance_id,
            )
            await self._emit_event(
                TranscriptionFailed(
                    event_type=EventType.TRANSCRIPTION_FAILED,
                    ts_ms=now_ms(),
                    service=Service.ASR,
                    run_id=run_id,
                    utterance_id=utterance_id,
                    reason=_reason(exc),
                )
            )

    async def _generate(
        self,
        run_id: int,
        reply_id: str,
        context: Sequence[dict[str, str]],
        user_text: str,
    ) -> None:
        try:
            with timed(
                "generation_ms",
                session_id=self._session_id,
                details={"run_id": run_id, "reply_id": reply_id},
            ):
                stream = self._adapters.generation.generate(
                    context, user_text, reply_id=reply_id
                )
                async with aclosing(stream) as chunks:
                    async for chunk in chunks:
                        if chunk.reply_id != reply_id:
                            self._log_lineage_drop(
                                Service.LLM, run_id, reply_id, chunk.reply_id
                            )
                            continue
                        await self._emit_event(
                            ReplyChunkReceived(
                                event_type=EventType.REPLY_CHUNK,
                                ts_ms=now_ms(),
                                service=Service.LLM,
                                run_id=run_id,
                                reply_id=reply_id,
                                text=chunk.text,
                                sequence_number=chunk.sequence_number,
                            )
                        )
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception(
                "generation_worker_failed",
                exc,
                session_id=self._session_id,
                run_id=run_id,
                reply_id=reply_id,
            )
            await self._emit_event(
                GenerationFailed(
                    event_type=EventType.GENERATION_FAILED,
                    ts_ms=now_ms(),
                    service=Service.LLM,
                    run_id=run_id,
                    reply_id=reply_id,
                    reason=_reason(exc),
                )
            )
            return

        await self._emit_event(
            GenerationDone(
                event_type=EventType.GENERATION_DONE,
                ts_ms=now_ms(),
                service=Service.LLM,
                run_id=run_id,
                reply_id=reply_id,
            )
        )

    async def _synthesize(
        self,
        run_id: int,
        reply_id: str,
        channel: asyncio.Queue[str | None],
    ) -> None:
        adapter = self._adapters.synthesis
        try:
            if adapter.streaming:
                text: Any = _iter_channel(channel)
            else:
                # Batch engines get the whole reply once input ends
                text = " ".join([unit async for unit in _iter_channel(channel)])

            with timed(
                "synthesis_ms",
                session_id=self._session_id,
                details={
                    "run_id": run_id,
                    "reply_id": reply_id,
                    "streaming": adapter.streaming,
                },
            ):
                async with aclosing(adapter.synthesize(text, reply_id=reply_id)) as chunks:
                    async for chunk in chunks:
                        if chunk.reply_id != reply_id:
                            self._log_lineage_drop(
                                Service.TTS, run_id, reply_id, chunk.reply_id
                            )
                            continue
                        await self._emit_event(
                            AudioChunkReceived(
                                event_type=EventType.AUDIO_CHUNK,
                                ts_ms=now_ms(),
                                service=Service.TTS,
                                run_id=run_id,
                                reply_id=reply_id,
                                data=chunk.data,
                                sequence_number=chunk.sequence_number,
                                is_final=chunk.is_final,
                            )
                        )
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception(
                "synthesis_worker_failed",
                exc,
                session_id=self._session_id,
                run_id=run_id,
                reply_id=reply_id,
            )
            await self._emit_event(
                SynthesisFailed(
                    event_type=EventType.SYNTHESIS_FAILED,
                    ts_ms=now_ms(),
                    service=Service.TTS,
                    run_id=run_id,
                    reply_id=reply_id,
                    reason=_reason(exc),
                )
            )
            return
        finally:
            if self._text_channels.get(run_id) is channel:
                del self._text_channels[run_id]

        await self._emit_event(
            SynthesisDone(
                event_type=EventType.SYNTHESIS_DONE,
                ts_ms=now_ms(),
                service=Service.TTS,
                run_id=run_id,
                reply_id=reply_id,
            )
        )

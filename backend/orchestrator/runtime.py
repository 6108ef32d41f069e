"""
Runtime execution shell for a single voice session.

Responsibilities:
- Own orchestrator state
- Consume the session's bounded event inbox in ONE task
- Call the pure reducer once per event
- Execute commands with side effects (workers, timers, outbound records,
  context commits, metrics)
- Convert timer expiry and worker output into events

Non-responsibilities:
- Transport concerns (WebSocket, binary framing)
- Segmentation
- Any orchestration decision
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from adapters.llm.prompts import prompt_hash, system_prompt
from constants import EVENT_INBOX_MAX_EVENTS, SYSTEM_PROMPT_VERSION
from context.serialization import serialize_context
from observability.logger import log_event, log_exception, now_ms
from observability.metrics import record_metric
from orchestrator.cancellation import CancellationManager
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
from orchestrator.enums.service import Service
from orchestrator.events import (
    Event,
    EventType,
    FatalError,
    GenerationFirstChunkTimeout,
    GenerationStallTimeout,
    SessionEnded,
    SynthesisFirstAudioTimeout,
    SynthesisStallTimeout,
    TranscriptionTimeout,
    TransportDisconnected,
)
from orchestrator.reducer import reduce
from orchestrator.state_dataclass import OrchestratorState
from orchestrator.workers import WorkerSupervisor

if TYPE_CHECKING:
    from orchestrator.runtime_context import RuntimeExecutionContext


_TIMEOUT_EVENTS: dict[EventType, type[Event]] = {
    EventType.TRANSCRIPTION_TIMEOUT: TranscriptionTimeout,
    EventType.GENERATION_FIRST_CHUNK_TIMEOUT: GenerationFirstChunkTimeout,
    EventType.GENERATION_STALL_TIMEOUT: GenerationStallTimeout,
    EventType.SYNTHESIS_FIRST_AUDIO_TIMEOUT: SynthesisFirstAudioTimeout,
    EventType.SYNTHESIS_STALL_TIMEOUT: SynthesisStallTimeout,
}


class Runtime:
    """
    Runtime execution boundary for a single voice session.

    Responsibilities:
    - Own the authoritative orchestrator state
    - Act as the universal event sink for the session
      (gateway, segmenter, workers, timers, cancellation watchers)
    - Invoke the pure reducer deterministically
    - Execute emitted commands with side effects

    Guarantees:
    - Events are reduced one at a time, in inbox order
    - State is updated before any side effect executes
    - Commands execute in reducer-emitted order
    - Command execution never blocks on the inbox (timers, workers and
      watchers post from their own tasks)
    - An unexpected exception becomes a FatalError event
    """

    def __init__(
        self,
        *,
        initial_state: OrchestratorState,
        context: RuntimeExecutionContext,
        inbox_max_events: int = EVENT_INBOX_MAX_EVENTS,
    ) -> None:
        self._state = initial_state
        self._ctx = context
        self._inbox: asyncio.Queue[Event] = asyncio.Queue(maxsize=inbox_max_events)
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._loop_task: asyncio.Task[None] | None = None
        self._ended = False
        self._shut_down = False
        self._outbound_failed: str | None = None

        # Cancellation protocol infrastructure (no orchestration logic)
        self._cancellation = CancellationManager(
            emit_event=self.post,
            session_id=context.session_id,
        )
        self._workers = WorkerSupervisor(
            session_id=context.session_id,
            adapters=context.adapters,
            emit_event=self.post,
            cancellation=self._cancellation,
        )

    @property
    def state(self) -> OrchestratorState:
        """
        Current immutable orchestrator state.

        Read-only for every consumer; only the reducer produces new values.
        """
        return self._state

    @property
    def ended(self) -> bool:
        return self._ended

    # ------------------------------------------------------------------
    # Event entry points
    # ------------------------------------------------------------------

    async def post(self, event: Event) -> None:
        """
        Enqueue an event for the runtime loop.

        Waits when the inbox is full (backpressure on producers).
        Events posted after the session ended are dropped.
        """
        if self._ended:
            return
        await self._inbox.put(event)

    def start(self) -> asyncio.Task[None]:
        """Start the single consumer task."""
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(
                self.run(), name=f"{self._ctx.session_id}:runtime"
            )
        return self._loop_task

    async def run(self) -> None:
        """Consume the inbox until EndSession or shutdown."""
        while not self._ended:
            event = await self._inbox.get()
            await self.handle_event(event)

            if self._outbound_failed is not None and not self._ended:
                reason = self._outbound_failed
                await self.handle_event(
                    TransportDisconnected(
                        event_type=EventType.TRANSPORT_DISCONNECTED,
                        ts_ms=now_ms(),
                        session_id=self._ctx.session_id,
                        reason=reason,
                    )
                )
                self._end(reason)

    async def handle_event(self, event: Event) -> None:
        """
        Process a single event through the orchestration pipeline.

        1. Pass the current state and event to the pure reducer
        2. Swap in the new orchestrator state
        3. Execute all emitted commands sequentially
        """
        if self._ended:
            log_event({
                "event_type": "event_after_session_end",
                "session_id": self._ctx.session_id,
                "dropped_event": event.event_type.value,
            })
            return

        try:
            new_state, commands = reduce(self._state, event)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            await self._fail(exc, event=event, stage="reduce")
            return

        self._state = new_state

        for cmd in commands:
            try:
                await self._execute_command(cmd)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                await self._fail(exc, event=event, stage=type(cmd).__name__)
                return

    async def shutdown(self, reason: str | None = None) -> None:
        """
        Tear the session down. Idempotent.

        Stops the loop task, lets the reducer cancel in-flight work for the
        disconnect, then cancels every worker, timer and watcher.
        """
        if self._shut_down:
            return
        self._shut_down = True

        loop_task = self._loop_task
        if loop_task is not None and not loop_task.done():
            loop_task.cancel()
            await asyncio.gather(loop_task, return_exceptions=True)

        if not self._ended:
            await self.handle_event(
                TransportDisconnected(
                    event_type=EventType.TRANSPORT_DISCONNECTED,
                    ts_ms=now_ms(),
                    session_id=self._ctx.session_id,
                    reason=reason,
                )
            )
            await self.handle_event(
                SessionEnded(
                    event_type=EventType.SESSION_ENDED,
                    ts_ms=now_ms(),
                    session_id=self._ctx.session_id,
                )
            )
            self._end(reason or "shutdown")

        for timer_id in list(self._timers):
            self._cancel_timer(timer_id)

        await self._workers.cancel_all()
        self._cancellation.clear_all()

        log_event({
            "event_type": "runtime_shutdown",
            "session_id": self._ctx.session_id,
            "reason": reason,
            "state": self._state.state.value,
        })

    # ------------------------------------------------------------------
    # Command execution (side effects)
    # ------------------------------------------------------------------

    async def _execute_command(self, cmd: Command) -> None:
        """Execute a single command with side effects."""

        if isinstance(cmd, LogEvent):
            log_event({
                **cmd.event,
                "session_id": self._ctx.session_id,
                "connection_status": self._ctx.connection_status.value,
            })

        elif isinstance(cmd, SendToClient):
            self._send_to_client(cmd.message)

        # ------------------------------------------------------------
        # Workers
        # ------------------------------------------------------------

        elif isinstance(cmd, StartTranscription):
            self._workers.start_transcription(run_id=cmd.run_id, utterance=cmd.utterance)

        elif isinstance(cmd, CancelTranscription):
            self._workers.cancel(Service.ASR, cmd.run_id)

        elif isinstance(cmd, StartGeneration):
            prompt = system_prompt()
            messages = serialize_context(
                system_prompt=prompt,
                turns=self._ctx.conversation_context.snapshot(),
            )
            self._workers.start_generation(
                run_id=cmd.run_id,
                reply_id=cmd.reply_id,
                context=messages,
                user_text=cmd.user_text,
            )
            log_event({
                "event_type": "generation_start_executed",
                "session_id": self._ctx.session_id,
                "llm_run_id": cmd.run_id,
                "reply_id": cmd.reply_id,
                "system_prompt_version": SYSTEM_PROMPT_VERSION,
                "system_prompt_hash": prompt_hash(prompt),
                "context_messages": len(messages),
            })

        elif isinstance(cmd, CancelGeneration):
            self._workers.cancel(Service.LLM, cmd.run_id)

        elif isinstance(cmd, StartSynthesis):
            self._workers.start_synthesis(run_id=cmd.run_id, reply_id=cmd.reply_id)

        elif isinstance(cmd, SendSynthesisText):
            self._workers.send_synthesis_text(run_id=cmd.run_id, text=cmd.text)

        elif isinstance(cmd, EndSynthesisInput):
            self._workers.end_synthesis_input(run_id=cmd.run_id)

        elif isinstance(cmd, CancelSynthesis):
            self._workers.cancel(Service.TTS, cmd.run_id)

        # ------------------------------------------------------------
        # Timers
        # ------------------------------------------------------------

        elif isinstance(cmd, StartTimer):
            self._start_timer(
                timer_id=cmd.timer_id,
                duration_ms=cmd.duration_ms,
                timeout_event_type=cmd.timeout_event_type,
                run_id=cmd.run_id,
            )

        elif isinstance(cmd, CancelTimer):
            self._cancel_timer(cmd.timer_id)

        # ------------------------------------------------------------
        # Context / metrics / lifecycle
        # ------------------------------------------------------------

        elif isinstance(cmd, CommitTurn):
            committed = self._ctx.conversation_context.commit_exchange(
                turn_id=cmd.turn_id,
                user_text=cmd.user_text,
                assistant_text=cmd.assistant_text,
            )
            log_event({
                "event_type": "turn_committed" if committed else "turn_commit_skipped",
                "session_id": self._ctx.session_id,
                "turn_id": cmd.turn_id,
                "context_turns": len(self._ctx.conversation_context),
            })

        elif isinstance(cmd, RecordMetric):
            record_metric(
                cmd.name,
                cmd.value,
                session_id=self._ctx.session_id,
                state=self._state.state.value,
                details={
                    **dict(cmd.tags or ()),
                    "queue_depths_s": self._ctx.queue_depths_s(),
                },
            )

        elif isinstance(cmd, EndSession):
            self._end(cmd.reason)

        else:
            raise TypeError(f"Unknown command: {type(cmd).__name__}")

    def _send_to_client(self, message: dict[str, Any]) -> None:
        if self._outbound_failed is not None:
            return
        try:
            self._ctx.outbound.put_nowait(message)
        except asyncio.QueueFull:
            # The client stopped reading; treat as transport loss
            self._outbound_failed = "outbound_queue_full"
            log_event({
                "event_type": "outbound_queue_full",
                "session_id": self._ctx.session_id,
                "dropped_type": message.get("type"),
                "queue_size": self._ctx.outbound.qsize(),
            })

    def _end(self, reason: str | None) -> None:
        """Stop consuming events and close the outbound stream."""
        if self._ended:
            return
        self._ended = True
        try:
            self._ctx.outbound.put_nowait(None)
        except asyncio.QueueFull:
            log_event({
                "event_type": "outbound_close_dropped",
                "session_id": self._ctx.session_id,
            })
        log_event({
            "event_type": "session_end_requested",
            "session_id": self._ctx.session_id,
            "reason": reason,
        })

    async def _fail(self, exc: Exception, *, event: Event, stage: str) -> None:
        log_exception(
            "RUNTIME_FATAL_EXCEPTION",
            exc,
            session_id=self._ctx.session_id,
            stage=stage,
            event_type=event.event_type.value,
        )
        if isinstance(event, FatalError):
            # Failing while handling a fatal error: stop without another pass
            self._end(f"fatal:{type(exc).__name__}")
            return

        await self.handle_event(
            FatalError(
                event_type=EventType.FATAL_ERROR,
                ts_ms=now_ms(),
                reason=type(exc).__name__,
                context={"stage": stage, "message": str(exc)},
            )
        )

    # ------------------------------------------------------------------
    # Timer management
    # ------------------------------------------------------------------

    def _start_timer(
        self,
        *,
        timer_id: str,
        duration_ms: int,
        timeout_event_type: EventType,
        run_id: int,
    ) -> None:
        """
        Start or replace a timer that posts a timeout event.

        The event carries the run_id the reducer armed it for, so a timer
        that outlives its run is discarded as stale.
        """
        self._cancel_timer(timer_id)
        event_cls = _TIMEOUT_EVENTS.get(timeout_event_type)
        if event_cls is None:
            raise ValueError(
                f"Unknown timeout event type: {timeout_event_type} "
                f"for timer_id: {timer_id}"
            )

        async def _timer_task() -> None:
            await asyncio.sleep(duration_ms / 1000.0)
            if self._timers.get(timer_id) is asyncio.current_task():
                del self._timers[timer_id]
            await self.post(
                event_cls(  # type: ignore[call-arg]
                    event_type=timeout_event_type,
                    ts_ms=now_ms(),
                    run_id=run_id,
                )
            )

        self._timers[timer_id] = asyncio.create_task(_timer_task())

    def _cancel_timer(self, timer_id: str) -> None:
        """
        Cancel an in-flight timer if it exists.

        Idempotent: safe to call even if timer doesn't exist.
        """
        task = self._timers.pop(timer_id, None)
        if task is not None and not task.done():
            task.cancel()

    def active_timers(self) -> tuple[str, ...]:
        return tuple(self._timers)

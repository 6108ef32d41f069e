"""
Cancellation protocol runtime.

Responsibilities:
- Watch a cancelled worker task for up to CANCEL_GRACE_MS
- Emit CancelAck if it finished, CancelTimeout if it did not
- Log abandoned runs

Non-responsibilities:
- NO retry logic
- NO state machine decisions
- NO run_id generation
- NO Start* commands

This module is infrastructure only. An abandoned run keeps running in the
background until its provider call returns; its output is discarded by
run_id gating in the reducer.
"""

from __future__ import annotations

import asyncio
from asyncio import Task
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from constants import CANCEL_GRACE_MS
from observability.logger import log_event, now_ms
from orchestrator.enums.service import Service
from orchestrator.events import CancelAck, CancelTimeout, Event, EventType


# ---------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------

EventSink = Callable[[Event], Awaitable[None]]


@dataclass(frozen=True)
class _CancelKey:
    service: Service
    run_id: int


# ---------------------------------------------------------------------
# Cancellation Manager
# ---------------------------------------------------------------------

class CancellationManager:
    """
    Runtime manager for the Cancel/ACK protocol.

    Lifecycle:
    1. Reducer emits CancelX(run_id)
    2. Runtime cancels the worker task and calls watch(...)
    3. Manager waits for the task with a grace timeout
    4a. Task finished -> CancelAck
    4b. Grace expired -> log abandoned run, CancelTimeout

    This class never decides what happens next.
    """

    def __init__(
        self,
        *,
        emit_event: EventSink,
        session_id: str | None = None,
        grace_ms: int = CANCEL_GRACE_MS,
    ) -> None:
        self._emit_event = emit_event
        self._session_id = session_id
        self._grace_s = grace_ms / 1000.0

        self._watchers: dict[_CancelKey, Task[None]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def watch(
        self,
        *,
        service: Service,
        run_id: int,
        task: Task[Any] | None,
    ) -> None:
        """
        Start the grace watcher for a cancelled run.

        Idempotent: duplicate calls for the same (service, run_id) are
        ignored. task=None means the worker already finished.
        """
        key = _CancelKey(service, run_id)
        if key in self._watchers:
            return

        self._watchers[key] = asyncio.create_task(
            self._watch(key=key, task=task)
        )

    def pending(self) -> int:
        return len(self._watchers)

    def clear_all(self) -> None:
        """
        Cancel and clear all outstanding watchers.
        Used on session teardown.
        """
        for task in self._watchers.values():
            task.cancel()
        self._watchers.clear()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _watch(self, *, key: _CancelKey, task: Task[Any] | None) -> None:
        finished = True
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self._grace_s)
            finished = task in done

        self._watchers.pop(key, None)

        event: Event
        if finished:
            event = CancelAck(
                event_type=EventType.CANCEL_ACK,
                ts_ms=now_ms(),
                service=key.service,
                run_id=key.run_id,
            )
        else:
            log_event({
                "event_type": "worker_run_abandoned",
                "session_id": self._session_id,
                "service": key.service.value,
                "run_id": key.run_id,
                "grace_ms": int(self._grace_s * 1000),
            })
            event = CancelTimeout(
                event_type=EventType.CANCEL_TIMEOUT,
                ts_ms=now_ms(),
                service=key.service,
                run_id=key.run_id,
            )

        await self._emit_event(event)

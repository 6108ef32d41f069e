"""
Voice session container.

- Owns the per-connection resources: frame buffer, segmenter, runtime,
  conversation context and outbound queue
- Owns connection status (mutable, gateway-controlled)
- Owned and mutated by SessionGateway
- NOT a state machine
- Contains no orchestration logic

Nothing here is shared between sessions except the adapters.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from adapters.registry import AdapterSet
from audio.buffer import AudioFrameBuffer
from audio.segmenter import VoiceActivitySegmenter
from constants import OUTBOUND_QUEUE_MAX_BYTES
from context.conversation import ConversationContext
from orchestrator.runtime import Runtime
from session.connection_status import ConnectionStatus
from session.outbound import OutboundQueue


@dataclass
class VoiceSession:
    """Mutable runtime container for a single voice session."""

    # ------------------------------------------------------------------
    # Identity / lifecycle
    # ------------------------------------------------------------------

    session_id: str
    adapters: AdapterSet
    frame_buffer_max_frames: int
    frame_buffer_max_bytes: int
    created_at: float = field(default_factory=time.time)

    # ------------------------------------------------------------------
    # Connection / gateway-controlled state
    # ------------------------------------------------------------------

    connection_status: ConnectionStatus = ConnectionStatus.DOWN

    # ------------------------------------------------------------------
    # Built in __post_init__
    # ------------------------------------------------------------------

    conversation_context: ConversationContext = field(init=False)
    frame_buffer: AudioFrameBuffer = field(init=False)
    # Ordered client records; None closes the stream
    outbound: asyncio.Queue[dict[str, Any] | None] = field(init=False)

    # ------------------------------------------------------------------
    # Attached by SessionGateway
    # ------------------------------------------------------------------

    runtime: Runtime | None = None
    segmenter: VoiceActivitySegmenter | None = None
    tasks: list[asyncio.Task[Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.conversation_context = ConversationContext(session_id=self.session_id)
        self.frame_buffer = AudioFrameBuffer(
            max_frames=self.frame_buffer_max_frames,
            max_bytes=self.frame_buffer_max_bytes,
        )
        self.outbound = OutboundQueue(max_bytes=OUTBOUND_QUEUE_MAX_BYTES)

    # ------------------------------------------------------------------
    # Wiring helpers (called by SessionGateway)
    # ------------------------------------------------------------------

    def attach_runtime(self, runtime: Runtime) -> None:
        self.runtime = runtime

    def attach_segmenter(self, segmenter: VoiceActivitySegmenter) -> None:
        self.segmenter = segmenter

    # ------------------------------------------------------------------
    # Observability helpers (read-only)
    # ------------------------------------------------------------------

    def log_context(self) -> dict[str, Any]:
        """Standard logging context for gateway records."""
        return {
            "session_id": self.session_id,
            "connection_status": self.connection_status.value,
        }

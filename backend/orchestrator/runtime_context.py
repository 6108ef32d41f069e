"""
Runtime execution context.

Provides Runtime with live access to session-owned imperative resources
needed for command execution and side effects (adapters, conversation
context, outbound queue, connection status).

This module contains:
- Zero orchestration logic
- Zero state mutation
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from adapters.registry import AdapterSet
    from context.conversation import ConversationContext
    from session.connection_status import ConnectionStatus
    from session.voice_session import VoiceSession


class RuntimeExecutionContext:
    """
    Imperative execution context for Runtime.

    This object provides *live views* into session-owned resources
    so Runtime does not need to synchronize or cache anything.

    Runtime is allowed to:
    - Start adapter streams
    - Publish outbound records
    - Commit completed turns
    - Observe connection state and buffer depth

    Runtime is NOT allowed to:
    - Mutate session fields directly
    - Perform orchestration decisions
    """

    def __init__(self, session: VoiceSession) -> None:
        self.session = session

    # ----------------------------
    # Session metadata
    # ----------------------------

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.session.connection_status

    # ----------------------------
    # Adapters
    # ----------------------------

    @property
    def adapters(self) -> AdapterSet:
        return self.session.adapters

    # ----------------------------
    # Conversation context
    # ----------------------------

    @property
    def conversation_context(self) -> ConversationContext:
        return self.session.conversation_context

    # ----------------------------
    # Egress / ingress
    # ----------------------------

    @property
    def outbound(self) -> asyncio.Queue[dict[str, Any] | None]:
        return self.session.outbound

    def queue_depths_s(self) -> dict[str, float]:
        return {"ingest": self.session.frame_buffer.depth_seconds()}

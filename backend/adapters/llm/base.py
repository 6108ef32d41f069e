"""
Generation adapter contract.

Purpose:
- Define the interface for streaming reply generation.
- Keep all orchestration, retries, timing, and cancellation semantics
  OUT of the adapter.

Rules:
- This file contains NO logic.
- No retries.
- No chunking.
- No knowledge of synthesis, UI, or state machine.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Sequence

from adapters.types import ReplyChunk


class GenerationAdapter(ABC):
    """
    Abstract base class for streaming reply adapters.

    The adapter is a *dumb pipe*:
    messages -> vendor -> reply chunks.

    Orchestrator responsibilities (NOT here):
    - When to start
    - When to cancel
    - Timeouts
    - Context construction
    - What to do with the text
    """

    @abstractmethod
    def generate(
        self,
        context: Sequence[dict[str, str]],
        transcript: str,
        *,
        reply_id: str,
    ) -> AsyncIterator[ReplyChunk]:
        """
        Stream a reply to `transcript`.

        Contract:
        - Yields incremental text deltas, not full snapshots.
        - Every chunk carries `reply_id`; sequence_number starts at 0 and
          increases by one per chunk.
        - Raises GenerationFailure on upstream error, before or after the
          first chunk.
        - Must NOT retry internally.

        Args:
            context:
                Serialized system prompt + bounded history, oldest first.
                Immutable from the adapter's perspective.
            transcript:
                Final transcript of the user's utterance.
        """
        raise NotImplementedError

"""
Synthesis adapter contract.

This module defines the *interface only*: no chunking policy, no retries,
timers, or orchestration decisions live here.

Key invariants:
- Text chunking is orchestrator-owned and deterministic. Streaming adapters
  receive speakable units; batch adapters receive the whole reply.
- The adapter yields audio; it does not call the reducer or make state
  transitions.
- Cancellation is closing the generator (or cancelling the task iterating
  it). Implementations must release provider resources in `finally`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Union

from adapters.types import AudioChunk

SynthesisInput = Union[AsyncIterator[str], str]


class SynthesisAdapter(ABC):
    """
    Abstract interface for a speech synthesis adapter.

    streaming:
        True if the adapter consumes text units as they arrive (it receives
        an async iterator of str). False if it needs the full reply text
        (it receives one str). The runtime picks the input shape; the
        reducer and the client see no difference beyond latency.

    Non-responsibilities:
    - No chunking policy decisions
    - No state machine logic
    - No timers owned by the reducer
    - No direct interaction with WebSocket or UI
    """

    streaming: bool = True

    @abstractmethod
    def synthesize(
        self,
        text: SynthesisInput,
        *,
        reply_id: str,
    ) -> AsyncIterator[AudioChunk]:
        """
        Synthesize reply text to audio.

        Contract:
        - Every chunk carries `reply_id`; sequence_number starts at 0 and
          is contiguous for the whole reply (across text units).
        - The last chunk carries is_final=True.
        - Raises SynthesisFailure on engine or network error.
        - Must NOT retry internally.
        """
        raise NotImplementedError

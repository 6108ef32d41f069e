"""
Transcription adapter contract.

This module defines the *interface only*: no buffering, endpointing, retries,
timers, or orchestration decisions live here.

Key invariants:
- Run IDs are owned by the orchestrator. Adapters never see them; the
  runtime worker tags every produced item with the run that started it.
- The adapter yields transcripts; it does not call the reducer or make
  state transitions.
- Cancellation is closing the generator (or cancelling the task iterating
  it). Implementations must release provider resources in `finally`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from adapters.types import Transcript, UtteranceAudio


class TranscriptionAdapter(ABC):
    """
    Abstract interface for an utterance transcription adapter.

    Implementations are responsible for:
    - Sending one utterance's audio to the engine
    - Yielding zero or more interim transcripts, then exactly one final one

    Non-responsibilities:
    - No retries (the orchestrator retries once with the same audio)
    - No timers owned by the reducer
    - No direct interaction with WebSocket or UI
    """

    @abstractmethod
    def transcribe(
        self,
        audio: UtteranceAudio,
        *,
        utterance_id: str,
    ) -> AsyncIterator[Transcript]:
        """
        Transcribe one closed utterance.

        Contract:
        - Every yielded Transcript carries `utterance_id`.
        - Interim transcripts have is_final=False; the last item has
          is_final=True.
        - Raises TranscriptionFailure on engine or network error.
        - Must NOT retry internally.
        """
        raise NotImplementedError

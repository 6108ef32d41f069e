"""
Conversation context management.

Responsibilities:
- Store ordered user/assistant turns for one session
- Enforce truncation rules:
  - Max turns OR max characters (whichever is hit first)
  - Drop oldest turns until constraints are satisfied
  - Allow a single oversized turn (with warning)
- Provide an immutable snapshot for generation requests

Non-responsibilities:
- No reducer logic
- No LLM formatting
- No persistence beyond the session
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from observability.logger import log_event
from constants import MAX_CONTEXT_CHARS, MAX_CONTEXT_TURNS


Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Turn:
    """Single conversation turn."""
    role: Role
    text: str
    turn_id: int


class ConversationContext:
    """
    Mutable conversation context owned by the session.

    This object is intentionally imperative:
    - Reducer decides *when* to commit an exchange (CommitTurn)
    - This class decides *what to keep*

    Invariants:
    - Turns are stored in chronological order
    - turn_id is monotonic but not required to be contiguous
    - Only completed exchanges are committed
    """

    def __init__(
        self,
        session_id: str | None = None,
        *,
        max_turns: int = MAX_CONTEXT_TURNS,
        max_chars: int = MAX_CONTEXT_CHARS,
    ) -> None:
        if max_turns <= 0 or max_chars <= 0:
            raise ValueError("context limits must be > 0")
        self._session_id = session_id
        self._max_turns = max_turns
        self._max_chars = max_chars
        self._turns: list[Turn] = []
        self._last_committed_turn_id: int | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def commit_exchange(
        self,
        *,
        turn_id: int,
        user_text: str,
        assistant_text: str,
    ) -> bool:
        """
        Append a completed user/assistant exchange.

        Returns False (and changes nothing) if turn_id was already committed.
        """
        if (
            self._last_committed_turn_id is not None
            and turn_id <= self._last_committed_turn_id
        ):
            log_event({
                "event_type": "context_duplicate_commit_ignored",
                "session_id": self._session_id,
                "turn_id": turn_id,
                "last_committed_turn_id": self._last_committed_turn_id,
            })
            return False

        self._turns.append(Turn(role="user", text=user_text, turn_id=turn_id))
        self._turns.append(
            Turn(role="assistant", text=assistant_text, turn_id=turn_id)
        )
        self._last_committed_turn_id = turn_id
        self._truncate()
        return True

    def snapshot(self) -> tuple[Turn, ...]:
        """Immutable view of the retained turns, oldest first."""
        return tuple(self._turns)

    def serialize(self) -> list[dict[str, str]]:
        """
        Serialize turns into a role/content structure.

        Output format:
        [
          {"role": "user", "content": "..."},
          {"role": "assistant", "content": "..."},
        ]
        """
        return [
            {"role": t.role, "content": t.text}
            for t in self._turns
        ]

    def total_chars(self) -> int:
        return sum(len(t.text) for t in self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _truncate(self) -> None:
        """Drop oldest turns until both limits hold (one turn always kept)."""
        while self._violates_limits():
            if len(self._turns) == 1:
                log_event({
                    "event_type": "context_single_turn_oversized",
                    "session_id": self._session_id,
                    "turn_id": self._turns[0].turn_id,
                    "char_count": len(self._turns[0].text),
                })
                break

            dropped = self._turns.pop(0)
            log_event({
                "event_type": "context_turn_dropped",
                "session_id": self._session_id,
                "turn_id": dropped.turn_id,
                "role": dropped.role,
                "char_count": len(dropped.text),
            })

    def _violates_limits(self) -> bool:
        """Return True if turn or character limits are exceeded."""
        if len(self._turns) > self._max_turns:
            return True
        return self.total_chars() > self._max_chars

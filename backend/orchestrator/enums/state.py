"""
Authoritative session state enumeration.

Rules:
- This enum defines ONLY the control-plane states.
- No behavior, no helper methods, no side effects.
- Transitions are defined exclusively in the reducer.
"""

from __future__ import annotations

from enum import Enum


class State(str, Enum):
    """
    Deterministic control states for a single duplex voice session.

    These states represent orchestration intent, NOT connection status
    and NOT adapter lifecycles. The value is what the client sees in
    {"type": "state", "value": ...}.

    LISTENING:
        Initial state. Audio is being segmented; no reply work in flight.

    TRANSCRIBING:
        A closed (or barge-in) utterance is being converted to text.

    GENERATING:
        The final transcript was sent to the language model; no reply
        text has arrived yet.

    SPEAKING:
        Reply text is streaming and being synthesized to audio.

    ERROR:
        Session-fatal failure. Terminal; the session ends.
    """

    LISTENING = "LISTENING"
    TRANSCRIBING = "TRANSCRIBING"
    GENERATING = "GENERATING"
    SPEAKING = "SPEAKING"
    ERROR = "ERROR"

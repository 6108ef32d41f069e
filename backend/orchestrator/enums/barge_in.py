"""
Barge-in policy enumeration.

Policy is orthogonal to control states:
- State answers:  "What is the system doing?"
- Policy answers: "May user speech interrupt it?"
"""

from __future__ import annotations

from enum import Enum


class BargeInPolicy(str, Enum):
    """
    How speech detected while the assistant is SPEAKING is treated.

    Barge-in during TRANSCRIBING and GENERATING is always honored; the
    policy only governs SPEAKING.

    ALLOW:
        Any speech start interrupts the reply.

    AFTER_PLAYBACK_START:
        Speech interrupts only once the first audio chunk of the active
        reply has been published. Earlier speech is deferred: it
        interrupts when the first audio goes out, or when it ends first.

    DISABLED:
        Echo suppression. Speech starts during SPEAKING are ignored.
    """

    ALLOW = "allow"
    AFTER_PLAYBACK_START = "after_playback_start"
    DISABLED = "disabled"

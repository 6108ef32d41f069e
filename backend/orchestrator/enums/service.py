"""
Service enumeration for run-id versioned worker streams.

Rules:
- This enum identifies versioned external workers only.
- It must NOT encode behavior or lifecycle rules.
- Reducer logic decides how workers are started, canceled, and reset.
"""

from __future__ import annotations

from enum import Enum


class Service(str, Enum):
    """
    External, versioned workers managed by the orchestrator.

    Each service:
    - Has at most one active run at a time
    - Is identified by a monotonically increasing run_id

    ASR is transcription, LLM is reply generation, TTS is speech synthesis.
    """

    ASR = "ASR"
    LLM = "LLM"
    TTS = "TTS"

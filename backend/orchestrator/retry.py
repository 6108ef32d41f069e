"""
Retry policy helpers.

Purpose:
- Centralize retry rules for worker failures
- Keep reducer pure

Only transcription is retried: once, immediately, with the full utterance
audio. Generation and synthesis failures are surfaced to the client at once
because partial reply text or audio may already have been published.

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from orchestrator.enums.service import Service

from constants import (
    GENERATION_MAX_RETRIES,
    SYNTHESIS_MAX_RETRIES,
    TRANSCRIPTION_MAX_RETRIES,
)


# =============================================================================
# Failure Types
# =============================================================================

class FailureType(str, Enum):
    """
    Failure classification used by retry policy and error messages.

    ERROR:
        The adapter raised (engine or network failure).

    FIRST_OUTPUT_TIMEOUT:
        No output arrived within the first-output window
        (transcription deadline, first reply chunk, first audio).

    STALL_TIMEOUT:
        Output started, then stopped for longer than the stall window.

    Notes:
    - Cancellation is NOT a failure type and must never trigger retries.
    - Retry decisions are made purely from (service, attempt, limit).
    """

    ERROR = "error"
    FIRST_OUTPUT_TIMEOUT = "first_output_timeout"
    STALL_TIMEOUT = "stall_timeout"


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry attempt counter.

    Semantics:
    - attempt == 0 represents the initial attempt (no retry yet).
    - attempt >= 1 represents the Nth retry attempt.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    """Return a new RetryAttempt with attempt incremented by 1."""
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

def max_attempts(service: Service, *, transcription_limit: int | None = None) -> int:
    """
    Maximum retry attempts (excluding the initial attempt).

    transcription_limit overrides the default transcription retry count
    (the session policy carries it).
    """
    if service is Service.ASR:
        if transcription_limit is None:
            return TRANSCRIPTION_MAX_RETRIES
        return transcription_limit

    if service is Service.LLM:
        return GENERATION_MAX_RETRIES

    if service is Service.TTS:
        return SYNTHESIS_MAX_RETRIES

    return 0


def should_retry(
    *,
    service: Service,
    attempt: RetryAttempt,
    transcription_limit: int | None = None,
) -> bool:
    """
    Returns True if a retry is allowed.

    attempt = number of retries already performed
    """
    return attempt.attempt < max_attempts(
        service, transcription_limit=transcription_limit
    )

"""
Pure synthesis text chunking.

This module contains NO side effects and NO timing primitives.
It is a deterministic function over the accumulated reply text that has
not yet been handed to synthesis.

Triggers, in priority order:
- A: sentence boundary. Send up to and including the FIRST boundary,
  even if shorter than TTS_MIN_CHUNK_LEN_CHARS.
- D: hard cap. Must send; backtrack within TTS_LOOKBACK_CHARS to a break.
- B: size threshold. Send up to the last clause or whitespace break that
  leaves at least TTS_MIN_CHUNK_LEN_CHARS.

IMPORTANT CONTRACT WITH REDUCER:

- The reducer appends each reply chunk to its buffer and calls
  split_ready_units(); every returned unit becomes one SendSynthesisText.
- On GenerationDone the reducer flushes the remainder with flush().
"""

from __future__ import annotations

from dataclasses import dataclass

from constants import (
    SENTENCE_END_CHARS,
    TTS_HARD_CAP_CHARS,
    TTS_LOOKBACK_CHARS,
    TTS_MIN_CHUNK_LEN_CHARS,
    TTS_PREFERRED_BREAK_CHARS,
    TTS_SIZE_TRIGGER_CHARS,
    TTS_WHITESPACE_BREAK_CHARS,
)


# =============================================================================
# Chunking Decision
# =============================================================================

@dataclass(frozen=True)
class ChunkDecision:
    """
    Result of a chunking evaluation.

    If send is False, all other fields are undefined and must be ignored.
    """
    send: bool
    send_text: str | None = None
    remainder: str | None = None
    forced_mid_word: bool = False


# =============================================================================
# Public API
# =============================================================================

def evaluate_chunk(buffer: str) -> ChunkDecision:
    """
    Evaluate whether a synthesis unit should be emitted from `buffer`.

    Returns:
        ChunkDecision describing whether to send a unit and how to split.
    """
    if not buffer or not buffer.strip():
        return ChunkDecision(send=False)

    # Trigger A
    boundary_decision = _split_at_sentence_boundary(buffer)
    if boundary_decision is not None:
        return boundary_decision

    # Trigger D
    if len(buffer) >= TTS_HARD_CAP_CHARS:
        return _split_with_backtrack(buffer)

    # Trigger B
    if len(buffer) >= TTS_SIZE_TRIGGER_CHARS:
        split = _split_at_last_break(buffer)
        if split is not None:
            return split
        return ChunkDecision(
            send=True,
            send_text=buffer.strip(),
            remainder="",
        )

    return ChunkDecision(send=False)


def split_ready_units(buffer: str) -> tuple[tuple[str, ...], str]:
    """
    Repeatedly apply evaluate_chunk().

    Returns:
        (units ready for synthesis, remaining buffer)
    """
    units: list[str] = []
    while True:
        decision = evaluate_chunk(buffer)
        if not decision.send:
            return tuple(units), buffer
        if decision.send_text:
            units.append(decision.send_text)
        buffer = decision.remainder or ""


def flush(buffer: str) -> str | None:
    """Final unit for whatever is left once generation is done."""
    text = buffer.strip()
    if not _speakable(text):
        return None
    return text


# =============================================================================
# Helpers
# =============================================================================

def _speakable(text: str) -> bool:
    return any(ch.isalnum() for ch in text)


def _split_at_sentence_boundary(buffer: str) -> ChunkDecision | None:
    """
    Split buffer at the FIRST sentence boundary, if present.

    Returns:
        ChunkDecision if a boundary is found, otherwise None.
    """
    positions = [buffer.find(ch) for ch in SENTENCE_END_CHARS]
    found = [idx for idx in positions if idx != -1]
    if not found:
        return None

    split_idx = min(found) + 1  # include delimiter
    head = buffer[:split_idx]
    if not _speakable(head):
        # Leading boundary char with nothing speakable before it
        rest = buffer[split_idx:]
        if not rest.strip():
            return None
        return ChunkDecision(send=True, send_text="", remainder=rest)

    return ChunkDecision(
        send=True,
        send_text=head.strip(),
        remainder=buffer[split_idx:],
    )


def _split_at_last_break(buffer: str) -> ChunkDecision | None:
    last_space_idx = None

    for i in range(len(buffer) - 1, -1, -1):
        split_len = i + 1
        ch = buffer[i]

        if ch in TTS_WHITESPACE_BREAK_CHARS and last_space_idx is None:
            if split_len >= TTS_MIN_CHUNK_LEN_CHARS:
                last_space_idx = i

        # Only search for preferred breaks while still >= MIN
        if split_len < TTS_MIN_CHUNK_LEN_CHARS:
            if last_space_idx is not None:
                break
            continue

        if ch in TTS_PREFERRED_BREAK_CHARS:
            return ChunkDecision(
                send=True,
                send_text=buffer[:split_len].strip(),
                remainder=buffer[split_len:],
            )

    if last_space_idx is not None:
        split_idx = last_space_idx + 1
        return ChunkDecision(
            send=True,
            send_text=buffer[:split_idx].strip(),
            remainder=buffer[split_idx:],
        )

    return None


def _split_with_backtrack(buffer: str) -> ChunkDecision:
    """
    Split buffer using lookback window when hard cap is exceeded.
    """
    cap_region = buffer[:TTS_HARD_CAP_CHARS]
    lookback_start = max(0, len(cap_region) - TTS_LOOKBACK_CHARS)
    lookback_region = cap_region[lookback_start:]

    last_space_idx = None

    for i in range(len(lookback_region) - 1, -1, -1):
        split_len = lookback_start + i + 1
        ch = lookback_region[i]

        # Prefer punctuation only if resulting chunk >= MIN
        if (
            ch in TTS_PREFERRED_BREAK_CHARS
            and split_len >= TTS_MIN_CHUNK_LEN_CHARS
        ):
            return ChunkDecision(
                send=True,
                send_text=buffer[:split_len].strip(),
                remainder=buffer[split_len:],
            )

        # Track whitespace fallback >= MIN
        if (
            ch in TTS_WHITESPACE_BREAK_CHARS
            and last_space_idx is None
            and split_len >= TTS_MIN_CHUNK_LEN_CHARS
        ):
            last_space_idx = i

    if last_space_idx is not None:
        split_idx = lookback_start + last_space_idx + 1
        return ChunkDecision(
            send=True,
            send_text=buffer[:split_idx].strip(),
            remainder=buffer[split_idx:],
        )

    # True hard-cap split
    return ChunkDecision(
        send=True,
        send_text=buffer[:TTS_HARD_CAP_CHARS].strip(),
        remainder=buffer[TTS_HARD_CAP_CHARS:],
        forced_mid_word=True,
    )

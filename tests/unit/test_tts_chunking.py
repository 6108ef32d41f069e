# tests/unit/test_tts_chunking.py

from orchestrator.chunking import evaluate_chunk, flush, split_ready_units
from constants import (
    TTS_HARD_CAP_CHARS,
    TTS_LOOKBACK_CHARS,
    TTS_MIN_CHUNK_LEN_CHARS,
    TTS_SIZE_TRIGGER_CHARS,
)


def test_sentence_boundary_splits_at_first_boundary():
    buf = "Hello world. This should stay buffered."
    decision = evaluate_chunk(buf)

    assert decision.send is True
    assert decision.send_text == "Hello world."
    assert decision.remainder == " This should stay buffered."
    assert decision.forced_mid_word is False


def test_sentence_boundary_works_with_short_text():
    decision = evaluate_chunk("Hi!")

    assert decision.send is True
    assert decision.send_text == "Hi!"
    assert decision.remainder == ""


def test_short_text_without_boundary_waits():
    assert evaluate_chunk("Sure, let me").send is False


def test_size_trigger_splits_at_last_clause_break():
    head = "Well, " + "word " * 30
    buf = head.rstrip() + ", and then more"
    assert TTS_SIZE_TRIGGER_CHARS <= len(buf) < TTS_HARD_CAP_CHARS

    decision = evaluate_chunk(buf)

    assert decision.send is True
    assert decision.send_text == head.rstrip() + ","
    assert decision.remainder == " and then more"
    assert len(decision.send_text) >= TTS_MIN_CHUNK_LEN_CHARS


def test_hard_cap_forces_split_when_no_break_chars():
    buf = "x" * (TTS_HARD_CAP_CHARS + 5)

    decision = evaluate_chunk(buf)

    assert decision.send is True
    assert decision.send_text is not None
    assert len(decision.send_text) <= TTS_HARD_CAP_CHARS
    assert decision.forced_mid_word is True


def test_hard_cap_prefers_break_char_within_lookback():
    # Put a break char inside lookback window
    prefix = "a" * (TTS_HARD_CAP_CHARS - TTS_LOOKBACK_CHARS)
    lookback = "b" * (TTS_LOOKBACK_CHARS - 2) + " "
    buf = prefix + lookback + "TAIL"

    decision = evaluate_chunk(buf)

    assert decision.send is True
    assert decision.forced_mid_word is False
    assert decision.send_text == (prefix + lookback).strip()
    assert decision.remainder == "TAIL"


def test_no_empty_chunks_emitted():
    assert evaluate_chunk("").send is False
    assert evaluate_chunk("   ").send is False


def test_max_chars_invariant():
    buf = "x" * (TTS_HARD_CAP_CHARS * 2)

    decision = evaluate_chunk(buf)

    assert decision.send is True
    assert decision.send_text is not None
    assert len(decision.send_text) <= TTS_HARD_CAP_CHARS


def test_split_ready_units_emits_every_complete_sentence():
    units, rest = split_ready_units("One. Two! Three? Four")

    assert units == ("One.", "Two!", "Three?")
    assert rest == " Four"


def test_split_ready_units_skips_bare_punctuation():
    units, rest = split_ready_units("... ok")

    assert units == ()
    assert rest == " ok"


def test_flush_returns_speakable_remainder_only():
    assert flush("  and that's it ") == "and that's it"
    assert flush(" ... ") is None
    assert flush("") is None

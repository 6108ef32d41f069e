# pylint: disable=missing-module-docstring,missing-function-docstring
import pytest

from audio.vad import EnergyVAD
from orchestrator.enums.service import Service
from orchestrator.retry import RetryAttempt, next_attempt, reset_attempt, should_retry
from orchestrator.run_ids import RunIds
from fakes import SILENT_PCM, VOICED_PCM


# ---------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------

def test_transcription_is_retried_exactly_once():
    first = reset_attempt()
    assert should_retry(service=Service.ASR, attempt=first)

    second = next_attempt(first)
    assert second == RetryAttempt(attempt=1)
    assert not should_retry(service=Service.ASR, attempt=second)


@pytest.mark.parametrize("service", [Service.LLM, Service.TTS])
def test_generation_and_synthesis_are_never_retried(service):
    assert not should_retry(service=service, attempt=reset_attempt())


def test_transcription_limit_override():
    assert not should_retry(
        service=Service.ASR, attempt=reset_attempt(), transcription_limit=0
    )


# ---------------------------------------------------------------------
# Run ids
# ---------------------------------------------------------------------

def test_run_ids_bump_one_service_only():
    runs = RunIds().bumped(Service.TTS).bumped(Service.TTS)

    assert runs.as_dict() == {"asr": 0, "llm": 0, "tts": 2}
    assert runs.for_service(Service.TTS) == 2


# ---------------------------------------------------------------------
# Energy VAD
# ---------------------------------------------------------------------

def test_vad_classifies_voiced_and_silent_frames():
    vad = EnergyVAD(0.02)

    assert vad.is_voiced(VOICED_PCM)
    assert not vad.is_voiced(SILENT_PCM)
    assert vad.energy(VOICED_PCM) == pytest.approx(0.5, abs=1e-3)


def test_vad_rejects_non_positive_threshold():
    with pytest.raises(ValueError):
        EnergyVAD(0.0)

"""
Process-wide adapter wiring.

One AdapterSet is built at startup and shared by every session; adapters
hold no per-session state.
"""

from __future__ import annotations

from dataclasses import dataclass

from openai import AsyncOpenAI

from adapters.asr.base import TranscriptionAdapter
from adapters.asr.openai_transcription import OpenAITranscriptionAdapter
from adapters.llm.base import GenerationAdapter
from adapters.llm.streaming import StreamingLLMAdapter
from adapters.tts.base import SynthesisAdapter
from adapters.tts.openai_speech import OpenAISpeechAdapter
from config import AppConfig


@dataclass(frozen=True)
class AdapterSet:
    """The three worker adapters a session needs."""
    transcription: TranscriptionAdapter
    generation: GenerationAdapter
    synthesis: SynthesisAdapter


def build_openai_adapters(config: AppConfig, client: AsyncOpenAI) -> AdapterSet:
    """Wire all three workers to one shared AsyncOpenAI client."""
    return AdapterSet(
        transcription=OpenAITranscriptionAdapter(
            client=client,
            model=config.transcription_model,
            language=config.transcription_language,
            stream=config.transcription_streaming,
        ),
        generation=StreamingLLMAdapter(
            client=client,
            model=config.generation_model,
            priority_tier=config.generation_priority_tier,
        ),
        synthesis=OpenAISpeechAdapter(
            client=client,
            model=config.synthesis_model,
            voice=config.synthesis_voice,
        ),
    )

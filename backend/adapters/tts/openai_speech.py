"""
OpenAI speech synthesis adapter.

Role in the system:
- Receives speakable text units from the runtime as they are produced.
- Performs one streamed synthesis call per unit.
- Yields raw PCM16 mono audio (24kHz, provider "pcm" format) as
  AudioChunks with one reply-wide sequence.

Architectural constraints:
- Chunking policy is orchestrator-owned; units arrive pre-split.
- The last chunk is held back until input ends so it can carry is_final.
- No retries, timers, or backpressure logic live in this adapter.
"""
from __future__ import annotations

from typing import AsyncIterator

from openai import AsyncOpenAI, OpenAIError

from adapters.tts.base import SynthesisAdapter, SynthesisInput
from adapters.types import AudioChunk
from constants import PROVIDER_CHUNK_SIZE
from errors import SynthesisFailure


class OpenAISpeechAdapter(SynthesisAdapter):
    """
    Streaming-input synthesis: one provider call per text unit.
    """

    streaming = True

    def __init__(
        self,
        *,
        client: AsyncOpenAI,
        model: str,
        voice: str,
    ) -> None:
        self._client = client
        self._model = model
        self._voice = voice

    async def synthesize(
        self,
        text: SynthesisInput,
        *,
        reply_id: str,
    ) -> AsyncIterator[AudioChunk]:
        sequence = 0
        pending: bytes | None = None

        try:
            async for unit in _iter_units(text):
                if not unit.strip():
                    continue

                async with self._client.audio.speech.with_streaming_response.create(
                    model=self._model,
                    voice=self._voice,
                    input=unit,
                    response_format="pcm",
                ) as response:
                    carry = b""
                    async for chunk in response.iter_bytes(PROVIDER_CHUNK_SIZE):
                        data = carry + chunk

                        # Keep whole 16-bit samples
                        if len(data) % 2 == 1:
                            carry = data[-1:]
                            data = data[:-1]
                        else:
                            carry = b""

                        if not data:
                            continue

                        if pending is not None:
                            yield AudioChunk(
                                reply_id=reply_id,
                                data=pending,
                                sequence_number=sequence,
                                is_final=False,
                            )
                            sequence += 1
                        pending = data

        except OpenAIError as exc:
            raise SynthesisFailure(f"{type(exc).__name__}: {exc}") from exc

        if pending is not None:
            yield AudioChunk(
                reply_id=reply_id,
                data=pending,
                sequence_number=sequence,
                is_final=True,
            )


async def _iter_units(text: SynthesisInput) -> AsyncIterator[str]:
    if isinstance(text, str):
        yield text
        return
    async for unit in text:
        yield unit

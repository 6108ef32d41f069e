"""
OpenAI transcription adapter.

Role in the system:
- Receives one closed utterance (PCM16 16kHz mono) from the runtime worker.
- Uploads it as WAV to the OpenAI transcription endpoint.
- Yields interim transcripts from streamed text deltas, then one final.

Architectural constraints:
- No retries, timers, or endpointing live here.
- Provider errors surface as TranscriptionFailure; cancellation surfaces as
  generator close / task cancellation and is never converted.
"""

from __future__ import annotations

from typing import Any, AsyncIterator

from openai import AsyncOpenAI, OpenAIError

from adapters.asr.base import TranscriptionAdapter
from adapters.types import Transcript, UtteranceAudio
from audio.pcm import pcm16_to_wav
from errors import TranscriptionFailure


class OpenAITranscriptionAdapter(TranscriptionAdapter):
    """
    Batch-input, streamed-output transcription.

    stream=False falls back to a single request returning only the final
    text (for models without streaming support, e.g. whisper-1).
    """

    def __init__(
        self,
        *,
        client: AsyncOpenAI,
        model: str,
        language: str | None = None,
        stream: bool = True,
    ) -> None:
        self._client = client
        self._model = model
        self._language = language
        self._stream = stream

    async def transcribe(
        self,
        audio: UtteranceAudio,
        *,
        utterance_id: str,
    ) -> AsyncIterator[Transcript]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "file": (
                f"{utterance_id}.wav",
                pcm16_to_wav(audio.pcm_bytes, sample_rate_hz=audio.sample_rate_hz),
                "audio/wav",
            ),
        }
        if self._language:
            kwargs["language"] = self._language

        try:
            if not self._stream:
                result = await self._client.audio.transcriptions.create(**kwargs)
                yield Transcript(
                    utterance_id=utterance_id,
                    text=result.text.strip(),
                    is_final=True,
                )
                return

            stream = await self._client.audio.transcriptions.create(
                stream=True, **kwargs
            )
            try:
                text = ""
                async for event in stream:
                    event_type = getattr(event, "type", "")
                    if event_type == "transcript.text.delta":
                        text += event.delta
                        yield Transcript(
                            utterance_id=utterance_id,
                            text=text.strip(),
                            is_final=False,
                        )
                    elif event_type == "transcript.text.done":
                        yield Transcript(
                            utterance_id=utterance_id,
                            text=event.text.strip(),
                            is_final=True,
                        )
                        return
            finally:
                await stream.close()

        except OpenAIError as exc:
            raise TranscriptionFailure(f"{type(exc).__name__}: {exc}") from exc

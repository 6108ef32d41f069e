"""Streaming chat-completions reply adapter."""
from __future__ import annotations

from typing import Any, AsyncIterator, Sequence

from openai import AsyncOpenAI, OpenAIError

from adapters.llm.base import GenerationAdapter
from adapters.types import ReplyChunk
from context.serialization import serialize_for_llm
from errors import GenerationFailure


class StreamingLLMAdapter(GenerationAdapter):
    """
    Concrete streaming reply adapter (OpenAI chat completions format).

    Design notes:
    - One adapter instance serves every session in the process; each
      generate() call is an independent stream.
    - Adapter is responsible ONLY for:
        - Talking to the LLM provider
        - Streaming text deltas as ReplyChunks
    - Adapter does NOT:
        - Retry
        - Chunk text for synthesis
        - Manage timers
        - Decide orchestration outcomes
    """

    def __init__(
        self,
        *,
        client: AsyncOpenAI,
        model: str,
        priority_tier: bool = False,
    ) -> None:
        """
        Args:
            client:
                Shared AsyncOpenAI client (or any API-compatible client).
            model:
                Model identifier string.
            priority_tier:
                Request OpenAI's priority service tier.
        """
        self._client = client
        self._model = model
        self._priority_tier = priority_tier

    async def generate(
        self,
        context: Sequence[dict[str, str]],
        transcript: str,
        *,
        reply_id: str,
    ) -> AsyncIterator[ReplyChunk]:
        kwargs: dict[str, Any] = dict(
            model=self._model,
            messages=serialize_for_llm(context=context, user_text=transcript),
            stream=True,
        )
        if self._priority_tier:
            kwargs["service_tier"] = "priority"

        try:
            stream = await self._client.chat.completions.create(**kwargs)
            try:
                sequence = 0
                async for chunk in stream:
                    delta = self._extract_delta(chunk)
                    if not delta:
                        continue
                    yield ReplyChunk(
                        reply_id=reply_id,
                        text=delta,
                        sequence_number=sequence,
                    )
                    sequence += 1
            finally:
                await stream.close()

        except OpenAIError as exc:
            raise GenerationFailure(f"{type(exc).__name__}: {exc}") from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_delta(chunk: Any) -> str:
        """
        Extract token delta from vendor response (OpenAI format).
        """
        try:
            delta = chunk.choices[0].delta
            return delta.content or ""
        except (AttributeError, IndexError):
            return ""

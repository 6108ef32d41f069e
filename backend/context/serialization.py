"""
Conversation context serialization for LLM consumption.

Responsibilities:
- Convert system prompt + retained turns into LLM-ready messages.
- Append the current transcript as the final user message.

Non-responsibilities:
- No truncation logic
- No turn storage
- No logging
"""

from __future__ import annotations

from typing import Sequence

from context.conversation import Turn


def serialize_context(
    *,
    system_prompt: str,
    turns: Sequence[Turn],
) -> tuple[dict[str, str], ...]:
    """
    Serialize the system prompt and retained turns.

    Output format:
    (
        {"role": "system", "content": "..."},
        {"role": "user", "content": "..."},
        {"role": "assistant", "content": "..."},
        ...
    )
    """
    messages: list[dict[str, str]] = [{
        "role": "system",
        "content": system_prompt,
    }]
    messages.extend(
        {"role": t.role, "content": t.text}
        for t in turns
    )
    return tuple(messages)


def serialize_for_llm(
    *,
    context: Sequence[dict[str, str]],
    user_text: str,
) -> list[dict[str, str]]:
    """
    Full request messages: serialized context plus the current transcript.

    The current user text is not yet part of stored context; it is only
    committed once the reply completes.
    """
    messages = [dict(message) for message in context]
    messages.append({
        "role": "user",
        "content": user_text,
    })
    return messages

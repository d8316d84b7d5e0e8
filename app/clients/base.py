"""Provider-neutral interface the agent loop streams completions through."""

from collections.abc import AsyncIterator
from typing import Protocol

from app.models.llm import LLMMessage, LLMToolDefinition, StreamEvent


class ModelProvider(Protocol):
    """A chat model that can stream text and request tool calls.

    One call covers one model response: zero or more ``TextDelta`` events in
    generation order, then every ``ToolCallRequest`` in model order, then a
    single ``RoundComplete``. Transport failures propagate as exceptions.
    """

    name: str

    def stream_completion(
        self,
        messages: list[LLMMessage],
        tools: list[LLMToolDefinition],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one model response for the given history."""
        ...

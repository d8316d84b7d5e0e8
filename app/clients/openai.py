"""OpenAI chat completions client with streamed tool-call assembly."""

import json
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from openai import AsyncOpenAI
from openai.types import CompletionUsage

from app.clients.budget import RateLimiter, TokenBudget, TokenLimits
from app.models.llm import (
    ImageBlock,
    LLMMessage,
    LLMToolDefinition,
    LLMUsage,
    RoundComplete,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolCallRequest,
    ToolResultBlock,
    ToolUseBlock,
)
from app.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o"


@dataclass
class OpenAIConfig:
    """Configuration for OpenAI API client."""

    model: str = field(default_factory=lambda: os.getenv("OPENAI_MODEL", DEFAULT_OPENAI_MODEL))
    max_completion_tokens: int = 4096
    temperature: float | None = None
    max_retries: int = 3

    token_limits: TokenLimits = field(default_factory=lambda: TokenLimits(max_conversation_tokens=128_000))


def _safe_json_loads(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Discarding malformed tool arguments: {raw!r}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class OpenAIClient:
    """Streaming OpenAI client implementing ModelProvider."""

    name = "openai"

    rate_limiter: RateLimiter = RateLimiter()

    def __init__(self, api_key: str | None = None, config: OpenAIConfig | None = None):
        """Initialize OpenAI client.

        Args:
            api_key: OpenAI API key (defaults to OPENAI_API_KEY env var)
            config: Client configuration
        """
        openai_api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not openai_api_key:
            raise ValueError("OPENAI_API_KEY environment variable is required")

        self.api_key = openai_api_key
        self.config = config or OpenAIConfig()
        self.client = AsyncOpenAI(api_key=self.api_key, max_retries=self.config.max_retries)
        self.budget = TokenBudget(self.config.token_limits)

    async def stream_completion(
        self,
        messages: list[LLMMessage],
        tools: list[LLMToolDefinition],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one chat completion.

        Tool calls arrive as fragments keyed by index and are emitted once the
        stream ends, in index order.
        """
        truncated_messages = self.budget.truncate_conversation(messages, system_prompt, tools)
        estimated_tokens = self.budget.estimate_conversation_tokens(truncated_messages, system_prompt, tools)
        await self.rate_limiter.check_rate_limit(estimated_tokens, identifier=self.name)

        request_params: dict[str, Any] = {
            "model": self.config.model,
            "messages": self.convert_messages(truncated_messages, system_prompt),
            "max_completion_tokens": self.config.max_completion_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.config.temperature is not None:
            request_params["temperature"] = self.config.temperature
        if tools:
            request_params["tools"] = self.convert_tools(tools)
            request_params["tool_choice"] = "auto"

        logger.debug(f"Streaming from {self.config.model} with {len(truncated_messages)} messages, {len(tools)} tools")

        stream = await self.client.chat.completions.create(**request_params)

        pending: dict[int, _PendingToolCall] = {}
        finish_reason: str | None = None
        usage: LLMUsage | None = None

        async for chunk in stream:
            if chunk.usage:
                usage = self._convert_usage(chunk.usage)
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            if delta.content:
                yield TextDelta(text=delta.content)

            for fragment in delta.tool_calls or []:
                call = pending.setdefault(fragment.index, _PendingToolCall())
                if fragment.id:
                    call.id = fragment.id
                if fragment.function:
                    if fragment.function.name:
                        call.name += fragment.function.name
                    if fragment.function.arguments:
                        call.arguments += fragment.function.arguments

            if choice.finish_reason:
                finish_reason = choice.finish_reason

        for index in sorted(pending):
            call = pending[index]
            yield ToolCallRequest(
                id=call.id or f"call_{index}",
                name=call.name,
                input=_safe_json_loads(call.arguments),
            )

        logger.debug(f"Response received - Finish reason: {finish_reason}, Tool calls: {len(pending)}")
        yield RoundComplete(stop_reason=finish_reason, usage=usage)

    @staticmethod
    def convert_tools(tools: list[LLMToolDefinition]) -> list[dict[str, Any]]:
        """Convert tool definitions to OpenAI function tools."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema,
                },
            }
            for tool in tools
        ]

    @staticmethod
    def convert_messages(messages: list[LLMMessage], system_prompt: str) -> list[dict[str, Any]]:
        """Convert the provider-neutral history to chat completion messages.

        Tool results become ``tool`` role messages placed before any other
        content of the same user message; assistant tool calls become
        ``tool_calls`` with JSON-encoded arguments.
        """
        converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]

        for message in messages:
            if isinstance(message.content, str):
                converted.append({"role": message.role, "content": message.content})
                continue

            if message.role == "assistant":
                text = "".join(block.text for block in message.content if isinstance(block, TextBlock))
                tool_calls = [
                    {
                        "id": block.id,
                        "type": "function",
                        "function": {"name": block.name, "arguments": json.dumps(block.input)},
                    }
                    for block in message.content
                    if isinstance(block, ToolUseBlock)
                ]
                assistant: dict[str, Any] = {"role": "assistant", "content": text or None}
                if tool_calls:
                    assistant["tool_calls"] = tool_calls
                converted.append(assistant)
                continue

            parts: list[dict[str, Any]] = []
            for block in message.content:
                if isinstance(block, ToolResultBlock):
                    converted.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content})
                elif isinstance(block, TextBlock):
                    parts.append({"type": "text", "text": block.text})
                elif isinstance(block, ImageBlock):
                    url = f"data:{block.source.media_type};base64,{block.source.data}"
                    parts.append({"type": "image_url", "image_url": {"url": url}})
            if parts:
                converted.append({"role": "user", "content": parts})

        return converted

    @staticmethod
    def _convert_usage(usage: CompletionUsage) -> LLMUsage:
        cached = 0
        if usage.prompt_tokens_details and usage.prompt_tokens_details.cached_tokens:
            cached = usage.prompt_tokens_details.cached_tokens
        return LLMUsage(
            input_tokens=usage.prompt_tokens - cached,
            output_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cache_read_input_tokens=cached,
        )


_openai_client: OpenAIClient | None = None


def get_openai_client() -> OpenAIClient:
    """Get or create OpenAI client instance."""
    global _openai_client
    if _openai_client is None:
        _openai_client = OpenAIClient()
    return _openai_client

"""Anthropic Messages API client with streaming, rate limiting and token budgeting."""

import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal

from anthropic import AsyncAnthropic
from anthropic.types import Message, Usage
from pydantic import BaseModel

from app.clients.budget import RateLimiter, TokenBudget, TokenLimits
from app.models.llm import (
    LLMMessage,
    LLMToolDefinition,
    LLMUsage,
    RoundComplete,
    StreamEvent,
    TextDelta,
    ToolCallRequest,
)
from app.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"
    ttl: Literal["5m", "1h"] = "5m"


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]
    cache_control: CacheControl | None = None


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = field(default_factory=lambda: os.getenv("ANTHROPIC_MODEL", DEFAULT_ANTHROPIC_MODEL))
    max_tokens: int = 4096
    temperature: float = 0.1
    max_retries: int = 3  # Transport retries, handled by the SDK

    token_limits: TokenLimits = field(default_factory=TokenLimits)


class AnthropicClient:
    """Streaming Anthropic client implementing ModelProvider."""

    name = "anthropic"

    api_key: str
    client: AsyncAnthropic
    config: AnthropicConfig
    rate_limiter: RateLimiter = RateLimiter()

    def __init__(self, api_key: str | None = None, config: AnthropicConfig | None = None):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
        """
        anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        self.api_key = anthropic_api_key
        self.config = config or AnthropicConfig()
        self.client = AsyncAnthropic(api_key=self.api_key, max_retries=self.config.max_retries)
        self.budget = TokenBudget(self.config.token_limits)

    async def stream_completion(
        self,
        messages: list[LLMMessage],
        tools: list[LLMToolDefinition],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one Claude response.

        Text is yielded as it arrives; tool calls are taken from the final
        message once the stream has finished so their input is complete.
        """
        truncated_messages = self.budget.truncate_conversation(messages, system_prompt, tools)

        estimated_tokens = self.budget.estimate_conversation_tokens(truncated_messages, system_prompt, tools)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens, identifier=self.name)

        request_params: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "system": system_prompt,
            "messages": [message.model_dump() for message in truncated_messages],
        }
        anthropic_tools = self.convert_tools(tools)
        if anthropic_tools:
            request_params["tools"] = [tool.model_dump(exclude_none=True) for tool in anthropic_tools]

        logger.debug(
            f"Streaming from {self.config.model} with {len(truncated_messages)} messages, "
            f"{len(anthropic_tools)} tools"
        )

        async with self.client.messages.stream(**request_params) as stream:
            async for event in stream:
                if event.type == "text":
                    yield TextDelta(text=event.text)
            final_message: Message = await stream.get_final_message()

        logger.debug(
            f"Response received - Stop reason: {final_message.stop_reason}, "
            f"Content blocks: {len(final_message.content)}"
        )

        for block in final_message.content:
            if block.type == "tool_use":
                yield ToolCallRequest(id=block.id, name=block.name, input=dict(block.input or {}))

        yield RoundComplete(stop_reason=final_message.stop_reason, usage=self._convert_usage(final_message.usage))

    def convert_tools(self, tools: list[LLMToolDefinition]) -> list[AnthropicTool]:
        """Convert tool definitions, marking the last one as a prompt-cache breakpoint."""
        anthropic_tools = [
            AnthropicTool(name=tool.name, description=tool.description, input_schema=tool.input_schema)
            for tool in tools
        ]
        if anthropic_tools:
            anthropic_tools[-1].cache_control = CacheControl()
        return anthropic_tools

    @staticmethod
    def _convert_usage(usage: Usage | None) -> LLMUsage:
        if usage is None:
            return LLMUsage()
        return LLMUsage(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.input_tokens + usage.output_tokens,
            cache_creation_input_tokens=usage.cache_creation_input_tokens or 0,
            cache_read_input_tokens=usage.cache_read_input_tokens or 0,
        )


_anthropic_client: AnthropicClient | None = None


def get_anthropic_client() -> AnthropicClient:
    """Get or create Anthropic client instance."""
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = AnthropicClient()
    return _anthropic_client

"""LangChain chat-model adapter."""

import os
from collections.abc import AsyncIterator
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from app.clients.anthropic import AnthropicConfig
from app.clients.budget import RateLimiter, TokenBudget
from app.clients.openai import OpenAIClient
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


def chunk_text(content: str | list[Any]) -> str:
    """Extract text from a message chunk's content (a string or a list of blocks)."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def to_langchain_messages(messages: list[LLMMessage], system_prompt: str) -> list[BaseMessage]:
    """Convert the provider-neutral history to LangChain messages."""
    converted: list[BaseMessage] = [SystemMessage(content=system_prompt)]

    for message in messages:
        if isinstance(message.content, str):
            cls = HumanMessage if message.role == "user" else AIMessage
            converted.append(cls(content=message.content))
            continue

        if message.role == "assistant":
            text = "".join(block.text for block in message.content if isinstance(block, TextBlock))
            tool_calls = [
                {"name": block.name, "args": block.input, "id": block.id, "type": "tool_call"}
                for block in message.content
                if isinstance(block, ToolUseBlock)
            ]
            converted.append(AIMessage(content=text, tool_calls=tool_calls))
            continue

        parts: list[str | dict[str, Any]] = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                converted.append(
                    ToolMessage(
                        content=block.content,
                        tool_call_id=block.tool_use_id,
                        status="error" if block.is_error else "success",
                    )
                )
            elif isinstance(block, TextBlock):
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                parts.append({"type": "image", "source": block.source.model_dump()})
        if parts:
            converted.append(HumanMessage(content=parts))

    return converted


class LangChainChatProvider:
    """ModelProvider backed by any LangChain chat model that supports tool binding.

    Defaults to ChatAnthropic configured like the native Anthropic client.
    """

    name = "langchain"

    rate_limiter: RateLimiter = RateLimiter()

    def __init__(self, model: BaseChatModel | None = None, config: AnthropicConfig | None = None):
        config = config or AnthropicConfig()
        if model is None:
            api_key = os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable is required")
            model = ChatAnthropic(
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                max_retries=config.max_retries,
                anthropic_api_key=api_key,
            )
        self.model = model
        self.budget = TokenBudget(config.token_limits)

    async def stream_completion(
        self,
        messages: list[LLMMessage],
        tools: list[LLMToolDefinition],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one response, aggregating chunks to recover complete tool calls."""
        truncated_messages = self.budget.truncate_conversation(messages, system_prompt, tools)

        estimated_tokens = self.budget.estimate_conversation_tokens(truncated_messages, system_prompt, tools)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens, identifier=self.name)

        runnable = self.model.bind_tools(OpenAIClient.convert_tools(tools)) if tools else self.model

        gathered: AIMessageChunk | None = None
        async for chunk in runnable.astream(to_langchain_messages(truncated_messages, system_prompt)):
            gathered = chunk if gathered is None else gathered + chunk
            text = chunk_text(chunk.content)
            if text:
                yield TextDelta(text=text)

        if gathered is None:
            yield RoundComplete()
            return

        for index, call in enumerate(gathered.tool_calls):
            yield ToolCallRequest(id=call.get("id") or f"call_{index}", name=call["name"], input=dict(call["args"]))

        usage = None
        if gathered.usage_metadata:
            usage = LLMUsage(
                input_tokens=gathered.usage_metadata["input_tokens"],
                output_tokens=gathered.usage_metadata["output_tokens"],
                total_tokens=gathered.usage_metadata["total_tokens"],
            )
        stop_reason = gathered.response_metadata.get("stop_reason") or gathered.response_metadata.get("finish_reason")
        logger.debug(f"LangChain response complete - Stop reason: {stop_reason}, Tool calls: {len(gathered.tool_calls)}")
        yield RoundComplete(stop_reason=stop_reason, usage=usage)

"""Rate limiting and token budgeting shared by the model provider clients."""

import asyncio
import json
import time
from dataclasses import dataclass

import tiktoken
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from app.models.llm import LLMMessage, LLMToolDefinition, TextBlock, ToolResultBlock, ToolUseBlock
from app.utils.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Request and token rate limiter using the limits library."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str) -> None:
        """Wait until the request fits within the rate limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=estimated_tokens):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit, identifier: str, kind: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            # reset_time is epoch seconds
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{kind} rate limit exceeded for {identifier}, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


@dataclass
class TokenLimits:
    """Token limits for validation and truncation."""

    max_message_tokens: int = 2000  # Maximum tokens per individual user message
    max_conversation_tokens: int = 200_000  # Claude Sonnet 4 context window
    token_headroom: int = 4096  # Reserved for the response


def message_text(message: LLMMessage) -> str:
    """Flatten a message into the text that counts against the context window."""
    if isinstance(message.content, str):
        return message.content

    parts: list[str] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            parts.append(block.text)
        elif isinstance(block, ToolUseBlock):
            parts.append(block.name + json.dumps(block.input))
        elif isinstance(block, ToolResultBlock):
            parts.append(block.content)
    return "".join(parts)


def starts_turn(message: LLMMessage) -> bool:
    """Whether a conversation may start at this message.

    A user message carrying tool results needs the assistant message with the
    matching tool calls before it.
    """
    if message.role != "user":
        return False
    if isinstance(message.content, str):
        return True
    return not any(isinstance(block, ToolResultBlock) for block in message.content)


class TokenBudget:
    """Token estimation, per-message validation and conversation truncation."""

    tokenizer: tiktoken.Encoding | None = None

    def __init__(self, limits: TokenLimits | None = None):
        self.limits = limits or TokenLimits()

        try:
            # Close approximation for Claude and GPT-4 class models
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception as e:
            logger.warning(f"tiktoken unavailable, estimating 4 characters per token: {e}")
            self.tokenizer = None

    def estimate_tokens(self, text: str) -> int:
        """Estimate token count for a piece of text."""
        try:
            return len(self.tokenizer.encode(text)) if self.tokenizer else len(text) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(text) // 4

    def estimate_conversation_tokens(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolDefinition] | None = None,
    ) -> int:
        """Estimate the full prompt size of a request."""
        total = self.estimate_tokens(system_prompt) + self._tool_tokens(tools)
        return total + sum(self.estimate_tokens(message_text(m)) for m in messages)

    def validate_message_tokens(self, message: str) -> None:
        """Validate that a message doesn't exceed the per-message token limit.

        Raises:
            ValueError: If message exceeds token limit
        """
        token_count = self.estimate_tokens(message)
        if token_count > self.limits.max_message_tokens:
            raise ValueError(
                f"Message exceeds token limit: {token_count} tokens > {self.limits.max_message_tokens} limit"
            )

    def truncate_conversation(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolDefinition] | None = None,
    ) -> list[LLMMessage]:
        """Drop the oldest messages until the conversation fits the context window.

        The result always starts at a plain user message, so tool results are
        never separated from the tool calls they answer. If even the latest
        turn does not fit, that turn is sent anyway.
        """
        if not messages:
            return messages

        available_tokens = (
            self.limits.max_conversation_tokens
            - self.limits.token_headroom
            - self.estimate_tokens(system_prompt)
            - self._tool_tokens(tools)
        )

        suffix_tokens = [0] * (len(messages) + 1)
        for index in range(len(messages) - 1, -1, -1):
            suffix_tokens[index] = suffix_tokens[index + 1] + self.estimate_tokens(message_text(messages[index]))

        starts = [index for index, message in enumerate(messages) if starts_turn(message)]
        if not starts:
            return messages

        start = next((index for index in starts if suffix_tokens[index] <= available_tokens), starts[-1])
        if start > 0:
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(messages) - start} messages "
                f"to fit within {available_tokens} token limit"
            )
        return messages[start:]

    def _tool_tokens(self, tools: list[LLMToolDefinition] | None) -> int:
        if not tools:
            return 0
        return self.estimate_tokens("".join(t.name + t.description + json.dumps(t.input_schema) for t in tools))

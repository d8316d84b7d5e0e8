"""LLM-related data models and types (provider-agnostic)."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


# Content block types
class TextBlock(BaseModel):
    """Text content block."""

    model_config = ConfigDict(extra="ignore")  # Ignore any additional fields from providers

    type: Literal["text"] = "text"
    text: str


class ImageSource(BaseModel):
    """Base64 image payload."""

    type: Literal["base64"] = "base64"
    media_type: str
    data: str


class ImageBlock(BaseModel):
    """Image content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["image"] = "image"
    source: ImageSource


class ToolUseBlock(BaseModel):
    """Tool use content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]


class ToolResultBlock(BaseModel):
    """Tool result content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock


class LLMMessage(BaseModel):
    """A message for LLM conversation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    def text(self) -> str:
        """Concatenate the text blocks of this message."""
        if isinstance(self.content, str):
            return self.content
        return " ".join(block.text for block in self.content if isinstance(block, TextBlock))


@dataclass
class LLMTool:
    """Tool with both schema and callable."""

    name: str
    description: str
    input_schema: dict[str, Any]
    callable: Callable[[dict[str, Any]], Awaitable[str]]
    needs_approval: bool = False


class LLMToolDefinition(BaseModel):
    """Complete tool definition for LLM."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class LLMUsage:
    """Token/resource usage information from LLM provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, other: "LLMUsage | None") -> None:
        """Accumulate another round's usage into this one."""
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens

    @property
    def cache_hit_rate(self) -> float:
        """Calculate cache hit rate as percentage."""
        total_input = self.input_tokens + self.cache_read_input_tokens + self.cache_creation_input_tokens
        if total_input == 0:
            return 0.0
        return (self.cache_read_input_tokens / total_input) * 100


# Streaming events emitted by model providers
@dataclass
class TextDelta:
    """A chunk of generated text."""

    text: str


@dataclass
class ToolCallRequest:
    """A fully assembled tool call requested by the model."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class RoundComplete:
    """End of one provider response."""

    stop_reason: str | None = None
    usage: LLMUsage | None = None


StreamEvent = TextDelta | ToolCallRequest | RoundComplete


@dataclass
class ToolExecutionResult:
    """Outcome of a single tool call."""

    success: bool
    result: str | None = None
    error: str | None = None
    duration_ms: float = 0.0

    def as_tool_content(self) -> str:
        """Render the result the way it is fed back to the model."""
        if self.success:
            return self.result or ""
        return f"Error: {self.error}"


@dataclass
class AgentRunResult:
    """Result from executing an agent loop."""

    text: str
    state: str
    rounds: int
    messages: list[LLMMessage]
    usage: LLMUsage = field(default_factory=LLMUsage)
    tool_results: list[ToolExecutionResult] = field(default_factory=list)

"""Message and conversation data models."""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.models.llm import ImageBlock, LLMMessage, TextBlock


class ChatMessage(BaseModel):
    """A message in a conversation. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: Literal["user", "assistant"]
    content: list[TextBlock | ImageBlock]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def text(self) -> str:
        return " ".join(block.text for block in self.content if isinstance(block, TextBlock))

    def to_llm_message(self) -> LLMMessage:
        return LLMMessage(role=self.role, content=list(self.content))

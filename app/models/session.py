"""Conversation state models."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.models.llm import LLMMessage
from app.models.messages import ChatMessage
from app.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Conversation:
    """An append-only conversation owned by one user."""

    conversation_id: str
    user_id: str
    messages: list[ChatMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))

    def as_dict(self) -> dict[str, Any]:
        """Return the conversation metadata as a dictionary."""
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "message_count": len(self.messages),
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }

    def update_activity(self) -> None:
        """Update the last activity timestamp."""
        self.last_activity = datetime.now(UTC)

    def append(self, message: ChatMessage) -> None:
        """Append a message to the log."""
        logger.debug(f"Appending {message.role} message {message.id} to conversation {self.conversation_id}")
        self.messages.append(message)
        self.update_activity()

    def history(self) -> list[LLMMessage]:
        """Return the conversation as model input."""
        return [message.to_llm_message() for message in self.messages]

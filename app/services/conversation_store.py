"""In-memory conversation storage."""

from datetime import UTC, datetime, timedelta

from cuid2 import cuid_wrapper

from app.models.session import Conversation

cuid = cuid_wrapper()


class InMemoryConversationStore:
    """In-memory conversation store with idle expiry."""

    def __init__(self, conversation_timeout_minutes: int = 60):
        """Initialize conversation store.

        Args:
            conversation_timeout_minutes: Minutes of inactivity before a conversation expires
        """
        self.conversations: dict[str, Conversation] = {}
        self.conversation_timeout = timedelta(minutes=conversation_timeout_minutes)

    def get_or_create(self, user_id: str, conversation_id: str | None = None) -> Conversation:
        """Get an existing conversation or start a new one.

        Args:
            user_id: Owner of the conversation
            conversation_id: Optional existing conversation ID

        Returns:
            Conversation object (existing or newly created)

        Raises:
            ValueError: If the conversation belongs to another user
        """
        self._cleanup_expired_conversations()

        if conversation_id and conversation_id in self.conversations:
            conversation = self.conversations[conversation_id]
            if conversation.user_id != user_id:
                raise ValueError(f"Conversation {conversation_id} does not belong to user {user_id}")
            conversation.update_activity()
            return conversation

        new_conversation_id = conversation_id or cuid()
        conversation = Conversation(conversation_id=new_conversation_id, user_id=user_id)
        self.conversations[new_conversation_id] = conversation
        return conversation

    def get(self, conversation_id: str) -> Conversation | None:
        """Get an existing conversation if it has not expired."""
        self._cleanup_expired_conversations()
        return self.conversations.get(conversation_id)

    def _cleanup_expired_conversations(self) -> None:
        current_time = datetime.now(UTC)
        expired = [
            conversation_id
            for conversation_id, conversation in self.conversations.items()
            if current_time - conversation.last_activity > self.conversation_timeout
        ]
        for conversation_id in expired:
            del self.conversations[conversation_id]

    def __len__(self) -> int:
        self._cleanup_expired_conversations()
        return len(self.conversations)

"""Conversation service: runs chat turns through the agent loop and streams them as SSE."""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from cuid2 import cuid_wrapper

from app.clients.base import ModelProvider
from app.clients.budget import TokenBudget
from app.models.conversation import ChatRequest
from app.models.llm import ImageBlock, TextBlock, ToolExecutionResult
from app.models.messages import ChatMessage
from app.models.session import Conversation
from app.services.approvals import ApprovalRegistry
from app.services.calendar_selector import CalendarSelector
from app.services.conversation_store import InMemoryConversationStore
from app.services.llm import DEFAULT_SYSTEM_PROMPT, AgentCallbacks, AgentConfig, AgentLoop, AgentState
from app.tools.registry import ToolsRegistry
from app.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


def format_sse(event: str, data: dict[str, Any]) -> str:
    """Serialize one Server-Sent Event."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


@dataclass
class ChatTurn:
    """A validated chat turn, ready to stream."""

    conversation: Conversation
    user_message: ChatMessage
    provider: ModelProvider


class ConversationService:
    """Service for handling conversational AI interactions."""

    def __init__(
        self,
        store: InMemoryConversationStore,
        registry: ToolsRegistry,
        selector: CalendarSelector,
        approvals: ApprovalRegistry,
        provider_factory: Callable[[str], ModelProvider],
        config: AgentConfig | None = None,
        budget: TokenBudget | None = None,
    ):
        """Initialize conversation service.

        Args:
            store: Conversation storage
            registry: Tools exposed to the model
            selector: Used to describe the user's calendars in the system prompt
            approvals: Open approval requests, resolved through the API
            provider_factory: Resolves a provider name to a model provider
            config: Agent loop configuration
            budget: Token budget used to reject oversized messages
        """
        self.store = store
        self.registry = registry
        self.selector = selector
        self.approvals = approvals
        self.provider_factory = provider_factory
        self.config = config or AgentConfig.from_env()
        self.budget = budget or TokenBudget()

    def start_turn(self, request: ChatRequest) -> ChatTurn:
        """Validate a chat request and resolve its conversation and provider.

        Raises:
            ValueError: If the message is too long, the conversation belongs to
                another user, or the provider cannot be created
        """
        self._validate_message_tokens(request.message)

        conversation = self.store.get_or_create(request.user_id, request.conversation_id)
        provider = self.provider_factory(request.provider or self.config.provider)

        content: list[TextBlock | ImageBlock] = [TextBlock(text=request.message)]
        content.extend(ImageBlock(source=image) for image in request.images)
        user_message = ChatMessage(id=cuid(), role="user", content=content)

        logger.info(
            f"Starting turn for conversation {conversation.conversation_id} via {provider.name} "
            f"{json.dumps(conversation.as_dict())}"
        )
        return ChatTurn(conversation=conversation, user_message=user_message, provider=provider)

    async def stream_turn(self, turn: ChatTurn) -> AsyncIterator[str]:
        """Run one turn and yield its events as SSE strings.

        The user and assistant messages are appended to the conversation only
        when the turn completes with some text.
        """
        conversation = turn.conversation
        queue: asyncio.Queue[str | None] = asyncio.Queue()

        yield format_sse(
            "conversation", {"conversation_id": conversation.conversation_id, "user_id": conversation.user_id}
        )

        def emit(event: str, data: dict[str, Any]) -> None:
            queue.put_nowait(format_sse(event, data))

        def on_tool_complete(name: str, tool_input: dict[str, Any], result: ToolExecutionResult) -> None:
            emit(
                "tool_complete",
                {
                    "name": name,
                    "input": tool_input,
                    "success": result.success,
                    "result": result.result,
                    "error": result.error,
                    "duration_ms": round(result.duration_ms, 1),
                },
            )

        callbacks = AgentCallbacks(
            on_text=lambda chunk: emit("text", {"text": chunk}),
            on_tool_use=lambda name, tool_input: emit("tool_use", {"name": name, "input": tool_input}),
            on_tool_complete=on_tool_complete,
            on_error=lambda error: emit("error", {"error": str(error)}),
            on_tool_approval=self._approval_handler(emit),
        )

        history = [*conversation.history(), turn.user_message.to_llm_message()]
        system_prompt = await self.build_system_prompt(conversation.user_id)
        agent = AgentLoop(turn.provider, self.registry, self.config)

        task = asyncio.create_task(agent.run(history, conversation.user_id, callbacks, system_prompt))
        task.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while (item := await queue.get()) is not None:
                yield item

            try:
                result = task.result()
            except Exception as e:
                logger.error(f"Turn failed for conversation {conversation.conversation_id}: {e}", exc_info=True)
                yield format_sse(
                    "error", {"error": "I apologize, but I'm experiencing technical difficulties. Please try again."}
                )
                return

            if result.state != AgentState.DONE:
                return

            # Providers reject blank text blocks; a turn without a reply stays out of the history
            if result.text.strip():
                conversation.append(turn.user_message)
                conversation.append(ChatMessage(id=cuid(), role="assistant", content=[TextBlock(text=result.text)]))
            else:
                logger.warning(
                    f"Turn for conversation {conversation.conversation_id} produced no text; not storing it"
                )

            logger.info(
                f"Token usage - Input: {result.usage.input_tokens}, Output: {result.usage.output_tokens}, "
                f"Cache hits: {result.usage.cache_read_input_tokens}"
            )
            yield format_sse(
                "done",
                {
                    "conversation_id": conversation.conversation_id,
                    "text": result.text,
                    "rounds": result.rounds,
                    "usage": {"input_tokens": result.usage.input_tokens, "output_tokens": result.usage.output_tokens},
                },
            )
        finally:
            if not task.done():
                logger.info(f"Client disconnected; cancelling turn for conversation {conversation.conversation_id}")
                task.cancel()

    def _approval_handler(self, emit: Callable[[str, dict[str, Any]], None]):
        async def request_approval(tool_name: str, tool_input: dict[str, Any]) -> bool:
            gate = self.approvals.open(tool_name, tool_input, self.config.approval_timeout_seconds)
            emit(
                "tool_approval_requested",
                {
                    "approval_id": gate.approval_id,
                    "tool_name": tool_name,
                    "tool_input": gate.request.tool_input,
                    "timeout_ms": gate.request.timeout_ms,
                },
            )
            try:
                decision = await gate.wait()
                return decision.approved
            finally:
                self.approvals.close(gate.approval_id)

        return request_approval

    async def build_system_prompt(self, user_id: str, base_prompt: str = DEFAULT_SYSTEM_PROMPT) -> str:
        """Add date awareness and the user's calendar configuration to the base prompt."""
        now = datetime.now().astimezone()
        prompt = base_prompt
        prompt += "\n\n## Current Date & Time\n"
        prompt += f"Today is {now.strftime('%A, %B %d, %Y')} at {now.strftime('%I:%M %p %Z')}.\n"
        prompt += 'Use this information when the user mentions relative dates like "today", "tomorrow", "next Monday", etc.'

        mappings = await self.selector.get_user_calendars(user_id)
        prompt += "\n\n## User's Calendar Configuration\n"
        if not mappings:
            prompt += (
                "The user has not configured any calendar mappings yet. They need to connect their Google Calendar "
                "and set up calendar mappings before using calendar features."
            )
            return prompt

        prompt += "The user has configured the following calendars:\n\n"
        for mapping in mappings:
            default_marker = " (DEFAULT)" if mapping.is_default else ""
            prompt += f'- **{mapping.calendar_name}**{default_marker}: Mapped to "{mapping.entity_type}" calendar\n'
            if mapping.time_zone:
                prompt += f"  - Timezone: {mapping.time_zone}\n"

        prompt += (
            "\nWhen creating, updating, or deleting events, the system will automatically select the appropriate "
            "calendar based on context. You can see which calendar was selected in the tool execution results."
        )
        default_mapping = next((m for m in mappings if m.is_default), None)
        if default_mapping:
            prompt += (
                f' The user\'s default calendar is "{default_mapping.calendar_name}" ({default_mapping.entity_type}).'
            )
        return prompt

    def _validate_message_tokens(self, message: str) -> None:
        """Validate message doesn't exceed token limits.

        Raises:
            ValueError: If message exceeds token limit
        """
        try:
            self.budget.validate_message_tokens(message)
        except ValueError as e:
            logger.warning(f"Rejected message: {e}")
            raise ValueError(
                f"Your message is too long. Please keep messages under {self.budget.limits.max_message_tokens} tokens."
            ) from e

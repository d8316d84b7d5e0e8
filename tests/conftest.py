"""Shared fixtures and fakes for tests."""

import json
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

from app.clients.budget import TokenBudget, TokenLimits
from app.models.calendar import CalendarMapping, CreateEventParams, EventTime
from app.models.llm import LLMMessage, LLMToolDefinition, RoundComplete, StreamEvent, TextDelta, ToolCallRequest
from app.services.approvals import ApprovalRegistry
from app.services.calendar_events import InMemoryCalendarEventService
from app.services.calendar_mappings import InMemoryCalendarMappingRepository
from app.services.calendar_selector import CalendarSelector
from app.services.conversation import ConversationService
from app.services.conversation_store import InMemoryConversationStore
from app.services.llm import AgentConfig
from app.tools.registry import ToolsRegistry

USER_ID = "user-1"
FAMILY_CALENDAR_ID = "family@group.calendar.google.com"
WORK_CALENDAR_ID = "work@example.com"


class FakeProvider:
    """Scripted model provider.

    Each script entry is one round: a list of stream events, or an exception
    to raise. Once the script runs out, the last round repeats.
    """

    name = "fake"

    def __init__(self, rounds: list[list[StreamEvent] | Exception]):
        self.rounds = rounds
        self.calls: list[list[LLMMessage]] = []
        self.tools: list[LLMToolDefinition] = []
        self.system_prompts: list[str] = []

    async def stream_completion(self, messages, tools, system_prompt):
        self.calls.append(list(messages))
        self.tools = tools
        self.system_prompts.append(system_prompt)

        script = self.rounds[min(len(self.calls), len(self.rounds)) - 1]
        if isinstance(script, Exception):
            raise script
        for event in script:
            yield event


def text_round(*chunks: str) -> list[StreamEvent]:
    """A round that only produces text."""
    return [*(TextDelta(text=chunk) for chunk in chunks), RoundComplete(stop_reason="end_turn")]


def tool_round(name: str, tool_input: dict[str, Any], call_id: str = "toolu_1", text: str = "") -> list[StreamEvent]:
    """A round that requests one tool call, optionally preceded by text."""
    events: list[StreamEvent] = [TextDelta(text=text)] if text else []
    events.append(ToolCallRequest(id=call_id, name=name, input=tool_input))
    events.append(RoundComplete(stop_reason="tool_use"))
    return events


def future_time(days: int = 1, hours: int = 0) -> str:
    """An ISO timestamp in the future."""
    return (datetime.now(UTC) + timedelta(days=days, hours=hours)).replace(microsecond=0).isoformat()


@pytest_asyncio.fixture
async def mapping_repository() -> InMemoryCalendarMappingRepository:
    """Repository where the user has a default family calendar and a work calendar."""
    repository = InMemoryCalendarMappingRepository()
    await repository.save_mapping(
        CalendarMapping(
            user_id=USER_ID,
            google_calendar_id=FAMILY_CALENDAR_ID,
            calendar_name="Smith Family",
            entity_type="family",
            is_default=True,
            time_zone="America/Chicago",
        )
    )
    await repository.save_mapping(
        CalendarMapping(
            user_id=USER_ID,
            google_calendar_id=WORK_CALENDAR_ID,
            calendar_name="Work",
            entity_type="work",
        )
    )
    return repository


@pytest.fixture
def selector(mapping_repository) -> CalendarSelector:
    """Calendar selector over the test repository."""
    return CalendarSelector(mapping_repository)


@pytest.fixture
def events() -> InMemoryCalendarEventService:
    """Empty in-memory calendar."""
    return InMemoryCalendarEventService()


@pytest.fixture
def registry(selector, events) -> ToolsRegistry:
    """Tools registry wired to the in-memory services."""
    return ToolsRegistry(selector, events)


@pytest_asyncio.fixture
async def dentist_event(events):
    """A family calendar event to read, update and delete."""
    return await events.create_event(
        USER_ID,
        FAMILY_CALENDAR_ID,
        CreateEventParams(
            summary="Dentist appointment",
            start=EventTime(date_time=future_time(hours=1)),
            end=EventTime(date_time=future_time(hours=2)),
            location="Main St Dental",
        ),
    )


def parse_sse(payload: str) -> list[tuple[str, dict[str, Any]]]:
    """Split an SSE payload into (event, data) pairs."""
    events = []
    for block in payload.strip().split("\n\n"):
        event, data = "", {}
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line.removeprefix("event: ")
            elif line.startswith("data: "):
                data = json.loads(line.removeprefix("data: "))
        events.append((event, data))
    return events


@pytest.fixture
def make_service(registry, selector):
    """Build a ConversationService that always uses the given provider."""

    def factory(provider: FakeProvider, /, **config: Any) -> ConversationService:
        budget = TokenBudget(TokenLimits(max_message_tokens=50))
        budget.tokenizer = None
        return ConversationService(
            store=InMemoryConversationStore(),
            registry=registry,
            selector=selector,
            approvals=ApprovalRegistry(),
            provider_factory=lambda name: provider,
            config=AgentConfig(**config),
            budget=budget,
        )

    return factory

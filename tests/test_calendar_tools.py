"""Tests for the calendar tools and the tools registry."""

import pytest
from conftest import FAMILY_CALENDAR_ID, USER_ID, WORK_CALENDAR_ID, future_time
from pydantic import ValidationError

from app.exceptions import CalendarNotConnectedError, NoCalendarConfiguredError, ToolExecutionError
from app.services.calendar_events import InMemoryCalendarEventService
from app.tools.base import ToolContext
from app.tools.calendar_tools import CreateCalendarEventInput, GetCalendarEventsInput, UpdateCalendarEventInput
from app.tools.registry import ToolsRegistry


def tools_for(registry: ToolsRegistry, user_message: str = "", user_id: str = USER_ID):
    return registry.get_llm_tools(ToolContext(user_id=user_id, user_message=user_message))


class TestToolsRegistry:
    """Tests for tool registration."""

    def test_registers_calendar_tools(self, registry):
        """Test that the four calendar tools are registered in order."""
        assert registry.get_tool_names() == [
            "get_calendar_events",
            "create_calendar_event",
            "update_calendar_event",
            "delete_calendar_event",
        ]
        assert registry.has_tool("delete_calendar_event")
        assert not registry.has_tool("launch_rocket")

    def test_only_delete_needs_approval(self, registry):
        """Test that only the destructive tool is approval-gated."""
        tools = tools_for(registry)

        assert {name for name, tool in tools.items() if tool.needs_approval} == {"delete_calendar_event"}

    def test_tool_definitions_carry_json_schema(self, registry):
        """Test that provider-facing definitions expose the input schema."""
        definitions = {d.name: d for d in registry.get_tool_definitions()}

        schema = definitions["create_calendar_event"].input_schema
        assert schema["type"] == "object"
        assert "summary" in schema["required"]
        assert "event_id" in definitions["delete_calendar_event"].input_schema["required"]


class TestToolInputs:
    """Tests for tool input validation."""

    def test_create_requires_start_and_end(self):
        """Test that create rejects events without a start or end."""
        with pytest.raises(ValidationError, match="must have a start time"):
            CreateCalendarEventInput(summary="Lunch", end_datetime=future_time())
        with pytest.raises(ValidationError, match="must have an end time"):
            CreateCalendarEventInput(summary="Lunch", start_datetime=future_time())

    def test_create_accepts_all_day_event(self):
        """Test that all-day events use dates."""
        params = CreateCalendarEventInput(summary="Vacation", start_date="2025-11-15", end_date="2025-11-16")

        assert params.start_time().date == "2025-11-15"
        assert params.start_time().date_time is None

    def test_rejects_malformed_datetime(self):
        """Test that non-ISO date-times are rejected."""
        with pytest.raises(ValidationError, match="not a valid ISO 8601"):
            CreateCalendarEventInput(summary="Lunch", start_datetime="tomorrow at noon", end_datetime=future_time())

    def test_rejects_unknown_entity_type(self):
        """Test that only family, personal and work are accepted."""
        with pytest.raises(ValidationError):
            GetCalendarEventsInput(entity_type="school")

    def test_update_requires_event_id(self):
        """Test that update needs an event id."""
        with pytest.raises(ValidationError):
            UpdateCalendarEventInput(summary="Renamed")


class TestCalendarTools:
    """Tests for calendar tool execution."""

    @pytest.mark.asyncio
    async def test_create_routes_dentist_to_family(self, registry, events):
        """Test that a dentist appointment for a kid is created on the family calendar."""
        tools = tools_for(registry, "Schedule a dentist appointment for my kid tomorrow at 3pm")

        result = await tools["create_calendar_event"].callable(
            {
                "summary": "Dentist appointment",
                "start_datetime": future_time(),
                "end_datetime": future_time(hours=1),
            }
        )

        assert result.startswith('📅 Inferred family calendar based on keywords in your message - "Smith Family"\n\n')
        assert "Event created successfully (ID: " in result
        assert "**Dentist appointment**" in result
        [created] = events.calendars[FAMILY_CALENDAR_ID].values()
        assert created.summary == "Dentist appointment"

    @pytest.mark.asyncio
    async def test_create_routes_investor_meeting_to_work(self, registry, events):
        """Test that event details steer the selection when the message is vague."""
        tools = tools_for(registry, "add this for Thursday")

        result = await tools["create_calendar_event"].callable(
            {
                "summary": "Investor meeting",
                "start_datetime": future_time(days=3),
                "end_datetime": future_time(days=3, hours=1),
                "location": "Office",
            }
        )

        assert '"Work"' in result
        assert len(events.calendars[WORK_CALENDAR_ID]) == 1
        assert FAMILY_CALENDAR_ID not in events.calendars

    @pytest.mark.asyncio
    async def test_get_lists_events_with_ids(self, registry, dentist_event):
        """Test that listed events include their ids for follow-up calls."""
        tools = tools_for(registry, "What's on my calendar?")

        result = await tools["get_calendar_events"].callable({})

        assert "Using your default family calendar" in result
        assert "Here are your next 1 calendar events:" in result
        assert f"1. **Dentist appointment** (ID: {dentist_event.id})" in result
        assert "📍 Main St Dental" in result

    @pytest.mark.asyncio
    async def test_get_empty_calendar(self, registry):
        """Test the message for a calendar with no upcoming events."""
        tools = tools_for(registry, "What's on my work calendar?")

        result = await tools["get_calendar_events"].callable({"max_results": 50})

        assert result.endswith("You have no upcoming events in your calendar.")

    @pytest.mark.asyncio
    async def test_update_changes_event(self, registry, events, dentist_event):
        """Test that update patches only the given fields."""
        tools = tools_for(registry, "Move the dentist to Suite 200")

        result = await tools["update_calendar_event"].callable(
            {"event_id": dentist_event.id, "location": "Suite 200"}
        )

        assert "Event updated successfully:" in result
        updated = events.calendars[FAMILY_CALENDAR_ID][dentist_event.id]
        assert updated.location == "Suite 200"
        assert updated.summary == "Dentist appointment"

    @pytest.mark.asyncio
    async def test_delete_reports_event_summary(self, registry, events, dentist_event):
        """Test that delete removes the event and names it in the result."""
        tools = tools_for(registry, "Cancel the dentist appointment")

        result = await tools["delete_calendar_event"].callable({"event_id": dentist_event.id})

        assert result.endswith('Event "Dentist appointment" has been deleted successfully.')
        assert dentist_event.id not in events.calendars[FAMILY_CALENDAR_ID]

    @pytest.mark.asyncio
    async def test_delete_missing_event_raises(self, registry):
        """Test that deleting an unknown event fails."""
        tools = tools_for(registry, "Cancel it")

        with pytest.raises(ToolExecutionError, match="not found"):
            await tools["delete_calendar_event"].callable({"event_id": "missing"})

    @pytest.mark.asyncio
    async def test_not_connected_raises(self, selector):
        """Test that tools refuse to run for users without calendar credentials."""
        registry = ToolsRegistry(selector, InMemoryCalendarEventService(connected_users=set()))
        tools = tools_for(registry, "What's next?")

        with pytest.raises(CalendarNotConnectedError):
            await tools["get_calendar_events"].callable({})

    @pytest.mark.asyncio
    async def test_no_mappings_raises(self, registry):
        """Test that tools surface NoCalendarConfiguredError for users without mappings."""
        tools = tools_for(registry, "What's next?", user_id="user-without-calendars")

        with pytest.raises(NoCalendarConfiguredError):
            await tools["get_calendar_events"].callable({})

    @pytest.mark.asyncio
    async def test_invalid_input_raises_validation_error(self, registry):
        """Test that the bound callable validates its input."""
        tools = tools_for(registry)

        with pytest.raises(ValidationError):
            await tools["create_calendar_event"].callable({"summary": ""})

"""Google Calendar CRUD tools."""

from datetime import datetime
from typing import Self

from pydantic import BaseModel, Field, field_validator, model_validator

from app.exceptions import CalendarNotConnectedError
from app.models.calendar import CalendarEntityType, CreateEventParams, EventTime, UpdateEventParams
from app.services.calendar_events import CalendarEventService, format_datetime, format_events_for_chat
from app.services.calendar_selector import CalendarSelector, format_calendar_selection_message
from app.tools.base import ToolContext, ToolDefinition
from app.utils.logging import get_logger

logger = get_logger(__name__)

MAX_EVENTS = 10

ENTITY_TYPE_DESCRIPTION = (
    "Optional: Which calendar to use (family, personal or work). "
    "If not provided, it will be inferred from context."
)


class EventTimesMixin(BaseModel):
    """Start/end fields shared by create and update inputs."""

    start_datetime: str | None = Field(
        None,
        description=(
            'Start date and time in ISO 8601 format (e.g., "2025-11-15T14:00:00-05:00"). '
            "For all-day events, use start_date instead."
        ),
    )
    start_date: str | None = Field(
        None,
        pattern=r"^\d{4}-\d{2}-\d{2}$",
        description='For all-day events, the start date in YYYY-MM-DD format (e.g., "2025-11-15")',
    )
    end_datetime: str | None = Field(
        None,
        description="End date and time in ISO 8601 format. For all-day events, use end_date instead.",
    )
    end_date: str | None = Field(
        None,
        pattern=r"^\d{4}-\d{2}-\d{2}$",
        description="For all-day events, the end date in YYYY-MM-DD format",
    )

    @field_validator("start_datetime", "end_datetime")
    @classmethod
    def validate_iso_datetime(cls, v: str | None) -> str | None:
        """Validate ISO 8601 date-times."""
        if v is None:
            return v
        try:
            datetime.fromisoformat(v)
        except ValueError as e:
            raise ValueError(f"'{v}' is not a valid ISO 8601 date-time (e.g., 2025-11-15T14:00:00-05:00)") from e
        return v

    def start_time(self) -> EventTime | None:
        if self.start_datetime:
            return EventTime(date_time=self.start_datetime)
        if self.start_date:
            return EventTime(date=self.start_date)
        return None

    def end_time(self) -> EventTime | None:
        if self.end_datetime:
            return EventTime(date_time=self.end_datetime)
        if self.end_date:
            return EventTime(date=self.end_date)
        return None


class GetCalendarEventsInput(BaseModel):
    """Input schema for listing upcoming events."""

    max_results: int = Field(5, ge=1, description=f"Maximum number of events to retrieve (default: 5, max: {MAX_EVENTS})")
    entity_type: CalendarEntityType | None = Field(None, description=ENTITY_TYPE_DESCRIPTION)


class CreateCalendarEventInput(EventTimesMixin):
    """Input schema for creating an event."""

    summary: str = Field(..., min_length=1, max_length=500, description="Event title/summary (required)")
    description: str | None = Field(None, description="Optional event description or notes")
    location: str | None = Field(None, description="Optional event location")
    attendees: list[str] | None = Field(None, description="Optional list of attendee email addresses")
    entity_type: CalendarEntityType | None = Field(
        None,
        description=(
            "Optional: Specific calendar to create the event on. If not provided, it will be inferred "
            'from the event context (e.g., "dentist" -> family, "investor meeting" -> work).'
        ),
    )

    @model_validator(mode="after")
    def validate_times(self) -> Self:
        """Require both a start and an end."""
        if not (self.start_datetime or self.start_date):
            raise ValueError("Event must have a start time (start_datetime or start_date)")
        if not (self.end_datetime or self.end_date):
            raise ValueError("Event must have an end time (end_datetime or end_date)")
        return self


class UpdateCalendarEventInput(EventTimesMixin):
    """Input schema for updating an event."""

    event_id: str = Field(
        ..., min_length=1, description="The event ID to update (required). Get this from get_calendar_events first."
    )
    summary: str | None = Field(None, description="New event title/summary")
    description: str | None = Field(None, description="New event description")
    location: str | None = Field(None, description="New event location")
    attendees: list[str] | None = Field(None, description="New list of attendee email addresses")
    entity_type: CalendarEntityType | None = Field(None, description=ENTITY_TYPE_DESCRIPTION)


class DeleteCalendarEventInput(BaseModel):
    """Input schema for deleting an event."""

    event_id: str = Field(
        ..., min_length=1, description="The event ID to delete (required). Get this from get_calendar_events first."
    )
    entity_type: CalendarEntityType | None = Field(None, description=ENTITY_TYPE_DESCRIPTION)


def selection_context(context: ToolContext, *parts: str | None) -> str:
    """Text the calendar selector reasons over: the user's message plus any event details."""
    return " ".join(part for part in (context.user_message, *parts) if part)


async def _ensure_connected(events: CalendarEventService, user_id: str) -> None:
    if not await events.is_connected(user_id):
        raise CalendarNotConnectedError(user_id)


def _describe_event(summary: str, start: EventTime, location: str | None, html_link: str) -> str:
    lines = [f"**{summary}**"]
    if start.value:
        lines.append(f"📅 {format_datetime(start.value)}")
    if location:
        lines.append(f"📍 {location}")
    if html_link:
        lines.append(f"🔗 {html_link}")
    return "\n".join(lines)


def create_get_calendar_events_tool(selector: CalendarSelector, events: CalendarEventService) -> ToolDefinition:
    async def get_calendar_events_handler(params: GetCalendarEventsInput, context: ToolContext) -> str:
        await _ensure_connected(events, context.user_id)
        selection = await selector.select_calendar(
            context.user_id, selection_context(context), params.entity_type
        )
        upcoming = await events.get_upcoming_events(
            context.user_id, selection.calendar_id, min(params.max_results, MAX_EVENTS)
        )
        return f"{format_calendar_selection_message(selection)}\n\n{format_events_for_chat(upcoming)}"

    return ToolDefinition(
        name="get_calendar_events",
        description=(
            "Retrieves upcoming events from the user's Google Calendar. Use this when the user asks about "
            "their schedule, upcoming events, meetings, or appointments. The system will automatically select "
            "the appropriate calendar based on context (family, personal, or work)."
        ),
        input_schema_class=GetCalendarEventsInput,
        handler=get_calendar_events_handler,
    )


def create_create_calendar_event_tool(selector: CalendarSelector, events: CalendarEventService) -> ToolDefinition:
    async def create_calendar_event_handler(params: CreateCalendarEventInput, context: ToolContext) -> str:
        await _ensure_connected(events, context.user_id)
        selection = await selector.select_calendar(
            context.user_id,
            selection_context(context, params.summary, params.description, params.location),
            params.entity_type,
        )

        start, end = params.start_time(), params.end_time()
        if start is None or end is None:
            raise ValueError("Event must have a start and an end time")
        created = await events.create_event(
            context.user_id,
            selection.calendar_id,
            CreateEventParams(
                summary=params.summary,
                start=start,
                end=end,
                description=params.description,
                location=params.location,
                attendees=params.attendees or [],
            ),
        )

        return (
            f"{format_calendar_selection_message(selection)}\n\n"
            f"Event created successfully (ID: {created.id}):\n\n"
            f"{_describe_event(created.summary, created.start, created.location, created.html_link)}"
        )

    return ToolDefinition(
        name="create_calendar_event",
        description=(
            "Creates a new event on the user's Google Calendar. Use this when the user wants to add, schedule, "
            "or create an appointment, meeting, or reminder. The system will automatically select the appropriate "
            "calendar (family, personal, or work) based on the event context."
        ),
        input_schema_class=CreateCalendarEventInput,
        handler=create_calendar_event_handler,
    )


def create_update_calendar_event_tool(selector: CalendarSelector, events: CalendarEventService) -> ToolDefinition:
    async def update_calendar_event_handler(params: UpdateCalendarEventInput, context: ToolContext) -> str:
        await _ensure_connected(events, context.user_id)
        selection = await selector.select_calendar(
            context.user_id,
            selection_context(context, params.summary, params.description, params.location),
            params.entity_type,
        )

        updated = await events.update_event(
            context.user_id,
            selection.calendar_id,
            UpdateEventParams(
                event_id=params.event_id,
                summary=params.summary,
                start=params.start_time(),
                end=params.end_time(),
                description=params.description,
                location=params.location,
                attendees=params.attendees,
            ),
        )

        return (
            f"{format_calendar_selection_message(selection)}\n\n"
            f"Event updated successfully:\n\n"
            f"{_describe_event(updated.summary, updated.start, updated.location, updated.html_link)}"
        )

    return ToolDefinition(
        name="update_calendar_event",
        description=(
            "Updates an existing event on the user's Google Calendar. Use this when the user wants to reschedule, "
            "modify, or change details of an existing event. You must first retrieve the event to get its ID."
        ),
        input_schema_class=UpdateCalendarEventInput,
        handler=update_calendar_event_handler,
    )


def create_delete_calendar_event_tool(selector: CalendarSelector, events: CalendarEventService) -> ToolDefinition:
    async def delete_calendar_event_handler(params: DeleteCalendarEventInput, context: ToolContext) -> str:
        await _ensure_connected(events, context.user_id)
        selection = await selector.select_calendar(context.user_id, selection_context(context), params.entity_type)

        # Best effort: the summary only makes the confirmation friendlier
        event_summary = "Event"
        try:
            event = await events.get_event(context.user_id, selection.calendar_id, params.event_id)
            event_summary = event.summary
        except Exception as e:
            logger.warning(f"Could not fetch event {params.event_id} before deletion: {e}")

        await events.delete_event(context.user_id, selection.calendar_id, params.event_id)

        return (
            f"{format_calendar_selection_message(selection)}\n\n"
            f'Event "{event_summary}" has been deleted successfully.'
        )

    return ToolDefinition(
        name="delete_calendar_event",
        description=(
            "Deletes an event from the user's Google Calendar. Use this when the user wants to cancel, remove, "
            "or delete an event. You must first retrieve the event to get its ID. Always confirm the event "
            "details with the user before deleting."
        ),
        input_schema_class=DeleteCalendarEventInput,
        handler=delete_calendar_event_handler,
        needs_approval=True,
    )

"""Calendar API interface, in-memory implementation and chat formatting."""

from dataclasses import replace
from datetime import UTC, datetime
from typing import Protocol

from cuid2 import cuid_wrapper

from app.exceptions import ToolExecutionError
from app.models.calendar import (
    Attendee,
    CalendarEvent,
    CreateEventParams,
    EventTime,
    UpdateEventParams,
)
from app.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


class CalendarEventService(Protocol):
    """Interface for calendar CRUD against a specific calendar id."""

    async def is_connected(self, user_id: str) -> bool:
        """Whether the user has usable calendar credentials."""
        ...

    async def get_upcoming_events(self, user_id: str, calendar_id: str, max_results: int = 5) -> list[CalendarEvent]:
        """List the next events on a calendar, soonest first."""
        ...

    async def create_event(self, user_id: str, calendar_id: str, params: CreateEventParams) -> CalendarEvent:
        """Create an event and return it."""
        ...

    async def update_event(self, user_id: str, calendar_id: str, params: UpdateEventParams) -> CalendarEvent:
        """Patch an existing event and return the updated version."""
        ...

    async def delete_event(self, user_id: str, calendar_id: str, event_id: str) -> None:
        """Delete an event."""
        ...

    async def get_event(self, user_id: str, calendar_id: str, event_id: str) -> CalendarEvent:
        """Fetch a single event."""
        ...


class InMemoryCalendarEventService:
    """In-memory calendar backend for development and tests.

    Events are stored per calendar id. Every user is considered connected
    unless ``connected_users`` is given.
    """

    def __init__(self, connected_users: set[str] | None = None):
        self.calendars: dict[str, dict[str, CalendarEvent]] = {}
        self.connected_users = connected_users

    async def is_connected(self, user_id: str) -> bool:
        return self.connected_users is None or user_id in self.connected_users

    async def get_upcoming_events(self, user_id: str, calendar_id: str, max_results: int = 5) -> list[CalendarEvent]:
        now = datetime.now(UTC)
        events = [event for event in self.calendars.get(calendar_id, {}).values() if _event_end(event) >= now]
        events.sort(key=_event_start)
        return events[:max_results]

    async def create_event(self, user_id: str, calendar_id: str, params: CreateEventParams) -> CalendarEvent:
        event_id = cuid()
        event = CalendarEvent(
            id=event_id,
            summary=params.summary,
            description=params.description,
            start=params.start,
            end=params.end,
            location=params.location,
            attendees=[Attendee(email=email) for email in params.attendees],
            html_link=f"https://calendar.google.com/calendar/event?eid={event_id}",
            status="confirmed",
        )
        self.calendars.setdefault(calendar_id, {})[event_id] = event
        logger.info(f"Created event {event_id} on calendar {calendar_id} for user {user_id}")
        return event

    async def update_event(self, user_id: str, calendar_id: str, params: UpdateEventParams) -> CalendarEvent:
        event = self._find(calendar_id, params.event_id)
        changes = {
            name: value
            for name, value in (
                ("summary", params.summary),
                ("description", params.description),
                ("location", params.location),
                ("start", params.start),
                ("end", params.end),
            )
            if value
        }
        if params.attendees is not None:
            changes["attendees"] = [Attendee(email=email) for email in params.attendees]
        updated = replace(event, **changes)
        self.calendars[calendar_id][event.id] = updated
        logger.info(f"Updated event {event.id} on calendar {calendar_id} for user {user_id}")
        return updated

    async def delete_event(self, user_id: str, calendar_id: str, event_id: str) -> None:
        self._find(calendar_id, event_id)
        del self.calendars[calendar_id][event_id]
        logger.info(f"Deleted event {event_id} from calendar {calendar_id} for user {user_id}")

    async def get_event(self, user_id: str, calendar_id: str, event_id: str) -> CalendarEvent:
        return self._find(calendar_id, event_id)

    def _find(self, calendar_id: str, event_id: str) -> CalendarEvent:
        event = self.calendars.get(calendar_id, {}).get(event_id)
        if event is None:
            raise ToolExecutionError(f"Event {event_id} not found on calendar {calendar_id}")
        return event


def parse_event_time(time: EventTime) -> datetime:
    """Parse an event boundary into an aware datetime (all-day events start at midnight UTC)."""
    value = time.value
    if not value:
        return datetime.max.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _event_start(event: CalendarEvent) -> datetime:
    return parse_event_time(event.start)


def _event_end(event: CalendarEvent) -> datetime:
    return parse_event_time(event.end if event.end.value else event.start)


def format_datetime(value: str) -> str:
    """Format an ISO date or datetime for display."""
    parsed = datetime.fromisoformat(value)
    if len(value) == 10:
        return parsed.strftime("%a, %b %d, %Y")
    return parsed.strftime("%a, %b %d, %Y, %I:%M %p")


def format_events_for_chat(events: list[CalendarEvent]) -> str:
    """Render events as a numbered list for the model and the user."""
    if not events:
        return "You have no upcoming events in your calendar."

    result = f"Here are your next {len(events)} calendar events:\n\n"
    for index, event in enumerate(events, start=1):
        start, end = event.start.value, event.end.value
        result += f"{index}. **{event.summary}** (ID: {event.id})\n"
        if start:
            result += f"   📅 {format_datetime(start)}"
            if end and end != start:
                result += f" - {format_datetime(end)}"
            result += "\n"
        if event.location:
            result += f"   📍 {event.location}\n"
        if event.description:
            short = event.description if len(event.description) <= 100 else event.description[:100] + "..."
            result += f"   📝 {short}\n"
        if event.attendees:
            result += f"   👥 {len(event.attendees)} attendee(s)\n"
        result += "\n"

    return result.strip()

"""Calendar data models."""

from dataclasses import dataclass, field
from typing import Any, Literal

CalendarEntityType = Literal["family", "personal", "work"]


@dataclass
class CalendarMapping:
    """A user's calendar mapped to a semantic category."""

    user_id: str
    google_calendar_id: str
    calendar_name: str
    entity_type: CalendarEntityType
    is_default: bool = False
    time_zone: str | None = None


@dataclass
class CalendarSelection:
    """Which calendar an operation targets, and why."""

    calendar_id: str
    entity_type: CalendarEntityType
    calendar_name: str
    reason: str

    @classmethod
    def from_mapping(cls, mapping: CalendarMapping, reason: str) -> "CalendarSelection":
        return cls(
            calendar_id=mapping.google_calendar_id,
            entity_type=mapping.entity_type,
            calendar_name=mapping.calendar_name,
            reason=reason,
        )


@dataclass
class EventTime:
    """Start or end of an event. All-day events carry ``date``, timed events ``date_time``."""

    date_time: str | None = None
    date: str | None = None
    time_zone: str | None = None

    @property
    def value(self) -> str | None:
        return self.date_time or self.date

    def to_google(self) -> dict[str, str]:
        body = {}
        if self.date_time:
            body["dateTime"] = self.date_time
        if self.date:
            body["date"] = self.date
        if self.time_zone:
            body["timeZone"] = self.time_zone
        return body

    @classmethod
    def from_google(cls, data: dict[str, Any] | None) -> "EventTime":
        data = data or {}
        return cls(date_time=data.get("dateTime"), date=data.get("date"), time_zone=data.get("timeZone"))


@dataclass
class Attendee:
    """Event attendee."""

    email: str
    display_name: str | None = None
    response_status: str | None = None


@dataclass
class CalendarEvent:
    """Normalized calendar event."""

    id: str
    summary: str
    start: EventTime
    end: EventTime
    html_link: str
    status: str = "confirmed"
    description: str | None = None
    location: str | None = None
    attendees: list[Attendee] = field(default_factory=list)

    @classmethod
    def from_google(cls, data: dict[str, Any]) -> "CalendarEvent":
        """Build an event from a Google Calendar API resource."""
        return cls(
            id=data["id"],
            summary=data.get("summary") or "No title",
            description=data.get("description"),
            start=EventTime.from_google(data.get("start")),
            end=EventTime.from_google(data.get("end")),
            location=data.get("location"),
            attendees=[
                Attendee(
                    email=attendee.get("email", ""),
                    display_name=attendee.get("displayName"),
                    response_status=attendee.get("responseStatus"),
                )
                for attendee in data.get("attendees", [])
            ],
            html_link=data.get("htmlLink", ""),
            status=data.get("status", "confirmed"),
        )


@dataclass
class CreateEventParams:
    """Parameters for creating an event."""

    summary: str
    start: EventTime
    end: EventTime
    description: str | None = None
    location: str | None = None
    attendees: list[str] = field(default_factory=list)

    def to_google(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": self.summary,
            "start": self.start.to_google(),
            "end": self.end.to_google(),
        }
        if self.description:
            body["description"] = self.description
        if self.location:
            body["location"] = self.location
        if self.attendees:
            body["attendees"] = [{"email": email} for email in self.attendees]
        return body


@dataclass
class UpdateEventParams:
    """Partial update for an existing event. ``None`` fields are left unchanged."""

    event_id: str
    summary: str | None = None
    start: EventTime | None = None
    end: EventTime | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] | None = None

    def to_google(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.summary:
            body["summary"] = self.summary
        if self.description:
            body["description"] = self.description
        if self.location:
            body["location"] = self.location
        if self.start:
            body["start"] = self.start.to_google()
        if self.end:
            body["end"] = self.end.to_google()
        if self.attendees is not None:
            body["attendees"] = [{"email": email} for email in self.attendees]
        return body

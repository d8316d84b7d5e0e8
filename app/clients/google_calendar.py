"""Google Calendar API client implementing CalendarEventService."""

import asyncio
import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.exceptions import CalendarNotConnectedError, ToolExecutionError
from app.models.calendar import CalendarEvent, CreateEventParams, UpdateEventParams
from app.utils.logging import get_logger

logger = get_logger(__name__)

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]

CredentialsProvider = Callable[[str], Credentials | None]


def file_credentials_provider(credentials_dir: str | os.PathLike[str]) -> CredentialsProvider:
    """Load authorized-user credentials from ``<credentials_dir>/<user_id>.json``."""
    directory = Path(credentials_dir)

    def load(user_id: str) -> Credentials | None:
        path = directory / f"{user_id}.json"
        if not path.exists():
            return None
        return Credentials.from_authorized_user_file(str(path), CALENDAR_SCOPES)

    return load


class GoogleCalendarClient:
    """Calendar CRUD against the Google Calendar v3 API.

    The discovery client is synchronous, so each request runs in a worker
    thread. API failures are raised as ToolExecutionError so the agent loop
    reports them to the model instead of aborting the turn.
    """

    def __init__(self, credentials_provider: CredentialsProvider):
        self.credentials_provider = credentials_provider

    async def is_connected(self, user_id: str) -> bool:
        credentials = self.credentials_provider(user_id)
        return credentials is not None and (credentials.valid or bool(credentials.refresh_token))

    async def get_upcoming_events(self, user_id: str, calendar_id: str, max_results: int = 5) -> list[CalendarEvent]:
        time_min = datetime.now(UTC).isoformat()
        response = await self._execute(
            user_id,
            lambda service: service.events().list(
                calendarId=calendar_id,
                timeMin=time_min,
                maxResults=max_results,
                singleEvents=True,
                orderBy="startTime",
            ),
        )
        events = [CalendarEvent.from_google(item) for item in response.get("items", [])]
        logger.info(f"Fetched {len(events)} upcoming events from calendar {calendar_id} for user {user_id}")
        return events

    async def create_event(self, user_id: str, calendar_id: str, params: CreateEventParams) -> CalendarEvent:
        response = await self._execute(
            user_id,
            lambda service: service.events().insert(calendarId=calendar_id, body=params.to_google()),
        )
        logger.info(f"Created event {response.get('id')} on calendar {calendar_id} for user {user_id}")
        return CalendarEvent.from_google(response)

    async def update_event(self, user_id: str, calendar_id: str, params: UpdateEventParams) -> CalendarEvent:
        response = await self._execute(
            user_id,
            lambda service: service.events().patch(
                calendarId=calendar_id, eventId=params.event_id, body=params.to_google()
            ),
        )
        logger.info(f"Updated event {params.event_id} on calendar {calendar_id} for user {user_id}")
        return CalendarEvent.from_google(response)

    async def delete_event(self, user_id: str, calendar_id: str, event_id: str) -> None:
        await self._execute(
            user_id,
            lambda service: service.events().delete(calendarId=calendar_id, eventId=event_id),
        )
        logger.info(f"Deleted event {event_id} from calendar {calendar_id} for user {user_id}")

    async def get_event(self, user_id: str, calendar_id: str, event_id: str) -> CalendarEvent:
        response = await self._execute(
            user_id,
            lambda service: service.events().get(calendarId=calendar_id, eventId=event_id),
        )
        return CalendarEvent.from_google(response)

    def _build_service(self, user_id: str) -> Any:
        credentials = self.credentials_provider(user_id)
        if credentials is None:
            raise CalendarNotConnectedError(user_id)
        return build("calendar", "v3", credentials=credentials, cache_discovery=False)

    async def _execute(self, user_id: str, make_request: Callable[[Any], Any]) -> dict[str, Any]:
        def run() -> dict[str, Any]:
            service = self._build_service(user_id)
            return make_request(service).execute() or {}

        try:
            return await asyncio.to_thread(run)
        except HttpError as e:
            status = e.resp.status if e.resp is not None else "unknown"
            logger.error(f"Google Calendar API error for user {user_id}: {status} {e.reason}")
            if status == 404:
                raise ToolExecutionError("Event not found. It may have been deleted already.") from e
            raise ToolExecutionError(f"Google Calendar API error ({status}): {e.reason}") from e
        except RefreshError as e:
            logger.error(f"Google credentials for user {user_id} could not be refreshed: {e}")
            raise CalendarNotConnectedError(user_id) from e

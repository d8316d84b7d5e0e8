"""Calendar mapping repository interface and implementations."""

from typing import Protocol

from app.models.calendar import CalendarEntityType, CalendarMapping

DEMO_USER_ID = "demo-user"

_ENTITY_ORDER: dict[str, int] = {"family": 1, "personal": 2, "work": 3}


class CalendarMappingRepository(Protocol):
    """Interface for looking up a user's calendar mappings."""

    async def find_mapping_by_entity_type(
        self, user_id: str, entity_type: CalendarEntityType
    ) -> CalendarMapping | None:
        """Find the user's calendar for a category.

        Args:
            user_id: The user's unique identifier
            entity_type: family, personal or work

        Returns:
            The mapping, or None if the category is not configured
        """
        ...

    async def find_default_mapping(self, user_id: str) -> CalendarMapping | None:
        """Find the mapping flagged as the user's default."""
        ...

    async def find_mappings_by_user_id(self, user_id: str) -> list[CalendarMapping]:
        """List all of the user's mappings: default first, then family, personal, work."""
        ...

    async def save_mapping(self, mapping: CalendarMapping) -> CalendarMapping:
        """Create or replace the user's mapping for ``mapping.entity_type``."""
        ...


class InMemoryCalendarMappingRepository:
    """In-memory calendar mapping repository.

    One mapping per (user, entity type); at most one default per user.
    """

    def __init__(self, seed_demo: bool = False):
        """Initialize the repository, optionally with a demo user's mappings."""
        self._mappings: dict[str, dict[str, CalendarMapping]] = {}
        if seed_demo:
            for mapping in self._create_demo_mappings():
                self._store(mapping)

    async def find_mapping_by_entity_type(
        self, user_id: str, entity_type: CalendarEntityType
    ) -> CalendarMapping | None:
        """Find the user's calendar for a category."""
        return self._mappings.get(user_id, {}).get(entity_type)

    async def find_default_mapping(self, user_id: str) -> CalendarMapping | None:
        """Find the user's default calendar."""
        for mapping in self._mappings.get(user_id, {}).values():
            if mapping.is_default:
                return mapping
        return None

    async def find_mappings_by_user_id(self, user_id: str) -> list[CalendarMapping]:
        """List all of the user's mappings."""
        mappings = list(self._mappings.get(user_id, {}).values())
        return sorted(mappings, key=lambda m: (0 if m.is_default else _ENTITY_ORDER[m.entity_type]))

    async def save_mapping(self, mapping: CalendarMapping) -> CalendarMapping:
        """Create or replace a mapping."""
        self._store(mapping)
        return mapping

    def _store(self, mapping: CalendarMapping) -> None:
        user_mappings = self._mappings.setdefault(mapping.user_id, {})
        if mapping.is_default:
            for existing in user_mappings.values():
                existing.is_default = False
        user_mappings[mapping.entity_type] = mapping

    def _create_demo_mappings(self) -> list[CalendarMapping]:
        """Create demo mappings for local development."""
        return [
            CalendarMapping(
                user_id=DEMO_USER_ID,
                google_calendar_id="family-calendar@group.calendar.google.com",
                calendar_name="Family",
                entity_type="family",
                is_default=True,
                time_zone="America/New_York",
            ),
            CalendarMapping(
                user_id=DEMO_USER_ID,
                google_calendar_id="primary",
                calendar_name="Work",
                entity_type="work",
                time_zone="America/New_York",
            ),
            CalendarMapping(
                user_id=DEMO_USER_ID,
                google_calendar_id="personal-calendar@group.calendar.google.com",
                calendar_name="Personal",
                entity_type="personal",
            ),
        ]

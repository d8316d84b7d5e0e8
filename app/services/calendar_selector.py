"""Calendar selection service.

Chooses which of a user's calendars (family, personal, work) an operation
targets. Resolution order, first match wins:

1. An entity type passed explicitly by the caller (e.g. the model's tool input)
2. An explicit mention in the text ("add this to my work calendar")
3. Keyword inference ("investor meeting" -> work, "dentist" -> family)
4. The user's default calendar
5. The family calendar
6. Whatever calendar the user has configured first

Every decision is logged with its reasoning, and the reason string is shown
to the user alongside the tool result so misrouting can be corrected.
"""

import logging
import re

from app.exceptions import NoCalendarConfiguredError
from app.models.calendar import CalendarEntityType, CalendarMapping, CalendarSelection
from app.services.calendar_mappings import CalendarMappingRepository
from app.utils.logging import get_logger

ENTITY_TYPE_KEYWORDS: dict[CalendarEntityType, list[str]] = {
    "work": [
        "work", "office", "meeting", "client", "investor", "business", "conference",
        "team", "colleague", "coworker", "project", "deadline", "presentation",
        "call", "standup", "sprint", "review", "interview", "professional",
        "manager", "boss", "employee", "corporation", "company", "board",
    ],
    "personal": [
        "personal", "private", "hobby", "gym", "workout", "exercise", "friend",
        "coffee", "lunch", "dinner", "movie", "book", "study", "learn",
        "volunteer", "appointment", "errand", "shop", "grocery",
    ],
    "family": [
        "family", "kids", "children", "spouse", "parent", "mom", "dad",
        "school", "pickup", "drop-off", "homework", "soccer", "practice",
        "recital", "play", "birthday", "anniversary", "vacation", "trip",
        "dentist", "doctor", "pediatrician", "daycare", "babysitter",
        "home", "house", "household", "chore",
    ],
}  # fmt: skip

# Tie-break order for keyword scores
ENTITY_TYPE_PRIORITY: tuple[CalendarEntityType, ...] = ("family", "work", "personal")

EXPLICIT_PATTERNS: list[tuple[re.Pattern[str], CalendarEntityType]] = [
    (re.compile(r"\b(on|to|in)\s+(my\s+)?(work|office|business)\s+calendar\b", re.IGNORECASE), "work"),
    (re.compile(r"\b(on|to|in)\s+(my\s+)?personal\s+calendar\b", re.IGNORECASE), "personal"),
    (re.compile(r"\b(on|to|in)\s+(my\s+)?family\s+calendar\b", re.IGNORECASE), "family"),
    (re.compile(r"\bwork\s+calendar\b", re.IGNORECASE), "work"),
    (re.compile(r"\bpersonal\s+calendar\b", re.IGNORECASE), "personal"),
    (re.compile(r"\bfamily\s+calendar\b", re.IGNORECASE), "family"),
]

_KEYWORD_PATTERNS: dict[CalendarEntityType, list[re.Pattern[str]]] = {
    entity_type: [re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE) for keyword in keywords]
    for entity_type, keywords in ENTITY_TYPE_KEYWORDS.items()
}


def detect_explicit_calendar(text: str) -> CalendarEntityType | None:
    """Detect an explicit calendar mention such as "add to my work calendar"."""
    for pattern, entity_type in EXPLICIT_PATTERNS:
        if pattern.search(text):
            return entity_type
    return None


def score_keywords(text: str) -> dict[CalendarEntityType, int]:
    """Count distinct whole-word keyword matches per entity type."""
    return {
        entity_type: sum(1 for pattern in patterns if pattern.search(text))
        for entity_type, patterns in _KEYWORD_PATTERNS.items()
    }


def infer_entity_type(text: str) -> CalendarEntityType | None:
    """Infer the entity type with the most keyword matches.

    Returns None when nothing matches. Ties go to family, then work, then personal.
    """
    scores = score_keywords(text)
    max_score = max(scores.values())
    if max_score == 0:
        return None

    for entity_type in ENTITY_TYPE_PRIORITY:
        if scores[entity_type] == max_score:
            return entity_type

    return None


def format_calendar_selection_message(selection: CalendarSelection) -> str:
    """Get a user-friendly line about which calendar was selected."""
    return f'📅 {selection.reason} - "{selection.calendar_name}"'


class CalendarSelector:
    """Resolves the target calendar for a calendar operation."""

    def __init__(self, repository: CalendarMappingRepository, logger: logging.Logger | None = None):
        """Initialize the selector.

        Args:
            repository: Source of the user's calendar mappings
            logger: Receives the selection reasoning (defaults to the module logger)
        """
        self.repository = repository
        self.logger = logger or get_logger(__name__)

    async def select_calendar(
        self,
        user_id: str,
        text: str,
        explicit_entity_type: CalendarEntityType | None = None,
    ) -> CalendarSelection:
        """Select the calendar for an operation.

        Args:
            user_id: The user's unique identifier
            text: Free text context (the user's message and/or event details)
            explicit_entity_type: Category supplied by the caller, if any

        Returns:
            The selected calendar with a human-readable reason

        Raises:
            NoCalendarConfiguredError: If the user has no calendar mappings at all
        """
        self.logger.info(
            f"Selecting calendar for user {user_id}; explicit entity type: {explicit_entity_type or 'none'}"
        )
        self.logger.debug(f"Selection context: {text!r}")

        if explicit_entity_type:
            mapping = await self.repository.find_mapping_by_entity_type(user_id, explicit_entity_type)
            if mapping:
                return self._selected(mapping, f"Explicitly specified {explicit_entity_type} calendar")
            self.logger.warning(f"Explicit entity type {explicit_entity_type} has no mapping for user {user_id}")

        mentioned = detect_explicit_calendar(text)
        if mentioned:
            mapping = await self.repository.find_mapping_by_entity_type(user_id, mentioned)
            if mapping:
                return self._selected(mapping, f'You explicitly mentioned "{mentioned} calendar" in your message')
            self.logger.warning(f"User mentioned {mentioned} calendar but no mapping exists")

        inferred = infer_entity_type(text)
        if inferred:
            self.logger.info(f"Keyword scores: {score_keywords(text)}; inferred {inferred}")
            mapping = await self.repository.find_mapping_by_entity_type(user_id, inferred)
            if mapping:
                return self._selected(mapping, f"Inferred {inferred} calendar based on keywords in your message")
            self.logger.warning(f"Inferred {inferred} but no mapping exists, falling back to default")

        default_mapping = await self.repository.find_default_mapping(user_id)
        if default_mapping:
            return self._selected(default_mapping, f"Using your default {default_mapping.entity_type} calendar")

        family_mapping = await self.repository.find_mapping_by_entity_type(user_id, "family")
        if family_mapping:
            return self._selected(family_mapping, "Using family calendar (default for ambiguous requests)")

        mappings = await self.repository.find_mappings_by_user_id(user_id)
        if mappings:
            first = mappings[0]
            return self._selected(first, f"Using your {first.entity_type} calendar (first available)")

        self.logger.error(f"No calendar mappings found for user {user_id}")
        raise NoCalendarConfiguredError(user_id)

    async def get_user_calendars(self, user_id: str) -> list[CalendarMapping]:
        """Get all configured calendars for a user."""
        mappings = await self.repository.find_mappings_by_user_id(user_id)
        self.logger.info(f"Found {len(mappings)} calendar mappings for user {user_id}")
        return mappings

    async def validate_calendar_access(self, user_id: str, google_calendar_id: str) -> bool:
        """Check that a calendar id belongs to one of the user's mappings."""
        mappings = await self.repository.find_mappings_by_user_id(user_id)
        has_access = any(m.google_calendar_id == google_calendar_id for m in mappings)
        self.logger.info(f"Calendar {google_calendar_id} access for user {user_id}: {has_access}")
        return has_access

    def _selected(self, mapping: CalendarMapping, reason: str) -> CalendarSelection:
        self.logger.info(f"Selected {mapping.calendar_name} ({mapping.entity_type}): {reason}")
        return CalendarSelection.from_mapping(mapping, reason)

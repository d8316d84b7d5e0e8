"""Service wiring for the API."""

import os
from dataclasses import dataclass

from app.clients.google_calendar import GoogleCalendarClient, file_credentials_provider
from app.services.approvals import ApprovalRegistry
from app.services.calendar_events import CalendarEventService, InMemoryCalendarEventService
from app.services.calendar_mappings import InMemoryCalendarMappingRepository
from app.services.calendar_selector import CalendarSelector
from app.services.conversation import ConversationService
from app.services.conversation_store import InMemoryConversationStore
from app.services.llm import AgentConfig, get_model_provider
from app.tools.registry import ToolsRegistry
from app.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Services:
    """Process-wide service instances."""

    selector: CalendarSelector
    approvals: ApprovalRegistry
    conversations: ConversationService


def create_calendar_event_service() -> CalendarEventService:
    """Use Google Calendar when GOOGLE_CREDENTIALS_DIR is set, otherwise the in-memory calendar."""
    credentials_dir = os.getenv("GOOGLE_CREDENTIALS_DIR")
    if credentials_dir:
        logger.info(f"Using Google Calendar with credentials from {credentials_dir}")
        return GoogleCalendarClient(file_credentials_provider(credentials_dir))
    logger.info("GOOGLE_CREDENTIALS_DIR not set, using in-memory calendar")
    return InMemoryCalendarEventService()


def create_services() -> Services:
    """Build the service graph from the environment."""
    repository = InMemoryCalendarMappingRepository(seed_demo=True)
    selector = CalendarSelector(repository)
    registry = ToolsRegistry(selector, create_calendar_event_service())
    approvals = ApprovalRegistry()
    conversations = ConversationService(
        store=InMemoryConversationStore(),
        registry=registry,
        selector=selector,
        approvals=approvals,
        provider_factory=get_model_provider,
        config=AgentConfig.from_env(),
    )
    return Services(selector=selector, approvals=approvals, conversations=conversations)


_services: Services | None = None


def get_services() -> Services:
    """Get or create the service instances."""
    global _services
    if _services is None:
        _services = create_services()
    return _services


def get_conversation_service() -> ConversationService:
    return get_services().conversations


def get_approval_registry() -> ApprovalRegistry:
    return get_services().approvals


def get_calendar_selector() -> CalendarSelector:
    return get_services().selector

"""API request and response models."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.models.calendar import CalendarEntityType
from app.models.llm import ImageSource

ProviderName = Literal["anthropic", "openai", "langchain"]


class ChatRequest(BaseModel):
    """Request model for the chat endpoint."""

    message: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    conversation_id: str | None = None
    provider: ProviderName | None = None
    images: list[ImageSource] = Field(default_factory=list)


class ApprovalDecisionRequest(BaseModel):
    """Approve or reject a pending tool call."""

    approved: bool


class ApprovalDecisionResponse(BaseModel):
    """Response model for approval decisions."""

    approval_id: str
    outcome: str


class CalendarMappingResponse(BaseModel):
    """A configured calendar as shown to the UI."""

    google_calendar_id: str
    calendar_name: str
    entity_type: CalendarEntityType
    is_default: bool
    time_zone: str | None = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str

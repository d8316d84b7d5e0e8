"""Error kinds raised by the assistant core."""


class AssistantError(Exception):
    """Base class for assistant errors."""


class NoCalendarConfiguredError(AssistantError):
    """The user has no calendar mappings at all."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(
            "You haven't configured any calendars yet. "
            "Please connect your Google Calendar and set up calendar mappings first."
        )


class CalendarNotConnectedError(AssistantError):
    """The user's calendar account is not connected or its credentials expired."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("Google Calendar is not connected. Please connect your calendar first.")


class ToolExecutionError(AssistantError):
    """A single tool call failed.

    The agent loop converts this into an ``Error: ...`` tool result and keeps going.
    """


class ProviderError(AssistantError):
    """The model provider's streaming call failed. Stops the agent loop."""

    def __init__(self, message: str, provider: str | None = None):
        self.provider = provider
        super().__init__(message)

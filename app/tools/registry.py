"""Tools registry for managing AI assistant tools."""

from typing import Any

from app.models.llm import LLMTool, LLMToolDefinition
from app.services.calendar_events import CalendarEventService
from app.services.calendar_selector import CalendarSelector
from app.tools.base import ToolCallable, ToolContext, ToolDefinition
from app.tools.calendar_tools import (
    create_create_calendar_event_tool,
    create_delete_calendar_event_tool,
    create_get_calendar_events_tool,
    create_update_calendar_event_tool,
)


class ToolsRegistry:
    """Registry for managing AI assistant tools."""

    def __init__(self, selector: CalendarSelector, events: CalendarEventService):
        """Initialize tools registry with service dependencies."""
        self.selector = selector
        self.events = events
        self._tools: dict[str, ToolDefinition] = {}
        self._register_default_tools()

    def _register_default_tools(self) -> None:
        """Register the calendar tools."""
        tools = [
            create_get_calendar_events_tool(self.selector, self.events),
            create_create_calendar_event_tool(self.selector, self.events),
            create_update_calendar_event_tool(self.selector, self.events),
            create_delete_calendar_event_tool(self.selector, self.events),
        ]

        for tool in tools:
            self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry."""
        self._tools[tool.name] = tool

    def get_llm_tools(self, context: ToolContext) -> dict[str, LLMTool]:
        """Get LLM tools with both schemas and callables bound to the turn context."""

        def create_tool_callable(tool: ToolDefinition) -> ToolCallable:
            async def tool_callable(params: dict[str, Any]) -> str:
                parsed_params = tool.parse_input(params)
                return await tool.handler(parsed_params, context)

            return tool_callable

        return {
            name: LLMTool(
                name=tool.name,
                description=tool.description,
                input_schema=tool.get_json_schema(),
                callable=create_tool_callable(tool),
                needs_approval=tool.needs_approval,
            )
            for name, tool in self._tools.items()
        }

    def get_tool_definitions(self) -> list[LLMToolDefinition]:
        """Get provider-facing definitions for every registered tool."""
        return [
            LLMToolDefinition(name=tool.name, description=tool.description, input_schema=tool.get_json_schema())
            for tool in self._tools.values()
        ]

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools


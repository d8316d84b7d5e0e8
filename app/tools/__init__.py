"""Calendar tools for the conversational AI assistant."""

from app.tools.base import ToolContext, ToolDefinition
from app.tools.registry import ToolsRegistry

__all__ = ["ToolContext", "ToolDefinition", "ToolsRegistry"]

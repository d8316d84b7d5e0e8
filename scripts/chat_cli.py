#!/usr/bin/env python3
"""Interactive chat CLI for testing the calendar assistant."""

import json
import sys
from collections.abc import Iterator
from typing import Any

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt


def iter_sse(lines: Iterator[str]) -> Iterator[tuple[str, dict[str, Any]]]:
    """Parse a Server-Sent Events line stream into (event, data) pairs."""
    event, data_lines = "message", []
    for line in lines:
        if line == "":
            if data_lines:
                yield event, json.loads("\n".join(data_lines))
            event, data_lines = "message", []
        elif line.startswith("event:"):
            event = line[len("event:") :].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:") :].strip())


class ChatCLI:
    """Interactive chat interface for the calendar assistant."""

    def __init__(self, base_url: str = "http://localhost:8000", user_id: str = "demo-user"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.user_id = user_id
        self.conversation_id: str | None = None
        self.provider: str | None = None
        self.console = Console()
        self.client = httpx.Client(timeout=httpx.Timeout(10.0, read=120.0))

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]📅 Hearth Calendar Assistant - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with the assistant.\n"
                "Commands: /help, /calendars, /provider <name>, /clear, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]❌ Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]✅ Connected to calendar assistant[/green]\n")
        self._show_calendars()

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")
                command = user_input.strip().lower()

                if command in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif command == "/help":
                    self._show_help()
                    continue
                elif command == "/calendars":
                    self._show_calendars()
                    continue
                elif command.startswith("/provider"):
                    self.provider = user_input.split(maxsplit=1)[1].strip() if " " in user_input.strip() else None
                    self.console.print(f"[yellow]🔄 Provider: {self.provider or 'server default'}[/yellow]")
                    continue
                elif command == "/clear":
                    self.conversation_id = None
                    self.console.print("[yellow]🔄 Conversation cleared[/yellow]")
                    continue
                elif command == "":
                    continue

                self._send_message(user_input)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]👋 Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _send_message(self, message: str) -> None:
        """Send a message and render the streamed turn."""
        payload: dict[str, Any] = {"message": message, "user_id": self.user_id}
        if self.conversation_id:
            payload["conversation_id"] = self.conversation_id
        if self.provider:
            payload["provider"] = self.provider

        try:
            with self.client.stream("POST", f"{self.base_url}/chat", json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
                    return

                self.console.print("\n[bold green]🤖 Assistant[/bold green]")
                for event, data in iter_sse(response.iter_lines()):
                    self._handle_event(event, data)

        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")

    def _handle_event(self, event: str, data: dict[str, Any]) -> None:
        if event == "conversation":
            self.conversation_id = data["conversation_id"]
        elif event == "text":
            self.console.print(data["text"], end="", markup=False, highlight=False)
        elif event == "tool_use":
            self.console.print(f"\n[dim]🔧 {data['name']} {json.dumps(data['input'])}[/dim]")
        elif event == "tool_complete":
            status = "✅" if data["success"] else "❌"
            detail = data["result"] if data["success"] else data["error"]
            self.console.print(
                Panel(
                    Markdown(detail or ""),
                    title=f"{status} {data['name']} ({data['duration_ms']}ms)",
                    border_style="green" if data["success"] else "red",
                )
            )
        elif event == "tool_approval_requested":
            self._handle_approval(data)
        elif event == "done":
            usage = data.get("usage", {})
            self.console.print(
                f"\n[dim]({data['rounds']} rounds, {usage.get('input_tokens', 0)} in / "
                f"{usage.get('output_tokens', 0)} out tokens)[/dim]"
            )
        elif event == "error":
            self.console.print(f"\n[red]❌ {data['error']}[/red]")

    def _handle_approval(self, data: dict[str, Any]) -> None:
        seconds = data["timeout_ms"] / 1000
        self.console.print(
            Panel(
                f"[bold]{data['tool_name']}[/bold]\n{json.dumps(data['tool_input'], indent=2)}\n\n"
                f"[dim]Auto-rejects in {seconds:g}s[/dim]",
                title="[yellow]⚠️ Approval required[/yellow]",
                border_style="yellow",
            )
        )
        approved = Confirm.ask("Approve this action?", default=False)
        response = self.client.post(f"{self.base_url}/approvals/{data['approval_id']}", json={"approved": approved})
        if response.status_code == 404:
            self.console.print("[yellow]⏱️ Too late, the request already timed out and was rejected.[/yellow]")
        elif response.status_code != 200:
            self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")

    def _show_calendars(self) -> None:
        response = self.client.get(f"{self.base_url}/calendars/{self.user_id}")
        if response.status_code != 200:
            return

        calendars = response.json()
        if not calendars:
            self.console.print("[yellow]No calendars configured for this user.[/yellow]")
            return

        lines = [
            f"• {c['calendar_name']} ({c['entity_type']}){' [bold]default[/bold]' if c['is_default'] else ''}"
            for c in calendars
        ]
        self.console.print(
            Panel("\n".join(lines), title=f"[yellow]📋 Calendars for {self.user_id}[/yellow]", border_style="yellow")
        )

    def _show_help(self) -> None:
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /calendars - Show your calendar mappings
• /provider <anthropic|openai|langchain> - Switch model provider (no name resets it)
• /clear - Start a new conversation
• /quit or /exit - Exit the chat

[bold]Try:[/bold]
1. "What's on my calendar?"
2. "Schedule a dentist appointment for my kid tomorrow at 3pm"
3. "Add an investor meeting on my work calendar Friday at 10"
4. "Delete the dentist appointment" (asks for approval)
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    user_id = sys.argv[2] if len(sys.argv) > 2 else "demo-user"

    chat = ChatCLI(base_url, user_id)
    chat.start()


if __name__ == "__main__":
    main()

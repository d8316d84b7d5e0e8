"""Provider-agnostic agent loop with tool calling and approval gating."""

import copy
import inspect
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from app.clients.base import ModelProvider
from app.exceptions import ProviderError
from app.models.llm import (
    AgentRunResult,
    ContentBlock,
    LLMMessage,
    LLMTool,
    LLMToolDefinition,
    LLMUsage,
    RoundComplete,
    TextBlock,
    TextDelta,
    ToolCallRequest,
    ToolExecutionResult,
    ToolResultBlock,
    ToolUseBlock,
)
from app.services.approvals import (
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    ApprovalDecision,
    ApprovalGate,
    ApprovalOutcome,
    ApprovalRequest,
)
from app.tools.base import ToolContext
from app.tools.registry import ToolsRegistry
from app.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are Hearth, a helpful assistant for a busy household. You are knowledgeable, thoughtful, "
    "and aim to provide accurate and helpful responses. You can understand and analyze images when "
    "they are provided. You have access to tools that allow you to help users with their Google Calendar."
)


class AgentState(StrEnum):
    """States of a single agent loop run."""

    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class AgentConfig:
    """Configuration for the agent loop."""

    max_rounds: int = 5
    approval_timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    provider: str = "anthropic"

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Build a config from AGENT_MAX_ROUNDS, APPROVAL_TIMEOUT_SECONDS and MODEL_PROVIDER."""
        return cls(
            max_rounds=int(os.getenv("AGENT_MAX_ROUNDS", "5")),
            approval_timeout_seconds=float(os.getenv("APPROVAL_TIMEOUT_SECONDS", str(DEFAULT_APPROVAL_TIMEOUT_SECONDS))),
            provider=os.getenv("MODEL_PROVIDER", "anthropic"),
        )


Callback = Callable[..., Any]


@dataclass
class AgentCallbacks:
    """Hooks a caller receives during a run. Each may be a plain function or a coroutine function.

    Errors raised by the observer hooks are logged and ignored. A failing
    approval hook rejects the tool call.
    """

    on_text: Callback | None = None
    on_tool_use: Callback | None = None
    on_tool_complete: Callback | None = None
    on_complete: Callback | None = None
    on_error: Callback | None = None
    on_tool_approval: Callable[[str, dict[str, Any]], Awaitable[bool] | bool] | None = None


async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> Any:
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        return await result
    return result


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke an observer hook. A failing hook is logged and never ends the run."""
    try:
        await _invoke(callback, *args)
    except Exception as e:
        logger.error(f"Agent callback {getattr(callback, '__name__', callback)!r} failed: {e}", exc_info=True)


def format_validation_error(error: ValidationError) -> str:
    """Summarize a pydantic validation error for the model."""
    problems = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"]) or "input"
        problems.append(f"{location}: {detail['msg']}")
    return "Invalid tool input - " + "; ".join(problems)


@dataclass
class _Run:
    history: list[LLMMessage]
    state: AgentState = AgentState.STREAMING
    rounds: int = 0
    text_parts: list[str] = field(default_factory=list)
    usage: LLMUsage = field(default_factory=LLMUsage)
    tool_results: list[ToolExecutionResult] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def enter(self, state: AgentState) -> None:
        logger.debug(f"Agent state {self.state} -> {state}")
        self.state = state

    def result(self) -> AgentRunResult:
        return AgentRunResult(
            text=self.text,
            state=self.state,
            rounds=self.rounds,
            messages=self.history,
            usage=self.usage,
            tool_results=self.tool_results,
        )


class AgentLoop:
    """Drives rounds of model streaming and tool execution for one chat turn.

    Each round streams the running history to the provider. A round that ends
    without tool calls finishes the run; otherwise every requested tool is run
    in model order (after approval, where the tool needs it), the results are
    appended to the history and the next round starts. The run never exceeds
    ``max_rounds`` provider calls. Tool failures are reported to the model;
    provider failures end the run.
    """

    def __init__(self, provider: ModelProvider, registry: ToolsRegistry, config: AgentConfig | None = None):
        """Initialize the loop.

        Args:
            provider: Model provider to stream completions from
            registry: Tools available to the model
            config: Loop configuration (defaults from the environment)
        """
        self.provider = provider
        self.registry = registry
        self.config = config or AgentConfig.from_env()

    async def run(
        self,
        history: list[LLMMessage],
        user_id: str,
        callbacks: AgentCallbacks | None = None,
        system_prompt: str | None = None,
    ) -> AgentRunResult:
        """Run the loop for one chat turn.

        Args:
            history: Conversation so far, ending with the user's new message
            user_id: The user the tools act for
            callbacks: Streaming hooks
            system_prompt: System prompt (defaults to DEFAULT_SYSTEM_PROMPT)

        Returns:
            Final state, text, rounds used and the extended history
        """
        callbacks = callbacks or AgentCallbacks()
        system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        run = _Run(history=list(history))

        user_message = next((m.text() for m in reversed(history) if m.role == "user" and m.text()), "")
        tools = self.registry.get_llm_tools(ToolContext(user_id=user_id, user_message=user_message))
        tool_definitions = [
            LLMToolDefinition(name=tool.name, description=tool.description, input_schema=tool.input_schema)
            for tool in tools.values()
        ]

        logger.info(
            f"Starting agent loop for user {user_id} via {self.provider.name} with {len(history)} messages, "
            f"{len(tools)} tools, max_rounds: {self.config.max_rounds}"
        )

        while True:
            run.enter(AgentState.STREAMING)
            run.rounds += 1
            logger.debug(f"Agent loop round {run.rounds}/{self.config.max_rounds}")

            try:
                round_text, tool_calls = await self._stream_round(run, tool_definitions, system_prompt, callbacks)
            except Exception as e:
                run.enter(AgentState.FAILED)
                error = e if isinstance(e, ProviderError) else ProviderError(str(e), provider=self.provider.name)
                logger.error(f"Provider {self.provider.name} failed in round {run.rounds}: {e}", exc_info=True)
                await _notify(callbacks.on_error, error)
                return run.result()

            if not tool_calls:
                if round_text:
                    run.history.append(LLMMessage(role="assistant", content=[TextBlock(text=round_text)]))
                return await self._finish(run, callbacks)

            if run.rounds >= self.config.max_rounds:
                logger.warning(
                    f"Agent loop reached max rounds ({self.config.max_rounds}); "
                    f"dropping {len(tool_calls)} requested tool calls"
                )
                if round_text:
                    run.history.append(LLMMessage(role="assistant", content=[TextBlock(text=round_text)]))
                return await self._finish(run, callbacks)

            run.enter(AgentState.TOOLS_PENDING)
            logger.info(f"Model requested {len(tool_calls)} tools: {[call.name for call in tool_calls]}")

            assistant_content: list[ContentBlock] = []
            if round_text:
                assistant_content.append(TextBlock(text=round_text))
            assistant_content.extend(ToolUseBlock(id=call.id, name=call.name, input=call.input) for call in tool_calls)

            results: list[ContentBlock] = []
            for call in tool_calls:
                result = await self._handle_tool_call(run, call, tools, callbacks)
                results.append(
                    ToolResultBlock(tool_use_id=call.id, content=result.as_tool_content(), is_error=not result.success)
                )

            run.history.append(LLMMessage(role="assistant", content=assistant_content))
            run.history.append(LLMMessage(role="user", content=results))

    async def _stream_round(
        self,
        run: _Run,
        tool_definitions: list[LLMToolDefinition],
        system_prompt: str,
        callbacks: AgentCallbacks,
    ) -> tuple[str, list[ToolCallRequest]]:
        round_parts: list[str] = []
        tool_calls: list[ToolCallRequest] = []

        async for event in self.provider.stream_completion(run.history, tool_definitions, system_prompt):
            match event:
                case TextDelta(text=text) if text:
                    round_parts.append(text)
                    run.text_parts.append(text)
                    await _notify(callbacks.on_text, text)
                case ToolCallRequest():
                    tool_calls.append(event)
                case RoundComplete(stop_reason=stop_reason, usage=usage):
                    run.usage.add(usage)
                    logger.debug(f"Round {run.rounds} complete - Stop reason: {stop_reason}")

        return "".join(round_parts), tool_calls

    async def _handle_tool_call(
        self,
        run: _Run,
        call: ToolCallRequest,
        tools: dict[str, LLMTool],
        callbacks: AgentCallbacks,
    ) -> ToolExecutionResult:
        await _notify(callbacks.on_tool_use, call.name, call.input)

        tool = tools.get(call.name)
        if tool is None:
            logger.error(f"Unknown tool requested: {call.name}")
            return ToolExecutionResult(success=False, error=f"Unknown tool {call.name}")

        if tool.needs_approval:
            run.enter(AgentState.AWAITING_APPROVAL)
            decision = await self._request_approval(call, callbacks)
            if not decision.approved:
                logger.info(f"Tool {call.name} not executed: {decision.reason}")
                return ToolExecutionResult(success=False, error=decision.reason)

        run.enter(AgentState.EXECUTING)
        result = await self._execute_tool(tool, call)
        run.tool_results.append(result)
        await _notify(callbacks.on_tool_complete, call.name, call.input, result)
        return result

    async def _request_approval(self, call: ToolCallRequest, callbacks: AgentCallbacks) -> ApprovalDecision:
        """Race the approval callback against the timeout. Fails closed without a callback."""
        if callbacks.on_tool_approval is None:
            return ApprovalDecision(
                ApprovalOutcome.REJECTED, f"No approval handler available; {call.name} was auto-rejected"
            )

        gate = ApprovalGate(ApprovalRequest.create(call.name, call.input, self.config.approval_timeout_seconds))

        async def ask() -> bool:
            return bool(await _invoke(callbacks.on_tool_approval, call.name, copy.deepcopy(call.input)))

        task = gate.follow(ask())
        try:
            return await gate.wait()
        finally:
            if not task.done():
                task.cancel()
            gate.close()

    async def _execute_tool(self, tool: LLMTool, call: ToolCallRequest) -> ToolExecutionResult:
        logger.debug(f"Executing tool: {call.name} with input: {call.input}")
        started = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - started) * 1000

        try:
            output = await tool.callable(call.input)
        except ValidationError as e:
            logger.warning(f"Tool {call.name} rejected its input: {e}")
            return ToolExecutionResult(success=False, error=format_validation_error(e), duration_ms=elapsed_ms())
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}")
            return ToolExecutionResult(success=False, error=str(e), duration_ms=elapsed_ms())

        result = ToolExecutionResult(success=True, result=str(output), duration_ms=elapsed_ms())
        logger.debug(f"Tool {call.name} succeeded in {result.duration_ms:.0f}ms: {result.result[:100]}...")
        return result

    async def _finish(self, run: _Run, callbacks: AgentCallbacks) -> AgentRunResult:
        run.enter(AgentState.DONE)
        logger.info(f"Agent loop completed in {run.rounds} rounds")
        await _notify(callbacks.on_complete, run.text)
        return run.result()


_providers: dict[str, ModelProvider] = {}


def get_model_provider(name: str) -> ModelProvider:
    """Get or create the model provider registered under ``name``.

    Raises:
        ValueError: If the provider name is unknown or its API key is missing
    """
    if name not in _providers:
        match name:
            case "anthropic":
                from app.clients.anthropic import get_anthropic_client

                _providers[name] = get_anthropic_client()
            case "openai":
                from app.clients.openai import get_openai_client

                _providers[name] = get_openai_client()
            case "langchain":
                from app.clients.langchain import LangChainChatProvider

                _providers[name] = LangChainChatProvider()
            case _:
                raise ValueError(f"Unknown model provider: {name}")
    return _providers[name]

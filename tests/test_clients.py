"""Tests for the model provider clients and token budgeting."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage, ToolMessage

from app.clients.anthropic import AnthropicClient, AnthropicConfig
from app.clients.budget import TokenBudget, TokenLimits, message_text, starts_turn
from app.clients.langchain import LangChainChatProvider, chunk_text, to_langchain_messages
from app.clients.openai import OpenAIClient, _safe_json_loads
from app.models.llm import (
    ImageBlock,
    ImageSource,
    LLMMessage,
    LLMToolDefinition,
    LLMUsage,
    RoundComplete,
    TextBlock,
    TextDelta,
    ToolCallRequest,
    ToolResultBlock,
    ToolUseBlock,
)

TOOLS = [
    LLMToolDefinition(name="get_calendar_events", description="List events", input_schema={"type": "object"}),
    LLMToolDefinition(name="delete_calendar_event", description="Delete an event", input_schema={"type": "object"}),
]


def tool_exchange() -> list[LLMMessage]:
    """A user question, a tool call, its result and the final answer."""
    return [
        LLMMessage(role="user", content="What's next?"),
        LLMMessage(
            role="assistant",
            content=[
                TextBlock(text="Let me check."),
                ToolUseBlock(id="toolu_1", name="get_calendar_events", input={"max_results": 3}),
            ],
        ),
        LLMMessage(role="user", content=[ToolResultBlock(tool_use_id="toolu_1", content="No events", is_error=False)]),
        LLMMessage(role="assistant", content="You have nothing scheduled."),
    ]


async def collect(stream) -> list:
    return [event async for event in stream]


def char_budget(**limits) -> TokenBudget:
    """A budget that counts one token per character."""
    budget = TokenBudget(TokenLimits(**limits))
    budget.tokenizer = Mock()
    budget.tokenizer.encode.side_effect = lambda text: list(text)
    return budget


class TestTokenBudget:
    """Tests for token validation and truncation."""

    def test_validate_message_tokens_within_limit(self):
        """Test that messages within the limit pass validation."""
        budget = char_budget(max_message_tokens=10)

        budget.validate_message_tokens("a" * 10)

    def test_validate_message_tokens_exceeds_limit(self):
        """Test that messages over the limit raise ValueError."""
        budget = char_budget(max_message_tokens=10)

        with pytest.raises(ValueError, match="Message exceeds token limit: 11 tokens > 10 limit"):
            budget.validate_message_tokens("a" * 11)

    def test_estimate_without_tokenizer(self):
        """Test the four-characters-per-token fallback."""
        budget = TokenBudget()
        budget.tokenizer = None

        assert budget.estimate_tokens("a" * 4000) == 1000

    def test_message_text_flattens_blocks(self):
        """Test that tool calls and results count towards the estimate."""
        messages = tool_exchange()

        assert message_text(messages[1]) == 'Let me check.get_calendar_events{"max_results": 3}'
        assert message_text(messages[2]) == "No events"

    def test_starts_turn(self):
        """Test that tool-result messages never start a conversation."""
        assert [starts_turn(m) for m in tool_exchange()] == [True, False, False, False]

    def test_truncate_conversation_within_limit(self):
        """Test that conversations within limits are untouched."""
        budget = char_budget(max_conversation_tokens=1000, token_headroom=100)
        messages = tool_exchange()

        assert budget.truncate_conversation(messages, "System prompt") == messages

    def test_truncate_conversation_drops_oldest_turns(self):
        """Test that the oldest turns are dropped first."""
        budget = char_budget(max_conversation_tokens=100, token_headroom=20)
        messages = [
            LLMMessage(role="user", content="a" * 30),
            LLMMessage(role="assistant", content="b" * 30),
            LLMMessage(role="user", content="c" * 30),
        ]

        assert budget.truncate_conversation(messages, "") == messages[2:]

    def test_truncate_conversation_keeps_tool_pairs(self):
        """Test that truncation never starts at a tool result."""
        budget = char_budget(max_conversation_tokens=100, token_headroom=20)
        messages = [
            LLMMessage(role="user", content="x" * 40),
            LLMMessage(role="assistant", content="y" * 10),
            LLMMessage(role="user", content="q" * 5),
            LLMMessage(role="assistant", content=[ToolUseBlock(id="t1", name="get", input={})]),
            LLMMessage(role="user", content=[ToolResultBlock(tool_use_id="t1", content="r" * 20)]),
            LLMMessage(role="assistant", content="z" * 5),
        ]

        result = budget.truncate_conversation(messages, "")

        assert result == messages[2:]

    def test_truncate_conversation_keeps_latest_turn_when_nothing_fits(self):
        """Test that the latest turn is sent even when it alone is over the limit."""
        budget = char_budget(max_conversation_tokens=100, token_headroom=20)
        messages = [
            LLMMessage(role="user", content="a" * 10),
            LLMMessage(role="assistant", content="b" * 10),
            LLMMessage(role="user", content="c" * 200),
        ]

        assert budget.truncate_conversation(messages, "") == messages[2:]


class FakeAnthropicStream:
    """Stands in for the SDK's MessageStream context manager."""

    def __init__(self, events, final_message):
        self.events = events
        self.final_message = final_message

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            yield event

    async def get_final_message(self):
        return self.final_message


class TestAnthropicClient:
    """Tests for the Anthropic client."""

    @pytest.fixture
    def client(self):
        """AnthropicClient with a mocked SDK and rate limiter."""
        with patch.dict("os.environ", {"ANTHROPIC_API_KEY": "test-key"}):
            client = AnthropicClient(config=AnthropicConfig(model="claude-test"))
        client.client = Mock()
        client.rate_limiter = Mock(check_rate_limit=AsyncMock())
        return client

    def test_missing_api_key_raises(self):
        """Test that the API key is required."""
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
                AnthropicClient()

    def test_convert_tools_marks_last_tool_for_caching(self, client):
        """Test that only the last tool carries cache_control."""
        converted = client.convert_tools(TOOLS)

        assert converted[0].cache_control is None
        assert converted[-1].cache_control is not None
        assert converted[-1].model_dump(exclude_none=True)["cache_control"] == {"type": "ephemeral", "ttl": "5m"}

    @pytest.mark.asyncio
    async def test_stream_completion_yields_text_then_tool_calls(self, client):
        """Test that text streams as deltas and tool calls come from the final message."""
        final_message = SimpleNamespace(
            stop_reason="tool_use",
            content=[
                SimpleNamespace(type="text", text="Let me check."),
                SimpleNamespace(type="tool_use", id="toolu_1", name="get_calendar_events", input={"max_results": 3}),
            ],
            usage=SimpleNamespace(
                input_tokens=100, output_tokens=20, cache_creation_input_tokens=None, cache_read_input_tokens=50
            ),
        )
        events = [
            SimpleNamespace(type="text", text="Let me "),
            SimpleNamespace(type="content_block_stop"),
            SimpleNamespace(type="text", text="check."),
        ]
        client.client.messages.stream = Mock(return_value=FakeAnthropicStream(events, final_message))

        result = await collect(
            client.stream_completion([LLMMessage(role="user", content="What's next?")], TOOLS, "System prompt")
        )

        assert result[:2] == [TextDelta(text="Let me "), TextDelta(text="check.")]
        assert result[2] == ToolCallRequest(id="toolu_1", name="get_calendar_events", input={"max_results": 3})
        assert isinstance(result[3], RoundComplete)
        assert result[3].stop_reason == "tool_use"
        assert result[3].usage.total_tokens == 120
        assert result[3].usage.cache_read_input_tokens == 50

        params = client.client.messages.stream.call_args.kwargs
        assert params["model"] == "claude-test"
        assert params["system"] == "System prompt"
        assert params["messages"] == [{"role": "user", "content": "What's next?"}]
        assert [tool["name"] for tool in params["tools"]] == ["get_calendar_events", "delete_calendar_event"]
        client.rate_limiter.check_rate_limit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stream_completion_omits_empty_tools(self, client):
        """Test that no tools parameter is sent when there are no tools."""
        final_message = SimpleNamespace(stop_reason="end_turn", content=[], usage=None)
        client.client.messages.stream = Mock(return_value=FakeAnthropicStream([], final_message))

        result = await collect(client.stream_completion([LLMMessage(role="user", content="Hi")], [], "System"))

        assert result == [RoundComplete(stop_reason="end_turn", usage=LLMUsage())]
        assert "tools" not in client.client.messages.stream.call_args.kwargs


async def chunk_stream(chunks):
    for chunk in chunks:
        yield chunk


def openai_chunk(content=None, tool_calls=None, finish_reason=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(usage=None, choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def tool_fragment(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


class TestOpenAIClient:
    """Tests for the OpenAI client."""

    @pytest.fixture
    def client(self):
        """OpenAIClient with a mocked SDK and rate limiter."""
        with patch.dict("os.environ", {"OPENAI_API_KEY": "test-key"}):
            client = OpenAIClient()
        client.client = Mock()
        client.rate_limiter = Mock(check_rate_limit=AsyncMock())
        return client

    def test_missing_api_key_raises(self):
        """Test that the API key is required."""
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="OPENAI_API_KEY"):
                OpenAIClient()

    def test_safe_json_loads(self):
        """Test that malformed or non-object arguments become an empty input."""
        assert _safe_json_loads('{"max_results": 3}') == {"max_results": 3}
        assert _safe_json_loads("") == {}
        assert _safe_json_loads("{not json") == {}
        assert _safe_json_loads("[1, 2]") == {}

    def test_convert_tools(self):
        """Test the function tool format."""
        converted = OpenAIClient.convert_tools(TOOLS[:1])

        assert converted == [
            {
                "type": "function",
                "function": {
                    "name": "get_calendar_events",
                    "description": "List events",
                    "parameters": {"type": "object"},
                },
            }
        ]

    def test_convert_messages(self):
        """Test conversion of tool calls, tool results and images."""
        messages = tool_exchange()
        messages.append(
            LLMMessage(
                role="user",
                content=[
                    TextBlock(text="What is this?"),
                    ImageBlock(source=ImageSource(media_type="image/png", data="aGVsbG8=")),
                ],
            )
        )

        converted = OpenAIClient.convert_messages(messages, "System prompt")

        assert converted[0] == {"role": "system", "content": "System prompt"}
        assert converted[1] == {"role": "user", "content": "What's next?"}
        assert converted[2]["role"] == "assistant"
        assert converted[2]["content"] == "Let me check."
        assert converted[2]["tool_calls"][0]["function"] == {
            "name": "get_calendar_events",
            "arguments": '{"max_results": 3}',
        }
        assert converted[3] == {"role": "tool", "tool_call_id": "toolu_1", "content": "No events"}
        assert converted[4] == {"role": "assistant", "content": "You have nothing scheduled."}
        assert converted[5]["content"][1] == {
            "type": "image_url",
            "image_url": {"url": "data:image/png;base64,aGVsbG8="},
        }

    @pytest.mark.asyncio
    async def test_stream_completion_assembles_tool_calls(self, client):
        """Test that tool call fragments are joined by index and emitted after the text."""
        chunks = [
            openai_chunk(content="Checking"),
            openai_chunk(tool_calls=[tool_fragment(1, id="call_b", name="delete_calendar_event", arguments="")]),
            openai_chunk(tool_calls=[tool_fragment(0, id="call_a", name="get_calendar_events", arguments='{"max_')]),
            openai_chunk(tool_calls=[tool_fragment(0, arguments='results": 3}')]),
            openai_chunk(tool_calls=[tool_fragment(1, arguments='{"event_id": "evt_1"}')], finish_reason="tool_calls"),
            SimpleNamespace(
                usage=SimpleNamespace(
                    prompt_tokens=100,
                    completion_tokens=10,
                    total_tokens=110,
                    prompt_tokens_details=SimpleNamespace(cached_tokens=40),
                ),
                choices=[],
            ),
        ]
        client.client.chat.completions.create = AsyncMock(return_value=chunk_stream(chunks))

        result = await collect(client.stream_completion([LLMMessage(role="user", content="Hi")], TOOLS, "System"))

        assert result[0] == TextDelta(text="Checking")
        assert result[1] == ToolCallRequest(id="call_a", name="get_calendar_events", input={"max_results": 3})
        assert result[2] == ToolCallRequest(id="call_b", name="delete_calendar_event", input={"event_id": "evt_1"})
        assert result[3].stop_reason == "tool_calls"
        assert result[3].usage.input_tokens == 60
        assert result[3].usage.cache_read_input_tokens == 40

        params = client.client.chat.completions.create.call_args.kwargs
        assert params["stream"] is True
        assert params["stream_options"] == {"include_usage": True}
        assert params["tool_choice"] == "auto"
        assert "temperature" not in params


class FakeChatModel:
    """Chat model double that records bound tools and replays chunks."""

    def __init__(self, chunks: list[AIMessageChunk]):
        self.chunks = chunks
        self.bound_tools = None
        self.received = None

    def bind_tools(self, tools):
        self.bound_tools = tools
        return self

    async def astream(self, messages):
        self.received = messages
        for chunk in self.chunks:
            yield chunk


class TestLangChainProvider:
    """Tests for the LangChain adapter."""

    def test_missing_api_key_raises(self):
        """Test that the default ChatAnthropic model needs an API key."""
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
                LangChainChatProvider()

    def test_chunk_text(self):
        """Test text extraction from string and block content."""
        assert chunk_text("plain") == "plain"
        assert chunk_text([{"type": "text", "text": "a"}, {"type": "tool_use", "id": "t"}, "b"]) == "ab"

    def test_to_langchain_messages(self):
        """Test conversion of the history to LangChain messages."""
        converted = to_langchain_messages(tool_exchange(), "System prompt")

        assert isinstance(converted[0], SystemMessage)
        assert isinstance(converted[1], HumanMessage)
        assert isinstance(converted[2], AIMessage)
        assert converted[2].tool_calls[0]["name"] == "get_calendar_events"
        assert converted[2].tool_calls[0]["args"] == {"max_results": 3}
        assert isinstance(converted[3], ToolMessage)
        assert converted[3].tool_call_id == "toolu_1"
        assert converted[3].status == "success"
        assert isinstance(converted[4], AIMessage)

    @pytest.mark.asyncio
    async def test_stream_completion_aggregates_tool_calls(self):
        """Test that streamed chunks yield text deltas and complete tool calls."""
        model = FakeChatModel(
            [
                AIMessageChunk(content="Let me check."),
                AIMessageChunk(
                    content="",
                    tool_call_chunks=[
                        {"name": "get_calendar_events", "args": '{"max_results": ', "id": "toolu_1", "index": 0}
                    ],
                ),
                AIMessageChunk(
                    content="",
                    tool_call_chunks=[{"name": None, "args": "3}", "id": None, "index": 0}],
                    usage_metadata={"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
                    response_metadata={"stop_reason": "tool_use"},
                ),
            ]
        )
        provider = LangChainChatProvider(model=model)

        result = await collect(provider.stream_completion([LLMMessage(role="user", content="Hi")], TOOLS, "System"))

        assert result[0] == TextDelta(text="Let me check.")
        assert result[1] == ToolCallRequest(id="toolu_1", name="get_calendar_events", input={"max_results": 3})
        assert result[2].stop_reason == "tool_use"
        assert result[2].usage.total_tokens == 15
        assert [tool["function"]["name"] for tool in model.bound_tools] == [
            "get_calendar_events",
            "delete_calendar_event",
        ]
        assert isinstance(model.received[0], SystemMessage)

    @pytest.mark.asyncio
    async def test_stream_completion_without_tools_skips_binding(self):
        """Test that the model is used unbound when there are no tools."""
        model = FakeChatModel([AIMessageChunk(content="Hello")])
        provider = LangChainChatProvider(model=model)

        result = await collect(provider.stream_completion([LLMMessage(role="user", content="Hi")], [], "System"))

        assert result[0] == TextDelta(text="Hello")
        assert isinstance(result[1], RoundComplete)
        assert model.bound_tools is None

    @pytest.mark.asyncio
    async def test_stream_completion_truncates_and_rate_limits(self):
        """Test that long histories are truncated and the request is rate limited before streaming."""
        model = FakeChatModel([AIMessageChunk(content="Ok")])
        provider = LangChainChatProvider(model=model)
        provider.budget = char_budget(max_conversation_tokens=100, token_headroom=20)
        provider.rate_limiter = Mock(check_rate_limit=AsyncMock())
        messages = [
            LLMMessage(role="user", content="a" * 30),
            LLMMessage(role="assistant", content="b" * 30),
            LLMMessage(role="user", content="c" * 30),
        ]

        await collect(provider.stream_completion(messages, [], "System"))

        assert isinstance(model.received[0], SystemMessage)
        assert [m.content for m in model.received[1:]] == ["c" * 30]
        provider.rate_limiter.check_rate_limit.assert_awaited_once_with(36, identifier="langchain")

"""
Tests for farmassist/services/ai/llm_service.py - Provider dialects and fallback.
"""
import json
from types import SimpleNamespace

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from farmassist.core.config import settings
from farmassist.schemas.chat import ChatMessage, LLMResponse, TokenUsage
from farmassist.services.tools.schema import ToolCall, ToolResult, ToolSchema


def _openai_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def _openai_response(content="", tool_calls=None, model="gpt-4o-2024-08-06"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content, tool_calls=tool_calls))],
        usage=SimpleNamespace(prompt_tokens=5, completion_tokens=7, total_tokens=12),
        model=model,
    )


WEATHER_TOOL = ToolSchema(
    name="getCurrentWeather",
    description="Current weather",
    parameters={"type": "object", "properties": {"lat": {"type": "number"}}, "required": ["lat"]},
)


def _tool_exchange():
    """An assistant tool call followed by its result"""
    call = ToolCall(id="call_abc", name="getCurrentWeather", arguments={"lat": 41.6})
    result = ToolResult(tool_call_id="call_abc", tool_name="getCurrentWeather", success=True, data={"temp": 18})
    return [
        ChatMessage(role="user", content="Weather?"),
        ChatMessage(role="assistant", content="", tool_calls=[call]),
        ChatMessage(
            role="tool",
            content=json.dumps({"temp": 18}),
            tool_call_id="call_abc",
            name="getCurrentWeather",
            tool_result=result,
        ),
    ]


# =============================================================================
# Tool call parsing
# =============================================================================

class TestParseOpenAIToolCalls:
    """Test the flat OpenAI tool_calls array."""

    def test_parses_json_arguments(self):
        """String arguments are decoded and ids kept."""
        from farmassist.services.ai.llm_service import parse_openai_tool_calls

        calls = parse_openai_tool_calls([_openai_call("call_1", "getCurrentWeather", '{"lat": 41.6, "lon": -93.6}')])

        assert len(calls) == 1
        assert calls[0].id == "call_1"
        assert calls[0].arguments == {"lat": 41.6, "lon": -93.6}

    def test_drops_malformed_and_keeps_rest(self):
        """Bad JSON or a missing name drops only that call."""
        from farmassist.services.ai.llm_service import parse_openai_tool_calls

        calls = parse_openai_tool_calls([
            _openai_call("call_1", "getFields", "{not json"),
            _openai_call("call_2", None, "{}"),
            _openai_call("call_3", "getFields", "[1, 2]"),
            _openai_call("call_4", "getFields", ""),
        ])

        assert [c.id for c in calls] == ["call_4"]
        assert calls[0].arguments == {}

    def test_synthesizes_missing_and_duplicate_ids(self):
        """Calls without an id, or reusing one, get a fresh id."""
        from farmassist.services.ai.llm_service import parse_openai_tool_calls

        calls = parse_openai_tool_calls([
            _openai_call(None, "getFields", "{}"),
            _openai_call("call_x", "getFields", "{}"),
            _openai_call("call_x", "getFields", "{}"),
        ])

        ids = [c.id for c in calls]
        assert len(set(ids)) == 3
        assert ids[1] == "call_x"
        assert ids[0].startswith("call_")

    def test_none(self):
        """No tool calls parse to an empty list."""
        from farmassist.services.ai.llm_service import parse_openai_tool_calls

        assert parse_openai_tool_calls(None) == []


class TestParseAnthropicContent:
    """Test Anthropic text and tool_use blocks."""

    def test_mixed_blocks(self):
        """Text is joined and tool_use inputs are used as arguments."""
        from farmassist.services.ai.llm_service import parse_anthropic_content

        text, calls = parse_anthropic_content([
            SimpleNamespace(type="text", text="Let me check."),
            SimpleNamespace(type="tool_use", id="toolu_1", name="getFields", input={}),
            SimpleNamespace(type="tool_use", id="toolu_2", name="getCurrentWeather", input={"lat": 1.0}),
        ])

        assert text == "Let me check."
        assert [c.id for c in calls] == ["toolu_1", "toolu_2"]
        assert calls[1].arguments == {"lat": 1.0}


class TestParseGeminiResponse:
    """Test Gemini function_call parts."""

    def test_function_calls_without_ids(self):
        """Gemini calls usually lack ids, so ids are synthesized."""
        from farmassist.services.ai.llm_service import parse_gemini_response

        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[
            SimpleNamespace(function_call=SimpleNamespace(name="getFields", args={}, id=None), text=None),
            SimpleNamespace(function_call=SimpleNamespace(name="getFields", args={"org": "1"}, id=None), text=None),
        ]))])

        text, calls = parse_gemini_response(response)

        assert text == ""
        assert len(calls) == 2
        assert calls[0].id != calls[1].id
        assert calls[1].arguments == {"org": "1"}

    def test_text_only(self):
        """Plain text parts become the content."""
        from farmassist.services.ai.llm_service import parse_gemini_response

        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[
            SimpleNamespace(function_call=None, text="Sunny and 18C."),
        ]))])

        assert parse_gemini_response(response) == ("Sunny and 18C.", [])

    def test_no_candidates(self):
        """An empty response parses to nothing."""
        from farmassist.services.ai.llm_service import parse_gemini_response

        assert parse_gemini_response(SimpleNamespace(candidates=[])) == ("", [])


class TestParseTextToolCalls:
    """Test simulated tool calls in reply text."""

    def test_tool_calls_object_in_code_fence(self):
        """The JSON block is parsed and removed from the text."""
        from farmassist.services.ai.llm_service import parse_text_tool_calls

        text = 'Checking.\n```json\n{"tool_calls": [{"name": "getFields", "arguments": {}}]}\n```'

        remaining, calls = parse_text_tool_calls(text)

        assert remaining == "Checking."
        assert [c.name for c in calls] == ["getFields"]

    def test_bare_array(self):
        """A bare array of call objects is accepted."""
        from farmassist.services.ai.llm_service import parse_text_tool_calls

        _, calls = parse_text_tool_calls('[{"name": "getCurrentWeather", "arguments": {"lat": 1}}]')

        assert calls[0].arguments == {"lat": 1}

    def test_plain_text(self):
        """Text without tool calls is returned unchanged."""
        from farmassist.services.ai.llm_service import parse_text_tool_calls

        text = "Your fields look healthy {mostly}."

        assert parse_text_tool_calls(text) == (text, [])


# =============================================================================
# Message conversion
# =============================================================================

class TestMessageConversion:
    """Test conversion of the uniform history into provider formats."""

    def test_openai_links_tool_results(self):
        """Tool results reference the call id of the assistant's tool call."""
        from farmassist.services.ai.llm_service import convert_to_openai_messages

        converted = convert_to_openai_messages(_tool_exchange(), "Be helpful")

        assert converted[0] == {"role": "system", "content": "Be helpful"}
        assert converted[2]["tool_calls"][0]["id"] == "call_abc"
        assert json.loads(converted[2]["tool_calls"][0]["function"]["arguments"]) == {"lat": 41.6}
        assert converted[3] == {"role": "tool", "tool_call_id": "call_abc", "content": '{"temp": 18}'}

    def test_openai_legacy_tool_message_without_id(self):
        """A tool message without a call id becomes user text."""
        from farmassist.services.ai.llm_service import convert_to_openai_messages

        converted = convert_to_openai_messages([ChatMessage(role="function", content="42", name="getFields")])

        assert converted[0]["role"] == "user"
        assert "getFields" in converted[0]["content"]

    def test_anthropic_native_blocks(self):
        """With tools, the exchange uses tool_use and tool_result blocks."""
        from farmassist.services.ai.llm_service import convert_to_anthropic_messages

        history = [ChatMessage(role="system", content="Extra rules")] + _tool_exchange()

        converted, system = convert_to_anthropic_messages(history, "Be helpful")

        assert system == "Be helpful\n\nExtra rules"
        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        assert converted[1]["content"][0] == {
            "type": "tool_use", "id": "call_abc", "name": "getCurrentWeather", "input": {"lat": 41.6}
        }
        assert converted[2]["content"][0]["type"] == "tool_result"
        assert converted[2]["content"][0]["tool_use_id"] == "call_abc"
        assert converted[2]["content"][0]["is_error"] is False

    def test_anthropic_text_without_tools(self):
        """Without tools, the exchange is rendered as text blocks."""
        from farmassist.services.ai.llm_service import convert_to_anthropic_messages

        converted, _ = convert_to_anthropic_messages(_tool_exchange(), native_tools=False)

        block_types = {block["type"] for message in converted for block in message["content"]}
        assert block_types == {"text"}

    def test_anthropic_merges_consecutive_roles(self):
        """Consecutive user turns are merged into one message."""
        from farmassist.services.ai.llm_service import convert_to_anthropic_messages

        converted, system = convert_to_anthropic_messages([
            ChatMessage(role="user", content="Hi"),
            ChatMessage(role="user", content="Fields?"),
        ])

        assert system is None
        assert len(converted) == 1
        assert len(converted[0]["content"]) == 2

    def test_gemini_function_parts(self):
        """Gemini gets function_call and function_response parts."""
        from farmassist.services.ai.llm_service import convert_to_gemini_contents

        contents, system = convert_to_gemini_contents(_tool_exchange(), "Be helpful")

        assert system == "Be helpful"
        assert [c.role for c in contents] == ["user", "model", "user"]
        assert contents[1].parts[0].function_call.name == "getCurrentWeather"
        assert contents[2].parts[0].function_response.response == {"temp": 18}

    def test_gemini_tools(self):
        """Tool schemas become one Tool with function declarations."""
        from farmassist.services.ai.llm_service import convert_to_gemini_tools

        tools = convert_to_gemini_tools([WEATHER_TOOL])

        assert len(tools) == 1
        assert tools[0].function_declarations[0].name == "getCurrentWeather"
        assert convert_to_gemini_tools([]) is None

    def test_ollama_text_exchange(self):
        """Ollama sees tool calls and results as text."""
        from farmassist.services.ai.llm_service import convert_to_ollama_messages

        converted = convert_to_ollama_messages(_tool_exchange())

        assert '"tool_calls"' in converted[1]["content"]
        assert converted[2]["role"] == "user"


# =============================================================================
# Service
# =============================================================================

class TestLLMServiceProviders:
    """Test provider calls with mocked SDK clients."""

    @pytest.mark.asyncio
    async def test_openai_with_tools(self):
        """OpenAI gets tools in function format and tool calls come back normalized."""
        from farmassist.services.ai.llm_service import CompletionOptions, LLMService

        mock_client = MagicMock()
        mock_client.chat.completions.create = AsyncMock(return_value=_openai_response(
            tool_calls=[_openai_call("call_1", "getCurrentWeather", '{"lat": 41.6}')]
        ))

        with patch.object(settings, "OPENAI_API_KEY", "sk-test"), \
                patch("farmassist.services.ai.llm_service.AsyncOpenAI", return_value=mock_client):
            service = LLMService(primary_provider="openai", fallback_provider="")
            response = await service.complete(
                [ChatMessage(role="user", content="Weather?")],
                CompletionOptions(system_prompt="sys", enable_functions=True, tool_defs=[WEATHER_TOOL]),
            )

        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["tools"][0]["function"]["name"] == "getCurrentWeather"
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert response.provider == "openai"
        assert response.model == "gpt-4o-2024-08-06"
        assert response.usage.total_tokens == 12
        assert response.tool_calls[0].arguments == {"lat": 41.6}

    @pytest.mark.asyncio
    async def test_tools_disabled_sends_no_tools(self):
        """Without enable_functions no tools are sent and stray calls are ignored."""
        from farmassist.services.ai.llm_service import CompletionOptions, LLMService

        mock_client = MagicMock()
        mock_client.chat.completions.create = AsyncMock(return_value=_openai_response(
            content="Sunny.",
            tool_calls=[_openai_call("call_1", "getCurrentWeather", "{}")],
        ))

        with patch.object(settings, "OPENAI_API_KEY", "sk-test"), \
                patch("farmassist.services.ai.llm_service.AsyncOpenAI", return_value=mock_client):
            service = LLMService(primary_provider="openai", fallback_provider="")
            response = await service.complete(
                [ChatMessage(role="user", content="Weather?")],
                CompletionOptions(enable_functions=False, tool_defs=[WEATHER_TOOL]),
            )

        assert "tools" not in mock_client.chat.completions.create.call_args.kwargs
        assert response.tool_calls == []
        assert response.content == "Sunny."

    @pytest.mark.asyncio
    async def test_claude_request_shape(self):
        """Claude gets the system prompt separately and tools with input_schema."""
        from farmassist.services.ai.llm_service import CompletionOptions, LLMService

        mock_client = MagicMock()
        mock_client.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[SimpleNamespace(type="tool_use", id="toolu_1", name="getCurrentWeather", input={"lat": 1.0})],
            usage=SimpleNamespace(input_tokens=10, output_tokens=4),
            model="claude-3-5-haiku-20241022",
        ))

        with patch.object(settings, "ANTHROPIC_API_KEY", "sk-ant-test"), \
                patch("farmassist.services.ai.llm_service.AsyncAnthropic", return_value=mock_client):
            service = LLMService(primary_provider="anthropic", fallback_provider="")
            response = await service.complete(
                [ChatMessage(role="user", content="Weather?")],
                CompletionOptions(system_prompt="sys", enable_functions=True, tool_defs=[WEATHER_TOOL]),
            )

        kwargs = mock_client.messages.create.call_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["tools"][0]["input_schema"]["required"] == ["lat"]
        assert response.tool_calls[0].id == "toolu_1"
        assert response.usage.total_tokens == 14

    @pytest.mark.asyncio
    async def test_gemini_disables_automatic_calling(self):
        """Gemini tool calls are returned, never executed by the SDK."""
        from farmassist.services.ai.llm_service import CompletionOptions, LLMService

        response = SimpleNamespace(
            candidates=[SimpleNamespace(content=SimpleNamespace(parts=[
                SimpleNamespace(function_call=SimpleNamespace(name="getCurrentWeather", args={"lat": 1.0}, id=None),
                                text=None),
            ]))],
            usage_metadata=SimpleNamespace(prompt_token_count=3, candidates_token_count=2, total_token_count=5),
        )
        mock_client = MagicMock()
        mock_client.aio.models.generate_content = AsyncMock(return_value=response)

        with patch.object(settings, "GOOGLE_API_KEY", "g-test"), \
                patch("farmassist.services.ai.llm_service.genai.Client", return_value=mock_client):
            service = LLMService(primary_provider="google", fallback_provider="")
            result = await service.complete(
                [ChatMessage(role="user", content="Weather?")],
                CompletionOptions(enable_functions=True, tool_defs=[WEATHER_TOOL]),
            )

        config = mock_client.aio.models.generate_content.call_args.kwargs["config"]
        assert config.automatic_function_calling.disable is True
        assert result.tool_calls[0].name == "getCurrentWeather"
        assert result.usage.total_tokens == 5

    @pytest.mark.asyncio
    async def test_ollama_simulated_tools(self):
        """Ollama gets tools in the prompt and calls are parsed from text."""
        from farmassist.services.ai.llm_service import CompletionOptions, LLMService

        mock_client = MagicMock()
        mock_client.chat = AsyncMock(return_value={
            "message": {"content": '{"tool_calls": [{"name": "getCurrentWeather", "arguments": {"lat": 2}}]}'},
            "eval_count": 5,
            "prompt_eval_count": 3,
        })

        with patch.object(settings, "OLLAMA_ENABLED", True), \
                patch("farmassist.services.ai.llm_service.AsyncClient", return_value=mock_client):
            service = LLMService(primary_provider="ollama", fallback_provider="")
            response = await service.complete(
                [ChatMessage(role="user", content="Weather?")],
                CompletionOptions(system_prompt="sys", enable_functions=True, tool_defs=[WEATHER_TOOL]),
            )

        sent = mock_client.chat.call_args.kwargs["messages"]
        assert "Tool: getCurrentWeather" in sent[0]["content"]
        assert response.content == ""
        assert response.tool_calls[0].arguments == {"lat": 2}
        assert response.usage.total_tokens == 8


class TestLLMServiceFallback:
    """Test provider selection and failure handling."""

    @pytest.mark.asyncio
    async def test_no_provider_configured(self):
        """No configured provider raises ConfigurationError."""
        from farmassist.services.ai.llm_service import ConfigurationError, LLMService

        with patch.object(settings, "OPENAI_API_KEY", None), \
                patch.object(settings, "ANTHROPIC_API_KEY", None), \
                patch.object(settings, "GOOGLE_API_KEY", None), \
                patch.object(settings, "OLLAMA_ENABLED", False):
            service = LLMService(primary_provider="openai", fallback_provider="google")
            with pytest.raises(ConfigurationError):
                await service.complete([ChatMessage(role="user", content="Hi")])

    @pytest.mark.asyncio
    async def test_falls_back_on_provider_error(self):
        """A failing primary hands over to the fallback provider."""
        from farmassist.services.ai.llm_service import LLMService

        fallback_response = LLMResponse(content="From Claude", model="claude", usage=TokenUsage())

        with patch.object(settings, "OPENAI_API_KEY", "sk-test"), \
                patch.object(settings, "ANTHROPIC_API_KEY", "sk-ant-test"), \
                patch.object(LLMService, "_call_openai", AsyncMock(side_effect=RuntimeError("503 upstream"))), \
                patch.object(LLMService, "_call_claude", AsyncMock(return_value=fallback_response)):
            service = LLMService(primary_provider="openai", fallback_provider="anthropic")
            response = await service.complete([ChatMessage(role="user", content="Hi")])

        assert response.content == "From Claude"
        assert response.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_raises_last_error_when_all_fail(self):
        """When every provider fails the last error is raised."""
        from farmassist.services.ai.llm_service import LLMService, ProviderError

        with patch.object(settings, "OPENAI_API_KEY", "sk-test"), \
                patch.object(settings, "ANTHROPIC_API_KEY", "sk-ant-test"), \
                patch.object(LLMService, "_call_openai", AsyncMock(side_effect=RuntimeError("openai down"))), \
                patch.object(LLMService, "_call_claude", AsyncMock(side_effect=RuntimeError("quota exceeded"))):
            service = LLMService(primary_provider="openai", fallback_provider="anthropic")
            with pytest.raises(ProviderError) as exc_info:
                await service.complete([ChatMessage(role="user", content="Hi")])

        assert exc_info.value.provider == "anthropic"
        assert "[RuntimeError] quota exceeded" in str(exc_info.value)
        assert exc_info.value.is_rate_limited is True

    @pytest.mark.asyncio
    async def test_provider_rate_limit(self, fake_clock):
        """A provider over its call limit is skipped."""
        from farmassist.core.rate_limiter import RateLimiter
        from farmassist.services.ai.llm_service import LLMService, ProviderError

        ok = LLMResponse(content="ok", model="gpt-4o", usage=TokenUsage())

        with patch.object(settings, "OPENAI_API_KEY", "sk-test"), \
                patch.object(settings, "PROVIDER_RATE_LIMIT_MAX", 1), \
                patch.object(LLMService, "_call_openai", AsyncMock(return_value=ok)):
            service = LLMService(
                rate_limiter=RateLimiter(clock=fake_clock),
                primary_provider="openai",
                fallback_provider="",
            )
            await service.complete([ChatMessage(role="user", content="Hi")])
            with pytest.raises(ProviderError) as exc_info:
                await service.complete([ChatMessage(role="user", content="Hi again")])

        assert exc_info.value.is_rate_limited is True

    @pytest.mark.asyncio
    async def test_tools_capped_per_provider(self):
        """Providers only receive as many tools as they accept."""
        from farmassist.services.ai.llm_service import CompletionOptions, LLMService

        ok = LLMResponse(content="ok", model="llama", usage=TokenUsage())
        call_mock = AsyncMock(return_value=ok)
        many_tools = [ToolSchema(name=f"tool{i}", description="t") for i in range(25)]

        with patch.object(settings, "OLLAMA_ENABLED", True), \
                patch.object(LLMService, "_call_ollama", call_mock):
            service = LLMService(primary_provider="ollama", fallback_provider="")
            await service.complete(
                [ChatMessage(role="user", content="Hi")],
                CompletionOptions(enable_functions=True, tool_defs=many_tools),
            )

        sent_options = call_mock.call_args.args[2]
        assert len(sent_options.tools) == 20

    def test_config_reports_providers(self):
        """Status config lists the provider order and native tool support."""
        from farmassist.services.ai.llm_service import LLMService

        with patch.object(settings, "OPENAI_API_KEY", "sk-test"), \
                patch.object(settings, "OLLAMA_ENABLED", True):
            service = LLMService(primary_provider="openai", fallback_provider="ollama")
            providers = service.get_available_providers()
            config = service.get_config()

        assert providers == ["openai", "ollama"]
        assert config["primary_provider"] == "openai"
        assert config["native_tool_calling"] == {"openai": True, "ollama": False}

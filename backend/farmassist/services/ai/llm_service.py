"""
LLM Service - one completion contract over OpenAI, Anthropic, Gemini and Ollama

Every provider speaks its own tool calling dialect. This module converts the
uniform ChatMessage history into each provider's request format and parses each
provider's tool calls back into ToolCall objects, so the orchestration engine
only ever sees LLMResponse.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import List, Optional, Dict, Any, Tuple
import asyncio
import json
import logging

from openai import AsyncOpenAI
from anthropic import AsyncAnthropic
from google import genai
from google.genai import types as genai_types
from ollama import AsyncClient

from farmassist.core.config import settings
from farmassist.core.rate_limiter import RateLimiter
from farmassist.schemas.chat import ChatMessage, LLMResponse, TokenUsage
from farmassist.services.ai.llm_config import (
    get_provider_api_key,
    model_for_provider,
    provider_candidates,
    provider_is_configured,
)
from farmassist.services.tools.provider_adapter import get_max_tools, supports_native_tools
from farmassist.services.tools.registry import build_tools_prompt
from farmassist.services.tools.schema import ToolCall, ToolSchema, generate_call_id

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when no LLM provider is configured"""
    pass


class ProviderError(Exception):
    """
    Raised when a provider call fails (network, auth, quota).

    `tool_results` carries the tool results gathered in the turn so far when
    the failure happens after tools already ran.
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        tool_results: Optional[List[Any]] = None
    ):
        super().__init__(message)
        self.provider = provider
        self.tool_results = list(tool_results or [])

    @property
    def is_rate_limited(self) -> bool:
        text = str(self).lower()
        return "quota" in text or "rate limit" in text


@dataclass
class CompletionOptions:
    """Per-call generation options"""
    max_tokens: int = field(default_factory=lambda: settings.LLM_MAX_TOKENS)
    temperature: float = field(default_factory=lambda: settings.LLM_TEMPERATURE)
    system_prompt: Optional[str] = None
    enable_functions: bool = False
    tool_defs: List[ToolSchema] = field(default_factory=list)

    @property
    def tools(self) -> List[ToolSchema]:
        """Tools actually sent to the provider"""
        return self.tool_defs if self.enable_functions else []


# =============================================================================
# Tool call parsing, one function per provider dialect
# =============================================================================

def _make_tool_call(
    name: Any,
    arguments: Any,
    call_id: Optional[str],
    seen_ids: set,
    provider: str
) -> Optional[ToolCall]:
    """Build a ToolCall or return None (with a warning) when the payload is malformed"""
    if not name or not isinstance(name, str):
        logger.warning(f"Dropping {provider} tool call without a name: {arguments!r}")
        return None

    if arguments is None or arguments == "":
        arguments = {}
    elif isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as e:
            logger.warning(f"Dropping {provider} tool call {name}: unparseable arguments ({e})")
            return None

    if isinstance(arguments, Mapping):
        arguments = dict(arguments)
    else:
        logger.warning(f"Dropping {provider} tool call {name}: arguments are not an object")
        return None

    if not isinstance(call_id, str) or not call_id or call_id in seen_ids:
        call_id = generate_call_id()
    seen_ids.add(call_id)

    return ToolCall(id=call_id, name=name, arguments=arguments)


def parse_openai_tool_calls(raw_tool_calls: Optional[List[Any]]) -> List[ToolCall]:
    """OpenAI: flat array, arguments encoded as a JSON string"""
    tool_calls: List[ToolCall] = []
    seen_ids: set = set()

    for tc in raw_tool_calls or []:
        function = getattr(tc, "function", None)
        call = _make_tool_call(
            getattr(function, "name", None),
            getattr(function, "arguments", None),
            getattr(tc, "id", None),
            seen_ids,
            "openai"
        )
        if call:
            tool_calls.append(call)

    return tool_calls


def parse_anthropic_content(blocks: Optional[List[Any]]) -> Tuple[str, List[ToolCall]]:
    """Anthropic: text and tool_use blocks interleaved in the content list"""
    texts: List[str] = []
    tool_calls: List[ToolCall] = []
    seen_ids: set = set()

    for block in blocks or []:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            if block.text:
                texts.append(block.text)
        elif block_type == "tool_use":
            call = _make_tool_call(
                getattr(block, "name", None),
                getattr(block, "input", None),
                getattr(block, "id", None),
                seen_ids,
                "anthropic"
            )
            if call:
                tool_calls.append(call)

    return "\n".join(texts), tool_calls


def parse_gemini_response(response: Any) -> Tuple[str, List[ToolCall]]:
    """Gemini: function_call parts nested under candidates[0].content.parts"""
    texts: List[str] = []
    tool_calls: List[ToolCall] = []
    seen_ids: set = set()

    candidates = getattr(response, "candidates", None) or []
    content = getattr(candidates[0], "content", None) if candidates else None

    for part in getattr(content, "parts", None) or []:
        fc = getattr(part, "function_call", None)
        if fc:
            call = _make_tool_call(
                getattr(fc, "name", None),
                getattr(fc, "args", None),
                getattr(fc, "id", None),
                seen_ids,
                "google"
            )
            if call:
                tool_calls.append(call)
        elif getattr(part, "text", None):
            texts.append(part.text)

    return "\n".join(texts), tool_calls


def _json_candidates(text: str):
    """Yield (start, end, value) for every JSON object or array embedded in text"""
    decoder = json.JSONDecoder()
    index = 0
    while index < len(text):
        if text[index] in "{[":
            try:
                value, end = decoder.raw_decode(text, index)
            except json.JSONDecodeError:
                index += 1
                continue
            yield index, end, value
            index = end
        else:
            index += 1


def parse_text_tool_calls(text: str) -> Tuple[str, List[ToolCall]]:
    """
    Parse simulated tool calls from a model's text reply.

    Looks for JSON in the format:
    {"tool_calls": [{"name": "...", "arguments": {...}}]}
    or a bare array of such objects. Returns the reply with the JSON removed.
    """
    if not text:
        return "", []

    for start, end, value in _json_candidates(text):
        if isinstance(value, dict) and isinstance(value.get("tool_calls"), list):
            raw_calls = value["tool_calls"]
        elif isinstance(value, list) and value and all(isinstance(v, dict) and "name" in v for v in value):
            raw_calls = value
        else:
            continue

        seen_ids: set = set()
        tool_calls = []
        for raw in raw_calls:
            if not isinstance(raw, dict):
                logger.warning(f"Dropping simulated tool call that is not an object: {raw!r}")
                continue
            call = _make_tool_call(raw.get("name"), raw.get("arguments"), raw.get("id"), seen_ids, "ollama")
            if call:
                tool_calls.append(call)

        remaining = (text[:start] + text[end:]).replace("```json", "").replace("```", "").strip()
        return remaining, tool_calls

    return text, []


# =============================================================================
# Message conversion, one function per provider
# =============================================================================

def _tool_call_as_text(call: ToolCall) -> str:
    return json.dumps({"name": call.name, "arguments": call.arguments}, default=str)


def _tool_message_as_text(msg: ChatMessage) -> str:
    return f"Tool '{msg.name or 'tool'}' result:\n{msg.content}"


def convert_to_openai_messages(
    messages: List[ChatMessage],
    system_prompt: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Convert to OpenAI chat messages (assistant tool_calls + tool role replies)"""
    converted: List[Dict[str, Any]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if msg.role == "assistant" and msg.tool_calls:
            converted.append({
                "role": "assistant",
                "content": msg.content or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments, default=str)
                        }
                    }
                    for tc in msg.tool_calls
                ]
            })
        elif msg.role == "tool":
            if msg.tool_call_id:
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content
                })
            else:
                # Legacy function results without a call id cannot be linked to a call
                converted.append({"role": "user", "content": _tool_message_as_text(msg)})
        else:
            converted.append({"role": msg.role, "content": msg.content})

    return converted


def convert_to_anthropic_messages(
    messages: List[ChatMessage],
    system_prompt: Optional[str] = None,
    native_tools: bool = True
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """
    Convert to Anthropic messages.

    Anthropic requires:
    - System message as a separate parameter, not in the messages array
    - tool_result blocks in a user message right after the assistant's tool_use
    - Tool definitions on every request that carries tool blocks, so without
      native_tools the tool exchange is rendered as plain text

    Returns (messages, system) tuple.
    """
    system_parts = [system_prompt] if system_prompt else []
    converted: List[Dict[str, Any]] = []

    def append(role: str, blocks: List[Dict[str, Any]]) -> None:
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": list(blocks)})

    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system_parts.append(msg.content)
            continue

        if msg.role == "assistant":
            blocks: List[Dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                if native_tools:
                    blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
                else:
                    blocks.append({"type": "text", "text": f"Calling tool: {_tool_call_as_text(tc)}"})
            if blocks:
                append("assistant", blocks)
        elif msg.role == "tool":
            if native_tools and msg.tool_call_id:
                append("user", [{
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                    "is_error": bool(msg.tool_result and not msg.tool_result.success),
                }])
            else:
                append("user", [{"type": "text", "text": _tool_message_as_text(msg)}])
        elif msg.content:
            append("user", [{"type": "text", "text": msg.content}])

    return converted, ("\n\n".join(system_parts) or None)


def _tool_response_payload(msg: ChatMessage) -> Dict[str, Any]:
    try:
        data = json.loads(msg.content)
    except (json.JSONDecodeError, TypeError):
        data = msg.content
    if isinstance(data, dict):
        return data
    return {"result": data}


def convert_to_gemini_contents(
    messages: List[ChatMessage],
    system_prompt: Optional[str] = None,
    native_tools: bool = True
) -> Tuple[List[genai_types.Content], Optional[str]]:
    """
    Convert to Gemini contents.

    Roles map assistant -> model; tool results travel as function_response parts.
    Returns (contents, system_instruction) tuple.
    """
    system_parts = [system_prompt] if system_prompt else []
    contents: List[genai_types.Content] = []

    def append(role: str, parts: List[genai_types.Part]) -> None:
        if contents and contents[-1].role == role:
            contents[-1].parts.extend(parts)
        else:
            contents.append(genai_types.Content(role=role, parts=list(parts)))

    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system_parts.append(msg.content)
            continue

        if msg.role == "assistant":
            parts: List[genai_types.Part] = []
            if msg.content:
                parts.append(genai_types.Part(text=msg.content))
            for tc in msg.tool_calls:
                if native_tools:
                    parts.append(genai_types.Part(
                        function_call=genai_types.FunctionCall(name=tc.name, args=tc.arguments)
                    ))
                else:
                    parts.append(genai_types.Part(text=f"Calling tool: {_tool_call_as_text(tc)}"))
            if parts:
                append("model", parts)
        elif msg.role == "tool":
            if native_tools and msg.name:
                append("user", [genai_types.Part(
                    function_response=genai_types.FunctionResponse(
                        name=msg.name,
                        response=_tool_response_payload(msg)
                    )
                )])
            else:
                append("user", [genai_types.Part(text=_tool_message_as_text(msg))])
        elif msg.content:
            append("user", [genai_types.Part(text=msg.content)])

    return contents, ("\n\n".join(system_parts) or None)


def convert_to_gemini_tools(tools: List[ToolSchema]) -> Optional[List[genai_types.Tool]]:
    """Convert tool schemas to Gemini Tool format."""
    function_declarations = [
        genai_types.FunctionDeclaration(
            name=tool.name,
            description=tool.description,
            parameters=tool.parameters  # Pass schema directly
        )
        for tool in tools
    ]
    if function_declarations:
        return [genai_types.Tool(function_declarations=function_declarations)]
    return None


def convert_to_ollama_messages(
    messages: List[ChatMessage],
    system_prompt: Optional[str] = None
) -> List[Dict[str, str]]:
    """Convert to plain Ollama chat messages; tool exchanges become text"""
    converted: List[Dict[str, str]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if msg.role == "assistant" and msg.tool_calls:
            payload = {"tool_calls": [{"name": tc.name, "arguments": tc.arguments} for tc in msg.tool_calls]}
            content = f"{msg.content}\n{json.dumps(payload, default=str)}".strip()
            converted.append({"role": "assistant", "content": content})
        elif msg.role == "tool":
            converted.append({"role": "user", "content": _tool_message_as_text(msg)})
        else:
            converted.append({"role": msg.role, "content": msg.content})

    return converted


# =============================================================================
# Service
# =============================================================================

class LLMService:
    """
    Provider-neutral completion with primary/fallback selection.

    Usage:
        service = LLMService(rate_limiter=limiter)
        response = await service.complete(messages, CompletionOptions(system_prompt=prompt))
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        primary_provider: Optional[str] = None,
        fallback_provider: Optional[str] = None
    ):
        self.rate_limiter = rate_limiter
        self.primary_provider = primary_provider or settings.PRIMARY_LLM_PROVIDER
        self.fallback_provider = (
            fallback_provider if fallback_provider is not None else settings.FALLBACK_LLM_PROVIDER
        )

    def get_available_providers(self) -> List[str]:
        """Configured providers in the order they are tried"""
        return provider_candidates(self.primary_provider, self.fallback_provider)

    def get_config(self) -> Dict[str, Any]:
        return {
            "primary_provider": self.primary_provider,
            "fallback_provider": self.fallback_provider,
            "models": {
                provider: model_for_provider(provider)
                for provider in ("openai", "anthropic", "google", "ollama")
                if provider_is_configured(provider)
            },
            "max_tokens": settings.LLM_MAX_TOKENS,
            "temperature": settings.LLM_TEMPERATURE,
            "max_tool_rounds": settings.MAX_TOOL_ROUNDS,
            "native_tool_calling": {
                provider: supports_native_tools(provider)
                for provider in self.get_available_providers()
            },
        }

    async def complete(
        self,
        messages: List[ChatMessage],
        options: Optional[CompletionOptions] = None
    ) -> LLMResponse:
        """
        Generate a completion, trying the primary provider first and then the fallback.

        Args:
            messages: Conversation so far (system prompt goes in options)
            options: Generation options; tools are only sent with enable_functions

        Returns:
            LLMResponse with normalized tool calls

        Raises:
            ConfigurationError: No provider is configured
            ProviderError: Every configured provider failed (the last failure)
        """
        options = options or CompletionOptions()
        candidates = self.get_available_providers()
        if not candidates:
            raise ConfigurationError(
                "No LLM providers configured. Set OPENAI_API_KEY, ANTHROPIC_API_KEY, "
                "GOOGLE_API_KEY or enable Ollama."
            )

        last_error: Optional[ProviderError] = None
        for provider in candidates:
            if self.rate_limiter is not None:
                admission = await self.rate_limiter.allow(
                    f"provider:{provider}",
                    settings.PROVIDER_RATE_LIMIT_MAX,
                    settings.PROVIDER_RATE_LIMIT_WINDOW_MS
                )
                if not admission.allowed:
                    logger.warning(f"Provider {provider} is rate limited, trying next candidate")
                    last_error = ProviderError(f"LLM API error ({provider}): rate limit exceeded", provider=provider)
                    continue

            try:
                return await self._complete_with(provider, messages, options)
            except ProviderError as e:
                logger.warning(f"{e}; trying next candidate" if provider != candidates[-1] else str(e))
                last_error = e

        raise last_error

    async def _complete_with(
        self,
        provider: str,
        messages: List[ChatMessage],
        options: CompletionOptions
    ) -> LLMResponse:
        model = model_for_provider(provider)
        max_tools = get_max_tools(provider)
        if len(options.tools) > max_tools:
            logger.warning(
                f"{provider} accepts at most {max_tools} tools; sending the first {max_tools} of {len(options.tools)}"
            )
            options = replace(options, tool_defs=options.tools[:max_tools])

        try:
            if provider == "openai":
                response = await self._call_openai(messages, model, options)
            elif provider == "anthropic":
                response = await self._call_claude(messages, model, options)
            elif provider == "google":
                response = await self._call_gemini(messages, model, options)
            elif provider == "ollama":
                response = await self._call_ollama(messages, model, options)
            else:
                raise ConfigurationError(f"Unknown LLM provider: {provider}")
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"LLM API error ({provider}): Request timed out after {settings.LLM_REQUEST_TIMEOUT}s",
                provider=provider
            ) from e
        except (ConfigurationError, ProviderError):
            raise
        except Exception as e:
            error_type = type(e).__name__
            raise ProviderError(f"LLM API error ({provider}): [{error_type}] {str(e)}", provider=provider) from e

        response.provider = provider
        logger.info(
            f"{provider} completion: model={response.model}, tool_calls={len(response.tool_calls)}, "
            f"tokens={response.usage.total_tokens}"
        )
        return response

    async def _call_openai(
        self,
        messages: List[ChatMessage],
        model: str,
        options: CompletionOptions
    ) -> LLMResponse:
        """Call OpenAI API with optional function calling support"""
        client = AsyncOpenAI(api_key=get_provider_api_key("openai"), timeout=settings.LLM_REQUEST_TIMEOUT)

        request_kwargs = {
            "model": model,
            "messages": convert_to_openai_messages(messages, options.system_prompt),
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.tools:
            request_kwargs["tools"] = [tool.to_openai_format() for tool in options.tools]
            request_kwargs["tool_choice"] = "auto"

        response = await client.chat.completions.create(**request_kwargs)

        message = response.choices[0].message
        usage = response.usage

        return LLMResponse(
            content=message.content or "",
            model=getattr(response, "model", None) or model,
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
                total_tokens=usage.total_tokens if usage else 0,
            ),
            tool_calls=parse_openai_tool_calls(message.tool_calls) if options.tools else [],
        )

    async def _call_claude(
        self,
        messages: List[ChatMessage],
        model: str,
        options: CompletionOptions
    ) -> LLMResponse:
        """
        Call Claude (Anthropic) API with native tool calling support.

        System prompt is a separate parameter and tool definitions use
        input_schema instead of parameters.
        """
        client = AsyncAnthropic(api_key=get_provider_api_key("anthropic"), timeout=settings.LLM_REQUEST_TIMEOUT)

        converted, system_content = convert_to_anthropic_messages(
            messages, options.system_prompt, native_tools=bool(options.tools)
        )

        request_kwargs = {
            "model": model,
            "max_tokens": options.max_tokens,
            "messages": converted,
            "temperature": options.temperature,
        }
        if system_content:
            request_kwargs["system"] = system_content
        if options.tools:
            request_kwargs["tools"] = [tool.to_anthropic_format() for tool in options.tools]

        response = await client.messages.create(**request_kwargs)

        content, tool_calls = parse_anthropic_content(response.content)
        usage = response.usage
        prompt_tokens = usage.input_tokens if usage else 0
        completion_tokens = usage.output_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=getattr(response, "model", None) or model,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            tool_calls=tool_calls if options.tools else [],
        )

    async def _call_gemini(
        self,
        messages: List[ChatMessage],
        model: str,
        options: CompletionOptions
    ) -> LLMResponse:
        """
        Call Gemini (Google) API with tool calling support.

        Uses the google-genai SDK with async support via client.aio namespace.
        """
        client = genai.Client(api_key=get_provider_api_key("google"))

        contents, system_instruction = convert_to_gemini_contents(
            messages, options.system_prompt, native_tools=bool(options.tools)
        )

        config_kwargs = {
            "temperature": options.temperature,
            "max_output_tokens": options.max_tokens,
        }
        if system_instruction:
            config_kwargs["system_instruction"] = system_instruction
        if options.tools:
            config_kwargs["tools"] = convert_to_gemini_tools(options.tools)
            # Tool calls are executed by the orchestration engine, not the SDK
            config_kwargs["automatic_function_calling"] = {"disable": True}

        config = genai_types.GenerateContentConfig(**config_kwargs)

        response = await asyncio.wait_for(
            client.aio.models.generate_content(model=model, contents=contents, config=config),
            timeout=settings.LLM_REQUEST_TIMEOUT
        )

        content, tool_calls = parse_gemini_response(response)

        usage_metadata = getattr(response, "usage_metadata", None)
        prompt_tokens = getattr(usage_metadata, "prompt_token_count", None) or 0
        completion_tokens = getattr(usage_metadata, "candidates_token_count", None) or 0
        total_tokens = getattr(usage_metadata, "total_token_count", None) or (prompt_tokens + completion_tokens)

        return LLMResponse(
            content=content,
            model=model,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
            ),
            tool_calls=tool_calls if options.tools else [],
        )

    async def _call_ollama(
        self,
        messages: List[ChatMessage],
        model: str,
        options: CompletionOptions
    ) -> LLMResponse:
        """Call local Ollama API; tools are described in the system prompt"""
        client = AsyncClient(host=settings.OLLAMA_BASE_URL)

        system_prompt = options.system_prompt or ""
        if options.tools:
            system_prompt = f"{system_prompt}\n\n{build_tools_prompt(options.tools)}".strip()

        response = await asyncio.wait_for(
            client.chat(
                model=model,
                messages=convert_to_ollama_messages(messages, system_prompt or None),
                options={
                    "temperature": options.temperature,
                    "num_predict": options.max_tokens or -1
                }
            ),
            timeout=settings.LLM_REQUEST_TIMEOUT
        )

        # Handle both dict (older ollama versions) and ChatResponse object (newer versions)
        if isinstance(response, dict):
            message = response.get("message", {})
            content = message.get("content", "") if isinstance(message, dict) else ""
            eval_count = response.get("eval_count", 0) or 0
            prompt_eval_count = response.get("prompt_eval_count", 0) or 0
        else:
            message = getattr(response, "message", None)
            content = (getattr(message, "content", "") or "") if message else ""
            eval_count = getattr(response, "eval_count", 0) or 0
            prompt_eval_count = getattr(response, "prompt_eval_count", 0) or 0

        tool_calls: List[ToolCall] = []
        if options.tools:
            content, tool_calls = parse_text_tool_calls(content)

        return LLMResponse(
            content=content,
            model=model,
            usage=TokenUsage(
                prompt_tokens=prompt_eval_count,
                completion_tokens=eval_count,
                total_tokens=prompt_eval_count + eval_count,
            ),
            tool_calls=tool_calls,
        )

"""
Tool Calling Agent - Orchestration loop for one user turn

This module implements the state machine that:
1. Sends the conversation to the LLM with tool definitions
2. Drops tool calls whose data source is not enabled for the session
3. Executes the remaining calls concurrently and merges the results
4. Lets the LLM narrate the results, re-enabling tools only for a chained
   lookup (e.g. field boundary first, then the weather at its coordinates)
5. Sanitizes the final narration and scores it for telemetry

States: INIT -> GENERATING -> (DONE | FILTERING) -> EXECUTING -> MERGING
        -> REGENERATING -> (DONE | FILTERING)
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from farmassist.core.config import settings
from farmassist.core.logging_config import get_logger
from farmassist.core.rate_limiter import RateLimiter
from farmassist.schemas.chat import AssistantMessage, ChatMessage, LLMResponse, TokenUsage, ValidationResult
from farmassist.services.ai.llm_service import CompletionOptions, LLMService, ProviderError
from farmassist.services.ai.prompts import (
    AGRICULTURAL_SYSTEM_PROMPT,
    CHAINED_TOOL_HINT,
    CONNECTION_ERROR_CODES,
    CONNECTION_ERROR_HINT,
    DATA_RECEIVED_HINT,
    DISABLED_SOURCES_HINT,
)
from farmassist.services.progress_stream import ProgressStreamHub
from farmassist.services.response_sanitizer import sanitize_response_content
from farmassist.services.response_validator import ResponseValidator
from farmassist.services.tools.capabilities import SessionContext, filter_tool_calls
from farmassist.services.tools.chaining import DEFAULT_CHAIN_POLICY, ChainPolicy, ExecutedToolCall
from farmassist.services.tools.executor import ToolExecutor
from farmassist.services.tools.registry import ToolRegistry
from farmassist.services.tools.schema import ToolCall, ToolResult


class AgentState(str, Enum):
    """States the agent moves through during one turn"""
    INIT = "init"
    GENERATING = "generating"
    FILTERING = "filtering"
    EXECUTING = "executing"
    MERGING = "merging"
    REGENERATING = "regenerating"
    DONE = "done"


@dataclass
class RoundRecord:
    """What happened in one generation of the turn"""
    index: int
    tools_enabled: bool
    requested: List[ToolCall] = field(default_factory=list)
    retained: List[ToolCall] = field(default_factory=list)
    dropped: List[ToolCall] = field(default_factory=list)
    results: List[ToolResult] = field(default_factory=list)
    chained: bool = False


@dataclass
class AgentRunResult:
    """Outcome of a turn, ready to be persisted by the caller"""
    response: str
    raw_response: str
    model: str
    provider: Optional[str]
    usage: TokenUsage
    requested_tool_calls: List[ToolCall]
    executed_tool_calls: List[ToolCall]
    dropped_tool_calls: List[ToolCall]
    tool_results: List[ToolResult]
    rounds: List[RoundRecord]
    provider_calls: int
    tool_rounds: int
    validation: Optional[ValidationResult] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_assistant_message(self) -> AssistantMessage:
        """Final message with the metadata the transcript stores next to it"""
        metadata: Dict[str, Any] = {
            "model": self.model,
            "provider": self.provider,
            "usage": self.usage.model_dump(),
            "functionCalls": [tc.model_dump() for tc in self.requested_tool_calls],
            "droppedFunctionCalls": [tc.model_dump() for tc in self.dropped_tool_calls],
            "toolResults": [
                {
                    "tool_call_id": r.tool_call_id,
                    "tool_name": r.tool_name,
                    "success": r.success,
                    "error": r.error,
                    "execution_time_ms": r.execution_time_ms,
                }
                for r in self.tool_results
            ],
        }
        if self.validation is not None:
            metadata["validation"] = self.validation.model_dump()

        return AssistantMessage(content=self.response, created_at=self.created_at, metadata=metadata)


class ToolCallingAgent:
    """
    Drives one user turn through zero or more tool rounds.

    At most `max_tool_rounds` generations run with tools enabled. After every
    tool round the model narrates the results; tools stay enabled for that
    narration only when the chain policy asks for a dependent lookup.

    Usage:
        agent = ToolCallingAgent(llm_service, registry, session, progress_hub=hub)
        result = await agent.run(messages)
        print(result.response)
    """

    def __init__(
        self,
        llm_service: LLMService,
        registry: ToolRegistry,
        session: SessionContext,
        rate_limiter: Optional[RateLimiter] = None,
        progress_hub: Optional[ProgressStreamHub] = None,
        chain_policy: Optional[ChainPolicy] = None,
        validator: Optional[ResponseValidator] = None,
        max_tool_rounds: Optional[int] = None,
        system_prompt: Optional[str] = None
    ):
        """
        Initialize the tool calling agent.

        Args:
            llm_service: Provider-neutral completion service
            registry: Tools the model may call
            session: Session id and enabled capabilities for this turn
            rate_limiter: Optional limiter applied to every tool call
            progress_hub: Optional hub receiving progress events for the session
            chain_policy: Decides whether a narration round may call tools again
            validator: Advisory scorer (defaults to ResponseValidator when enabled)
            max_tool_rounds: Tool-enabled generations per turn (defaults to MAX_TOOL_ROUNDS)
            system_prompt: Base system prompt (defaults to the agricultural prompt)
        """
        self.llm_service = llm_service
        self.registry = registry
        self.session = session
        self.progress_hub = progress_hub
        self.chain_policy = chain_policy or DEFAULT_CHAIN_POLICY
        self.max_tool_rounds = max_tool_rounds or settings.MAX_TOOL_ROUNDS
        self.system_prompt = system_prompt or AGRICULTURAL_SYSTEM_PROMPT
        self.tool_executor = ToolExecutor(registry, session, rate_limiter)

        if validator is None and settings.RESPONSE_VALIDATION_ENABLED:
            validator = ResponseValidator()
        self.validator = validator

        self.state = AgentState.INIT
        self.logger = get_logger(__name__)
        self.logger.set_context(session_id=session.session_id)

    async def run(
        self,
        messages: List[ChatMessage],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> AgentRunResult:
        """
        Run the turn until the model produces a narration without tool calls.

        Args:
            messages: Prior conversation ending with the user's message
            max_tokens: Optional override of LLM_MAX_TOKENS
            temperature: Optional override of LLM_TEMPERATURE

        Returns:
            AgentRunResult with the sanitized response and the full tool audit

        Raises:
            ConfigurationError: No LLM provider is configured
            ProviderError: Generation failed; carries the tool results gathered so far
        """
        self.state = AgentState.INIT
        conversation = list(messages)
        user_query = self._latest_user_query(conversation)
        tool_defs = self.registry.get_tool_schemas()

        rounds: List[RoundRecord] = []
        requested: List[ToolCall] = []
        executed: List[ToolCall] = []
        dropped: List[ToolCall] = []
        results: List[ToolResult] = []
        usage = TokenUsage()
        provider_calls = 0
        tool_rounds = 0

        tools_enabled = bool(tool_defs)
        system_prompt = self.system_prompt

        await self._progress("analyzing", "Analyzing your request")
        self.state = AgentState.GENERATING

        while True:
            record = RoundRecord(index=len(rounds) + 1, tools_enabled=tools_enabled)
            rounds.append(record)
            if tools_enabled:
                tool_rounds += 1

            self.logger.info(
                f"Round {record.index}: {self.state.value} (tools {'enabled' if tools_enabled else 'disabled'})"
            )

            response = await self._generate(
                conversation,
                CompletionOptions(
                    max_tokens=max_tokens or settings.LLM_MAX_TOKENS,
                    temperature=temperature if temperature is not None else settings.LLM_TEMPERATURE,
                    system_prompt=system_prompt,
                    enable_functions=tools_enabled,
                    tool_defs=tool_defs if tools_enabled else [],
                ),
                results
            )
            provider_calls += 1
            usage = usage + response.usage

            tool_calls = response.tool_calls
            if tool_calls and not tools_enabled:
                self.logger.warning(f"Ignoring {len(tool_calls)} tool call(s) from a tools-disabled generation")
                tool_calls = []

            if not tool_calls:
                self.state = AgentState.DONE
                break

            # FILTERING
            self.state = AgentState.FILTERING
            retained, round_dropped = filter_tool_calls(tool_calls, self.session, self.registry)
            record.requested = list(tool_calls)
            record.retained = retained
            record.dropped = round_dropped
            requested.extend(tool_calls)
            dropped.extend(round_dropped)

            # EXECUTING
            self.state = AgentState.EXECUTING
            round_results: Dict[str, ToolResult] = {}
            if retained:
                await self._progress(
                    "calling_tools",
                    f"Fetching data from {len(retained)} source(s)",
                    tools=[tc.name for tc in retained]
                )
                round_results = await self.tool_executor.execute_many(retained, on_result=self._report_tool_result)

            # MERGING
            self.state = AgentState.MERGING
            round_executed: List[ExecutedToolCall] = []
            if retained:
                conversation.append(ChatMessage(role="assistant", content=response.content, tool_calls=retained))
                for tc in retained:
                    result = round_results[tc.id]
                    conversation.append(ChatMessage(
                        role="tool",
                        content=result.to_message_content(),
                        tool_call_id=tc.id,
                        name=tc.name,
                        tool_result=result
                    ))
                    round_executed.append(ExecutedToolCall(call=tc, result=result))
                    record.results.append(result)
            executed.extend(retained)
            results.extend(record.results)

            chained = bool(round_executed) and self.chain_policy(round_executed, user_query)
            if chained and tool_rounds >= self.max_tool_rounds:
                self.logger.info(f"Chained tool use requested but the {self.max_tool_rounds}-round bound is reached")
                chained = False
            record.chained = chained

            system_prompt = self._round_prompt(record)
            tools_enabled = chained

            # REGENERATING
            self.state = AgentState.REGENERATING
            await self._progress("generating_response", "Preparing your answer")

        raw_response = response.content
        sanitized = sanitize_response_content(raw_response)

        validation = None
        if self.validator is not None:
            validation = self.validator.validate(user_query, sanitized, results)
            self.logger.info(f"Response validation: confidence={validation.confidence} ({'; '.join(validation.notes)})")

        self.logger.info(
            f"Turn complete: {provider_calls} generation(s), {tool_rounds} tool round(s), "
            f"{len(executed)} executed, {len(dropped)} dropped, {usage.total_tokens} tokens"
        )
        await self._progress("complete", "Response ready")

        return AgentRunResult(
            response=sanitized,
            raw_response=raw_response,
            model=response.model,
            provider=response.provider,
            usage=usage,
            requested_tool_calls=requested,
            executed_tool_calls=executed,
            dropped_tool_calls=dropped,
            tool_results=results,
            rounds=rounds,
            provider_calls=provider_calls,
            tool_rounds=tool_rounds,
            validation=validation,
        )

    async def _generate(
        self,
        conversation: List[ChatMessage],
        options: CompletionOptions,
        gathered: List[ToolResult]
    ) -> LLMResponse:
        try:
            return await self.llm_service.complete(conversation, options)
        except ProviderError as e:
            if not gathered:
                raise
            self.logger.error(f"Generation failed after {len(gathered)} tool result(s): {e}")
            raise ProviderError(str(e), provider=e.provider, tool_results=gathered) from e

    def _round_prompt(self, record: RoundRecord) -> str:
        """System prompt for the generation that follows a tool round"""
        hints: List[str] = []

        if record.chained:
            hints.append(CHAINED_TOOL_HINT)
        elif any(self._is_connection_error(r) for r in record.results):
            hints.append(CONNECTION_ERROR_HINT)
        elif record.results:
            hints.append(DATA_RECEIVED_HINT)

        if record.dropped:
            sources = sorted({
                capability.value
                for capability in (self.registry.capability_for(tc.name) for tc in record.dropped)
                if capability is not None
            })
            hints.append(DISABLED_SOURCES_HINT.format(sources=", ".join(sources)))

        return "\n\n".join([self.system_prompt, *hints])

    @staticmethod
    def _is_connection_error(result: ToolResult) -> bool:
        return not result.success and result.error in CONNECTION_ERROR_CODES

    @staticmethod
    def _latest_user_query(conversation: List[ChatMessage]) -> str:
        for msg in reversed(conversation):
            if msg.role == "user":
                return msg.content
        return ""

    async def _report_tool_result(self, result: ToolResult) -> None:
        status = "completed" if result.success else "failed"
        await self._progress(
            "tool_complete",
            f"{result.tool_name} {status}",
            tool=result.tool_name,
            tool_call_id=result.tool_call_id,
            success=result.success
        )

    async def _progress(self, step: str, message: str, **extra: Any) -> None:
        if self.progress_hub is not None:
            await self.progress_hub.send_progress(self.session.session_id, step, message, **extra)

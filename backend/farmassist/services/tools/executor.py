"""
Tool Executor - Safe execution of tools with validation and admission control

This module wraps every tool invocation so that the orchestration engine never
sees an exception from a tool:
- Parameter validation against the tool's JSON schema
- Per-session rate limiting of each tool
- Handler failures captured as structured results
- Concurrent fan-out of a round's calls, results keyed by call id
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import time
import logging

from farmassist.core.config import settings
from farmassist.core.rate_limiter import RateLimiter
from farmassist.services.tools.capabilities import SessionContext
from farmassist.services.tools.registry import ToolRegistry
from farmassist.services.tools.schema import ToolCall, ToolResult, ToolSchema, generate_call_id

logger = logging.getLogger(__name__)


class ToolExecutionError(Exception):
    """Raised when a tool handler fails"""
    pass


class ToolValidationError(Exception):
    """Raised when tool parameters are invalid"""
    pass


class ToolExecutor:
    """
    Safe tool execution with validation and limits.

    This class wraps tool execution to ensure:
    1. Parameters are validated before execution
    2. Each tool is admitted by the rate limiter for the session
    3. Errors are caught and reported as failure results, never raised

    No timeout is applied here; latency is bounded by the tool collaborators.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        session: SessionContext,
        rate_limiter: Optional[RateLimiter] = None,
        max_calls: Optional[int] = None,
        window_ms: Optional[int] = None
    ):
        """
        Initialize the tool executor.

        Args:
            registry: Registry to resolve tool names against
            session: Session the calls run for (passed to every handler)
            rate_limiter: Optional limiter; tools are not rate limited without one
            max_calls: Calls per tool per window (defaults to TOOL_RATE_LIMIT_MAX)
            window_ms: Window length in ms (defaults to TOOL_RATE_LIMIT_WINDOW_MS)
        """
        self.registry = registry
        self.session = session
        self.rate_limiter = rate_limiter
        self.max_calls = max_calls or settings.TOOL_RATE_LIMIT_MAX
        self.window_ms = window_ms or settings.TOOL_RATE_LIMIT_WINDOW_MS

    async def execute(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        call_id: Optional[str] = None
    ) -> ToolResult:
        """
        Execute a tool with the given arguments.

        Args:
            tool_name: Name of the tool to execute
            arguments: Arguments to pass to the tool
            call_id: Id of the originating tool call (synthesized when omitted)

        Returns:
            ToolResult with success status and data or error
        """
        call_id = call_id or generate_call_id()
        start_time = time.time()

        registered_tool = self.registry.get_tool(tool_name)
        if not registered_tool:
            logger.warning(f"Model requested unknown tool: {tool_name}")
            return ToolResult(
                tool_call_id=call_id,
                tool_name=tool_name,
                success=False,
                error=f"Unknown tool: {tool_name}",
                error_type="UnknownTool"
            )

        try:
            self._validate_arguments(tool_name, arguments, registered_tool.definition.tool_schema)
        except ToolValidationError as e:
            logger.info(f"Rejected call to {tool_name}: {e}")
            return ToolResult(
                tool_call_id=call_id,
                tool_name=tool_name,
                success=False,
                error=str(e),
                error_type=type(e).__name__
            )

        if self.rate_limiter is not None:
            key = f"tool:{self.session.session_id}:{tool_name}"
            admission = await self.rate_limiter.allow(key, self.max_calls, self.window_ms)
            if not admission.allowed:
                logger.warning(f"Tool {tool_name} rate limited for session {self.session.session_id}")
                return ToolResult(
                    tool_call_id=call_id,
                    tool_name=tool_name,
                    success=False,
                    error=f"Rate limit exceeded for {tool_name}. Please try again shortly.",
                    error_type="RateLimitExceeded"
                )

        try:
            try:
                result = await registered_tool.handler(session=self.session, **arguments)
            except Exception as e:
                raise ToolExecutionError(f"{type(e).__name__}: {e}") from e
        except ToolExecutionError as e:
            execution_time_ms = int((time.time() - start_time) * 1000)
            logger.exception(f"Tool {tool_name} failed: {e}")
            return ToolResult(
                tool_call_id=call_id,
                tool_name=tool_name,
                success=False,
                error=str(e),
                error_type=type(e).__name__,
                execution_time_ms=execution_time_ms
            )

        execution_time_ms = int((time.time() - start_time) * 1000)

        # Integrations report connection and permission problems as payloads
        if isinstance(result, dict) and result.get("error"):
            logger.info(f"Tool {tool_name} reported an error payload: {result.get('error')}")
            return ToolResult(
                tool_call_id=call_id,
                tool_name=tool_name,
                success=False,
                data=result,
                error=str(result.get("error")),
                error_type="ToolReportedError",
                execution_time_ms=execution_time_ms
            )

        logger.info(f"Tool {tool_name} executed in {execution_time_ms}ms")

        return ToolResult(
            tool_call_id=call_id,
            tool_name=tool_name,
            success=True,
            data=result,
            execution_time_ms=execution_time_ms
        )

    async def execute_many(
        self,
        tool_calls: List[ToolCall],
        on_result: Optional[Callable[[ToolResult], Awaitable[None]]] = None
    ) -> Dict[str, ToolResult]:
        """
        Run a round's tool calls concurrently.

        Every call is scheduled before any is awaited. One call failing never
        cancels or blocks the others.

        Args:
            tool_calls: Calls retained for this round (ids must be unique)
            on_result: Awaited with each result as soon as its call finishes

        Returns:
            Results keyed by call id, in the order of `tool_calls`
        """
        async def run_one(tc: ToolCall) -> ToolResult:
            try:
                result = await self.execute(tc.name, tc.arguments, call_id=tc.id)
            except Exception as e:
                # execute() converts handler failures itself; this catches store errors and the like
                logger.error(f"Tool {tc.name} ({tc.id}) crashed outside its handler: {e!r}")
                result = ToolResult(
                    tool_call_id=tc.id,
                    tool_name=tc.name,
                    success=False,
                    error=str(e) or type(e).__name__,
                    error_type=ToolExecutionError.__name__
                )
            if on_result is not None:
                try:
                    await on_result(result)
                except Exception as e:
                    logger.warning(f"Result callback failed for {tc.name} ({tc.id}): {e}")
            return result

        outcomes = await asyncio.gather(*(run_one(tc) for tc in tool_calls))
        return {tc.id: outcome for tc, outcome in zip(tool_calls, outcomes)}

    def _validate_arguments(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        schema: ToolSchema
    ) -> None:
        """
        Validate tool arguments against the schema.

        Raises ToolValidationError if validation fails.
        """
        properties = schema.parameters.get("properties", {})

        missing = [param for param in schema.required_parameters if param not in arguments]
        if missing:
            raise ToolValidationError(f"Missing required parameter(s): {', '.join(missing)}")

        for param_name, param_value in arguments.items():
            if param_name not in properties:
                # Allow unknown parameters but log a warning
                logger.warning(f"Unknown parameter {param_name} for tool {tool_name}")
                continue

            param_spec = properties[param_name]
            expected_type = param_spec.get("type")
            enum_values = param_spec.get("enum")

            if expected_type and not self._check_type(param_value, expected_type):
                raise ToolValidationError(
                    f"Parameter {param_name} should be {expected_type}, got {type(param_value).__name__}"
                )

            if enum_values and param_value not in enum_values:
                raise ToolValidationError(
                    f"Parameter {param_name} must be one of: {', '.join(map(str, enum_values))}"
                )

    def _check_type(self, value: Any, expected: str) -> bool:
        """Check if value matches expected JSON Schema type"""
        if expected in ("number", "integer") and isinstance(value, bool):
            return False
        type_map = {
            "string": str,
            "number": (int, float),
            "integer": int,
            "boolean": bool,
            "array": list,
            "object": dict,
        }
        expected_types = type_map.get(expected)
        if expected_types is None:
            return True  # Unknown type, allow
        return isinstance(value, expected_types)

"""
Tool Calling System for the FarmAssist chat

This package provides OpenAI-style function/tool calling, letting the LLM pull
farm data from the registered data-source integrations.

Main components:
- schema.py: Pydantic models for tool definitions, calls and results
- registry.py: Registry of available tools and their handlers
- capabilities.py: Session capability sets and tool call filtering
- executor.py: Safe tool execution with validation & rate limiting
- chaining.py: Policies deciding when a follow-up round may call tools
- provider_adapter.py: Provider capabilities (native vs simulated)
- agent.py: Orchestration loop for one user turn (import it from the module)
"""

from farmassist.services.tools.schema import (
    ToolCall,
    ToolCapability,
    ToolDefinition,
    ToolResult,
    ToolSchema,
)
from farmassist.services.tools.registry import tool_registry, ToolRegistry
from farmassist.services.tools.capabilities import SessionContext, filter_tool_calls, parse_capabilities
from farmassist.services.tools.executor import ToolExecutor, ToolExecutionError, ToolValidationError
from farmassist.services.tools.provider_adapter import get_provider_capabilities, ProviderCapabilities

__all__ = [
    "ToolCall",
    "ToolCapability",
    "ToolDefinition",
    "ToolResult",
    "ToolSchema",
    "tool_registry",
    "ToolRegistry",
    "SessionContext",
    "filter_tool_calls",
    "parse_capabilities",
    "ToolExecutor",
    "ToolExecutionError",
    "ToolValidationError",
    "get_provider_capabilities",
    "ProviderCapabilities",
]

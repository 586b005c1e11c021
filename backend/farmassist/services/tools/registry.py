"""
Tool Registry - Central registration for all available tools

The registry holds every tool definition together with its async handler.
Data-source integrations register their tools at application startup and the
orchestration engine looks them up by name.
"""

from typing import Dict, Callable, Awaitable, Any, List, Optional
from dataclasses import dataclass
import logging

from farmassist.services.tools.schema import ToolCapability, ToolDefinition, ToolSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredTool:
    """A tool that has been registered with the registry"""
    definition: ToolDefinition
    handler: Callable[..., Awaitable[Any]]


class ToolRegistry:
    """
    Central registry for all available tools.

    Names are unique: registering a second tool under an existing name raises
    ValueError instead of silently replacing the first one.

    Usage:
        from farmassist.services.tools.registry import tool_registry

        # Register a tool
        @tool_registry.register(definition)
        async def get_fields(session, organization_id=None, **kwargs):
            ...

        # Get OpenAI format
        openai_tools = tool_registry.get_openai_tools_spec()
    """

    def __init__(self):
        self._tools: Dict[str, RegisteredTool] = {}

    def register(
        self,
        definition: ToolDefinition
    ) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
        """
        Decorator to register a tool handler.

        Usage:
            @tool_registry.register(my_tool_definition)
            async def my_tool(session, **kwargs):
                ...
        """
        def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
            self.register_tool(definition, func)
            return func
        return decorator

    def register_tool(
        self,
        definition: ToolDefinition,
        handler: Callable[..., Awaitable[Any]]
    ) -> None:
        """
        Programmatic registration of a tool.

        Args:
            definition: The tool definition
            handler: Async function to handle tool calls

        Raises:
            ValueError: If a tool with the same name is already registered
        """
        name = definition.name
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")

        self._tools[name] = RegisteredTool(definition=definition, handler=handler)
        capability = definition.capability.value if definition.capability else "always"
        logger.info(f"Registered tool: {name} (capability: {capability})")

    def get_tool(self, name: str) -> Optional[RegisteredTool]:
        """Get a registered tool by name"""
        return self._tools.get(name)

    def get_all_tools(self) -> List[RegisteredTool]:
        """Get all registered tools"""
        return list(self._tools.values())

    def get_tool_schemas(self) -> List[ToolSchema]:
        """Schemas of every registered tool, in registration order"""
        return [tool.definition.tool_schema for tool in self._tools.values()]

    def capability_for(self, name: str) -> Optional[ToolCapability]:
        """Capability a tool needs, or None for unknown and always-available tools"""
        tool = self._tools.get(name)
        return tool.definition.capability if tool else None

    def get_openai_tools_spec(self) -> List[Dict[str, Any]]:
        """
        Get all tools in OpenAI function calling format.

        Returns a list suitable for passing to the OpenAI API's `tools` parameter.
        """
        return [schema.to_openai_format() for schema in self.get_tool_schemas()]

    def clear(self) -> None:
        """Clear all registered tools (useful for testing)"""
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def build_tools_prompt(schemas: List[ToolSchema]) -> str:
    """
    Generate a tools description prompt for LLMs without native tool support.

    This creates a human-readable description of the given tools that can be
    injected into the system prompt for Ollama and similar providers.
    """
    tools_desc = [schema.to_prompt_format() for schema in schemas]

    return """You have access to the following farm data tools:

{}

To use a tool, respond with a JSON object in this EXACT format:
{{"tool_calls": [{{"name": "tool_name", "arguments": {{"arg1": "value1"}}}}]}}

IMPORTANT:
- Only output the JSON when you need to call a tool
- You can call multiple tools at once by adding more items to the array
- After receiving tool results, analyze them and provide a clear answer
- If you have enough information to answer WITHOUT tools, respond naturally (no JSON)

Example tool call:
{{"tool_calls": [{{"name": "getFields", "arguments": {{}}}}]}}
""".format("\n".join(tools_desc))


# Default registry used by the application; tests build their own instances
tool_registry = ToolRegistry()

"""
Tool Definition Schema - OpenAI Function Calling Format

Defines Pydantic models for tool definitions, the calls a model makes against
them and the results fed back into the conversation.
"""

import json
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolCapability(str, Enum):
    """
    Data-source capability a tool depends on.

    A session enables a set of these; a tool is only executed when the
    capability it declares is part of that set.
    """
    JOHN_DEERE = "johndeere"
    WEATHER = "weather"
    EU_COMMISSION = "eu-commission"
    USDA = "usda"
    SATSHOT = "satshot"
    AURAVANT = "auravant"


class ToolSchema(BaseModel):
    """
    OpenAI-compatible function/tool definition.

    This schema follows the OpenAI function calling format:
    https://platform.openai.com/docs/guides/function-calling
    """
    name: str = Field(..., description="Unique tool identifier")
    description: str = Field(..., description="Clear description of what the tool does and when to use it")
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []},
        description="JSON Schema for the tool's parameters"
    )

    @property
    def required_parameters(self) -> List[str]:
        return list(self.parameters.get("required", []))

    def to_openai_format(self) -> Dict[str, Any]:
        """Convert to OpenAI tools API format"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters
            }
        }

    def to_anthropic_format(self) -> Dict[str, Any]:
        """Convert to Anthropic tools format (input_schema instead of parameters)"""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters or {"type": "object", "properties": {}},
        }

    def to_prompt_format(self) -> str:
        """Convert to human-readable format for prompt injection (Ollama)"""
        params_desc = []
        properties = self.parameters.get("properties", {})
        required = self.parameters.get("required", [])

        for param_name, param_spec in properties.items():
            param_type = param_spec.get("type", "string")
            param_desc = param_spec.get("description", "")
            is_required = param_name in required
            enum_values = param_spec.get("enum", [])

            param_str = f"  - {param_name} ({param_type}"
            if is_required:
                param_str += ", required"
            param_str += f"): {param_desc}"
            if enum_values:
                param_str += f" [options: {', '.join(enum_values)}]"
            params_desc.append(param_str)

        params_section = "\n".join(params_desc) if params_desc else "  (no parameters)"

        return f"""Tool: {self.name}
Description: {self.description}
Parameters:
{params_section}
"""


class ToolDefinition(BaseModel):
    """
    Full tool registration metadata.

    Frozen: a definition cannot change once it has been registered.
    """
    model_config = ConfigDict(frozen=True)

    # Named tool_schema to avoid shadowing BaseModel.schema
    tool_schema: ToolSchema
    capability: Optional[ToolCapability] = Field(
        default=None,
        description="Data source the tool needs. None means the tool is always available."
    )

    @property
    def name(self) -> str:
        return self.tool_schema.name


def generate_call_id() -> str:
    """Synthesize a call id for providers that do not return one"""
    return f"call_{uuid.uuid4().hex[:12]}"


class ToolCall(BaseModel):
    """Represents a single tool call from the LLM, normalized across providers"""
    id: str = Field(default_factory=generate_call_id, description="Unique identifier for this tool call")
    name: str = Field(..., description="Name of the tool to call")
    arguments: Dict[str, Any] = Field(
        default_factory=dict,
        description="Arguments to pass to the tool"
    )


class ToolResult(BaseModel):
    """Result from tool execution"""
    tool_call_id: str
    tool_name: str
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    execution_time_ms: int = 0

    def to_message_content(self) -> str:
        """Convert to string for LLM message"""
        if self.success:
            if isinstance(self.data, (dict, list)):
                return json.dumps(self.data, indent=2, default=str)
            return str(self.data)
        if isinstance(self.data, dict):
            # Structured failures (e.g. connection errors) carry guidance for the model
            return json.dumps({"error": self.error, **self.data}, indent=2, default=str)
        return f"Error: {self.error}"

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime, timezone

from farmassist.services.tools.schema import ToolCall, ToolResult


MessageRole = Literal["user", "assistant", "system", "tool"]


class ChatMessage(BaseModel):
    """One entry of the conversation handed to the model."""
    role: MessageRole = Field(..., description="Role of the message sender")
    content: str = Field("", description="Content of the message")
    tool_calls: List[ToolCall] = Field(
        default_factory=list,
        description="Tool calls requested by an assistant message"
    )
    tool_call_id: Optional[str] = Field(None, description="Call id a tool message answers")
    name: Optional[str] = Field(None, description="Tool name for tool messages")
    tool_result: Optional[ToolResult] = None

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value):
        # Older transcripts store tool output under the legacy "function" role
        if value == "function":
            return "tool"
        return value

    @field_validator("content", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class LLMResponse(BaseModel):
    """Provider-neutral completion result."""
    content: str = ""
    model: str
    provider: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ValidationResult(BaseModel):
    confidence: int = Field(..., ge=0, le=100)
    notes: List[str] = Field(default_factory=list)


ProgressEventType = Literal["connection", "heartbeat", "progress"]


class ProgressEvent(BaseModel):
    session_id: str
    type: ProgressEventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> Dict[str, Any]:
        """Flattened shape written to the push channel"""
        return {
            "type": self.type,
            **self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# HTTP request / response models
# =============================================================================

class RequestOptions(BaseModel):
    max_tokens: Optional[int] = Field(None, gt=0, description="Maximum tokens in response")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0, description="Sampling temperature")


class CompletionRequest(BaseModel):
    session_id: str = Field(..., min_length=1, alias="sessionId")
    messages: List[ChatMessage] = Field(..., min_length=1)
    options: RequestOptions = Field(default_factory=RequestOptions)
    enabled_capabilities: List[str] = Field(
        default_factory=list,
        alias="enabledCapabilities",
        description="Data sources the user enabled for this session"
    )

    model_config = {"populate_by_name": True}


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CompletionResponse(BaseModel):
    message: AssistantMessage
    usage: TokenUsage
    model: str


class ProviderStatusResponse(BaseModel):
    status: str
    providers: List[str]
    config: Dict[str, Any]

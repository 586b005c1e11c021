"""
FastAPI dependencies resolving the shared services created at startup.
"""

from fastapi import Request

from farmassist.core.rate_limiter import RateLimiter
from farmassist.services.ai.llm_service import LLMService
from farmassist.services.progress_stream import ProgressStreamHub
from farmassist.services.tools.registry import ToolRegistry


def get_llm_service(request: Request) -> LLMService:
    return request.app.state.llm_service


def get_tool_registry(request: Request) -> ToolRegistry:
    return request.app.state.tool_registry


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_progress_hub(request: Request) -> ProgressStreamHub:
    return request.app.state.progress_hub

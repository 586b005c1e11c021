import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from farmassist.api.deps import get_llm_service, get_progress_hub, get_rate_limiter, get_tool_registry
from farmassist.core.config import settings
from farmassist.core.rate_limiter import RateLimiter, RateLimits, limiter
from farmassist.schemas.chat import CompletionRequest, CompletionResponse, ProviderStatusResponse
from farmassist.services.ai.llm_service import ConfigurationError, LLMService, ProviderError
from farmassist.services.progress_stream import ProgressStreamHub
from farmassist.services.tools.agent import ToolCallingAgent
from farmassist.services.tools.capabilities import SessionContext, parse_capabilities
from farmassist.services.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/completion", response_model=CompletionResponse, status_code=status.HTTP_200_OK)
@limiter.limit(RateLimits.AI_CHAT)
async def create_completion(
    request: Request,
    body: CompletionRequest,
    llm_service: LLMService = Depends(get_llm_service),
    registry: ToolRegistry = Depends(get_tool_registry),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    progress_hub: ProgressStreamHub = Depends(get_progress_hub),
):
    """
    Generate the assistant's reply for a chat session.

    - **sessionId**: Chat session the reply belongs to (also keys the progress stream)
    - **messages**: Conversation so far, ending with the user's message
    - **options**: Optional max_tokens / temperature overrides
    - **enabledCapabilities**: Data sources the user enabled (e.g. johndeere, weather)

    The caller persists the returned message; nothing is stored here.
    """
    session = SessionContext(
        session_id=body.session_id,
        enabled_capabilities=parse_capabilities(body.enabled_capabilities),
    )
    agent = ToolCallingAgent(
        llm_service=llm_service,
        registry=registry,
        session=session,
        rate_limiter=rate_limiter,
        progress_hub=progress_hub,
    )

    try:
        result = await agent.run(
            body.messages[-settings.CHATBOT_MAX_HISTORY:],
            max_tokens=body.options.max_tokens,
            temperature=body.options.temperature,
        )
    except ConfigurationError as e:
        logger.error(f"Chat completion failed for session {body.session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="No LLM providers configured. Please set GOOGLE_API_KEY or OPENAI_API_KEY environment variables."
        )
    except ProviderError as e:
        logger.error(
            f"Chat completion failed for session {body.session_id} "
            f"after {len(e.tool_results)} tool result(s): {e}"
        )
        if e.is_rate_limited:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="API rate limit exceeded. Please try again later."
            )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": "Failed to generate response",
                "provider": e.provider,
                "tool_results": [r.model_dump(exclude={"data"}) for r in e.tool_results],
            }
        )

    return CompletionResponse(
        message=result.to_assistant_message(),
        usage=result.usage,
        model=result.model,
    )


@router.get("/completion", response_model=ProviderStatusResponse)
@limiter.limit(RateLimits.STATUS_READ)
async def get_completion_status(
    request: Request,
    llm_service: LLMService = Depends(get_llm_service),
):
    """Report which LLM providers are configured and the active generation settings."""
    return ProviderStatusResponse(
        status="ok",
        providers=llm_service.get_available_providers(),
        config=llm_service.get_config(),
    )

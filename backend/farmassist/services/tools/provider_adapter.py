"""
Provider Adapter - Tool calling capabilities of the supported LLM providers

OpenAI, Anthropic and Gemini accept tool definitions natively, each in its own
shape. Ollama models get the tool descriptions injected into the system prompt
and answer with a JSON object that is parsed out of the reply text.
"""

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class ProviderCapabilities:
    """Capabilities of an LLM provider for tool calling"""
    native_function_calling: bool
    max_tools_per_request: int


PROVIDER_CAPABILITIES: Dict[str, ProviderCapabilities] = {
    # Flat tool_calls array, arguments as a JSON string
    "openai": ProviderCapabilities(
        native_function_calling=True,
        max_tools_per_request=128
    ),
    # tool_use content blocks, arguments already decoded
    "anthropic": ProviderCapabilities(
        native_function_calling=True,
        max_tools_per_request=128
    ),
    # function_call parts nested in candidates, ids usually missing
    "google": ProviderCapabilities(
        native_function_calling=True,
        max_tools_per_request=128
    ),
    # Simulated tool calling (via prompt injection)
    "ollama": ProviderCapabilities(
        native_function_calling=False,
        max_tools_per_request=20
    ),
}

# Default capabilities for unknown providers
DEFAULT_CAPABILITIES = ProviderCapabilities(
    native_function_calling=False,
    max_tools_per_request=10
)


def get_provider_capabilities(provider: str) -> ProviderCapabilities:
    """
    Get capabilities for a specific LLM provider.

    Args:
        provider: Provider identifier (e.g., "openai", "ollama")

    Returns:
        ProviderCapabilities for the given provider
    """
    return PROVIDER_CAPABILITIES.get(provider.lower(), DEFAULT_CAPABILITIES)


def supports_native_tools(provider: str) -> bool:
    """Check if a provider supports native function calling"""
    return get_provider_capabilities(provider).native_function_calling


def get_max_tools(provider: str) -> int:
    """Get the maximum number of tools that can be passed to a provider"""
    return get_provider_capabilities(provider).max_tools_per_request

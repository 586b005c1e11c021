"""
Helpers for resolving which LLM providers are usable and with which model.
"""

from typing import List, Optional

from farmassist.core.config import settings

_PROVIDER_NAMES = {
    "openai": "OpenAI",
    "anthropic": "Anthropic Claude",
    "google": "Google Gemini",
    "ollama": "Local (Ollama)",
}


def get_provider_api_key(provider: str) -> str | None:
    if provider == "openai":
        return settings.OPENAI_API_KEY or None
    if provider == "anthropic":
        return settings.ANTHROPIC_API_KEY or None
    if provider == "google":
        return settings.GOOGLE_API_KEY or None
    return None


def provider_is_configured(runtime_provider: str) -> bool:
    if runtime_provider in ("openai", "anthropic", "google"):
        return bool(get_provider_api_key(runtime_provider))
    if runtime_provider == "ollama":
        return settings.OLLAMA_ENABLED
    return False


def model_for_provider(runtime_provider: str) -> str:
    if runtime_provider == "openai":
        return settings.OPENAI_MODEL
    if runtime_provider == "anthropic":
        return settings.CLAUDE_MODEL
    if runtime_provider == "google":
        return settings.GEMINI_MODEL
    return settings.OLLAMA_MODEL


def provider_candidates(
    primary: Optional[str] = None,
    fallback: Optional[str] = None
) -> List[str]:
    """
    Configured providers in the order they should be tried.

    The primary provider comes first and the fallback second; providers without
    credentials are left out. An empty list means nothing is configured.
    """
    primary = primary or settings.PRIMARY_LLM_PROVIDER
    fallback = fallback if fallback is not None else settings.FALLBACK_LLM_PROVIDER

    ordered = [primary]
    if fallback and fallback != primary:
        ordered.append(fallback)

    return [provider for provider in ordered if provider_is_configured(provider)]


def get_available_providers() -> list[dict]:
    """
    Get list of known LLM providers with their configured status.

    Returns:
        List of provider info dicts with id, name, model and configured status
    """
    return [
        {
            "id": provider_id,
            "name": name,
            "model": model_for_provider(provider_id),
            "configured": provider_is_configured(provider_id),
        }
        for provider_id, name in _PROVIDER_NAMES.items()
    ]

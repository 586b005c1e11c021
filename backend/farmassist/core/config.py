from typing import List, Optional

from pydantic import AliasChoices, Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Providers the LLM service knows how to talk to
_KNOWN_PROVIDERS = {"openai", "anthropic", "google", "ollama"}

_INSECURE_ALLOWED_ORIGINS_DEFAULTS = {
    "http://localhost:3000",
    "http://127.0.0.1:3000",
}


class Settings(BaseSettings):
    # Allow comma-separated env vars for list fields like ALLOWED_ORIGINS
    model_config = SettingsConfigDict(env_file=".env", env_parse_delimiter=",", extra="ignore")
    PROJECT_NAME: str = "FarmAssist"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # CORS
    # NOTE: Pydantic Settings treats list fields as "complex" env values (expects JSON).
    # We accept either a JSON array or a comma-separated string by allowing `str` here
    # and normalizing via the field validator below.
    ALLOWED_ORIGINS: List[str] | str = Field(
        default_factory=lambda: ["http://localhost:3000"],
        validation_alias=AliasChoices("ALLOWED_ORIGINS", "BACKEND_CORS_ORIGINS"),
    )

    # Provider selection: primary is tried first, fallback when primary is unavailable
    PRIMARY_LLM_PROVIDER: str = Field(
        default="openai",
        validation_alias=AliasChoices("PRIMARY_LLM_PROVIDER", "DEFAULT_LLM_PROVIDER"),
    )
    FALLBACK_LLM_PROVIDER: Optional[str] = "google"

    # OpenAI - flat tool_calls array
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o"

    # Anthropic Claude - tool_use content blocks
    ANTHROPIC_API_KEY: Optional[str] = None
    CLAUDE_MODEL: str = "claude-3-5-haiku-latest"

    # Google Gemini - function_call parts nested in candidates
    GOOGLE_API_KEY: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    )
    GEMINI_MODEL: str = "gemini-2.0-flash"

    # Local Ollama - no native tools, calls are simulated via the system prompt.
    # Opt-in so that an empty environment fails fast with a ConfigurationError.
    OLLAMA_ENABLED: bool = False
    OLLAMA_BASE_URL: str = "http://127.0.0.1:11434"
    OLLAMA_MODEL: str = "llama3.1:8b"

    LLM_REQUEST_TIMEOUT: int = 120  # seconds, enforced by the provider SDK clients
    LLM_MAX_TOKENS: int = 4000
    LLM_TEMPERATURE: float = 0.7

    # Orchestration
    MAX_TOOL_ROUNDS: int = Field(default=2, description="Tool-enabled generations per user turn")
    RESPONSE_VALIDATION_ENABLED: bool = True
    CHATBOT_MAX_HISTORY: int = 20  # Maximum number of previous messages to send to the model

    # Rate limiting for tool and provider calls (fixed window)
    TOOL_RATE_LIMIT_MAX: int = 30
    TOOL_RATE_LIMIT_WINDOW_MS: int = 60_000
    PROVIDER_RATE_LIMIT_MAX: int = 60
    PROVIDER_RATE_LIMIT_WINDOW_MS: int = 60_000

    # Redis configuration (shared rate limiter store). In-memory when unset.
    REDIS_URL: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("REDIS_URL", "CACHE_REDIS_URL"),
    )

    # Progress stream (SSE)
    PROGRESS_HEARTBEAT_SECONDS: float = 30.0

    @computed_field
    @property
    def IS_PRODUCTION(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def model_post_init(self, __context):
        """
        Validate configuration on startup. Collects every problem and fails once
        so a misconfigured deployment reports everything at the same time.
        """
        errors = []

        self.PRIMARY_LLM_PROVIDER = self.PRIMARY_LLM_PROVIDER.lower()
        if self.PRIMARY_LLM_PROVIDER not in _KNOWN_PROVIDERS:
            errors.append(
                f"PRIMARY_LLM_PROVIDER must be one of {sorted(_KNOWN_PROVIDERS)}, "
                f"got {self.PRIMARY_LLM_PROVIDER!r}."
            )

        if self.FALLBACK_LLM_PROVIDER:
            self.FALLBACK_LLM_PROVIDER = self.FALLBACK_LLM_PROVIDER.lower()
            if self.FALLBACK_LLM_PROVIDER not in _KNOWN_PROVIDERS:
                errors.append(
                    f"FALLBACK_LLM_PROVIDER must be one of {sorted(_KNOWN_PROVIDERS)}, "
                    f"got {self.FALLBACK_LLM_PROVIDER!r}."
                )

        if self.MAX_TOOL_ROUNDS < 1:
            errors.append("MAX_TOOL_ROUNDS must be at least 1.")

        if self.PROGRESS_HEARTBEAT_SECONDS <= 0:
            errors.append("PROGRESS_HEARTBEAT_SECONDS must be positive.")

        if self.IS_PRODUCTION:
            if self.DEBUG:
                errors.append("DEBUG must be False in production.")
            if not self.ALLOWED_ORIGINS or set(self.ALLOWED_ORIGINS).issubset(_INSECURE_ALLOWED_ORIGINS_DEFAULTS):
                errors.append(
                    "ALLOWED_ORIGINS must be set to your domain(s) in production (not localhost defaults)."
                )

        if errors:
            error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_msg)

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def _split_origins(cls, value):
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value


settings = Settings()

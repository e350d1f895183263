"""Settings via pydantic-settings with SWITCHBOARD_ env prefix.

Anthropic credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the provider's own
tooling uses, so one .env file serves both.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from switchboard.llm.schemas import DEFAULT_MODEL_IDS, ModelTier
from switchboard.routing.schemas import MessageClass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SWITCHBOARD_", env_file=".env")

    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # Provider credentials -- auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: float = 10.0  # seconds
    api_timeout_read: float = 120.0  # seconds
    api_max_connections: int = 10

    # Model ids per tier
    fast_model: str = DEFAULT_MODEL_IDS[ModelTier.FAST]
    balanced_model: str = DEFAULT_MODEL_IDS[ModelTier.BALANCED]
    reasoning_model: str = DEFAULT_MODEL_IDS[ModelTier.REASONING]

    # Completion defaults
    max_tokens: int = 4096
    temperature: float = 0.7
    max_tool_iterations: int = 10

    # Retry
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0  # seconds
    retry_max_delay: float = 30.0  # seconds
    retry_rate_limits: bool = False

    # Classifier
    classification_timeout_ms: int = 500
    classifier_max_tokens: int = 20
    classifier_fallback: MessageClass = MessageClass.ANALYSIS

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.classification_timeout_ms <= 0:
            raise ValueError("classification_timeout_ms must be > 0")
        if self.max_tool_iterations < 1:
            raise ValueError("max_tool_iterations must be >= 1")
        if self.api_timeout_connect <= 0 or self.api_timeout_read <= 0:
            raise ValueError("API timeouts must be > 0")
        return self

    @property
    def model_ids(self) -> dict[str, str]:
        """Tier name -> provider model id."""
        return {
            "fast": self.fast_model,
            "balanced": self.balanced_model,
            "reasoning": self.reasoning_model,
        }

"""
Centralized configuration for the model orchestrator.

All settings are loaded from environment variables with sensible defaults.
Pydantic Settings provides validation and type coercion. Routing overrides
live in config/models.yaml.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

# Load .env then .env.local (so .env.local overrides). Use override=True so file wins over shell.
_repo_root = Path(__file__).resolve().parent.parent
load_dotenv(_repo_root / ".env", override=True)
_env_local = _repo_root / ".env.local"
if _env_local.exists():
    load_dotenv(_env_local, override=True)


class ProviderCredentials(BaseSettings):
    """One credential per provider. Presence (not validity) decides availability."""

    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    google_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("GOOGLE_API_KEY", "GEMINI_API_KEY", "GOOGLE_AI_API_KEY"),
    )
    groq_api_key: str = Field(default="", alias="GROQ_API_KEY")
    mistral_api_key: str = Field(default="", alias="MISTRAL_API_KEY")
    deepseek_api_key: str = Field(default="", alias="DEEPSEEK_API_KEY")
    qwen_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("QWEN_API_KEY", "DASHSCOPE_API_KEY"),
    )
    openrouter_api_key: str = Field(default="", alias="OPENROUTER_API_KEY")
    # Local Ollama server has no key; a configured base URL counts as "credential present".
    ollama_base_url: str = Field(default="", alias="OLLAMA_BASE_URL")
    runware_api_key: str = Field(default="", alias="RUNWARE_API_KEY")
    huggingface_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("HUGGINGFACE_API_KEY", "HF_TOKEN"),
    )

    def for_provider(self, provider: str) -> str:
        """Return the stripped credential for a provider id ('' when unset)."""
        field = "ollama_base_url" if provider == "ollama" else f"{provider}_api_key"
        return (getattr(self, field, "") or "").strip()


class RoutingConfig(BaseSettings):
    """Operating profile and availability cache."""

    # "default" or "cost-balanced" (also accepts cost_balanced / costbalanced)
    model_profile: str = Field(default="default", alias="AI_MODEL_PROFILE")
    availability_ttl_seconds: float = Field(default=60.0, alias="AVAILABILITY_TTL_SECONDS")


class RetryConfig(BaseSettings):
    """Rate-limit retry budget. Bounded: a permanently throttled key must not loop forever."""

    max_attempts: int = Field(default=3, alias="RATE_LIMIT_MAX_ATTEMPTS")
    base_delay: float = Field(default=1.0, alias="RATE_LIMIT_BASE_DELAY")
    multiplier: float = 2.0
    max_delay: float = Field(default=10.0, alias="RATE_LIMIT_MAX_DELAY")
    # Provider-supplied Retry-After hints are honored up to this many seconds
    retry_after_cap: float = Field(default=60.0, alias="RATE_LIMIT_RETRY_AFTER_CAP")
    jitter: bool = False


class GenerationConfig(BaseSettings):
    """Shared generation params used when a request leaves them unset."""

    temperature: float = 0.7
    max_tokens: int = Field(default=4000, alias="DEFAULT_MAX_TOKENS")
    request_timeout: float = Field(default=120.0, alias="PROVIDER_REQUEST_TIMEOUT")
    openai_compatible_base_urls: dict[str, str] = Field(
        default_factory=lambda: {
            "groq": "https://api.groq.com/openai/v1",
            "mistral": "https://api.mistral.ai/v1",
            "deepseek": "https://api.deepseek.com/v1",
            "qwen": "https://dashscope-intl.aliyuncs.com/compatible-mode/v1",
            "openrouter": "https://openrouter.ai/api/v1",
        }
    )


class ObservabilityConfig(BaseSettings):
    """Logging and Prometheus metrics."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_enabled: bool = Field(default=False, alias="PROMETHEUS_METRICS_ENABLED")
    metrics_port: int = Field(default=8000, alias="PROMETHEUS_METRICS_PORT")


class YAMLConfigLoader:
    """Loads YAML config files from a configurable directory."""

    def __init__(self, config_dir: str | Path = "config") -> None:
        self._dir = _repo_root / config_dir

    def load(self, filename: str) -> dict[str, Any]:
        """Load a YAML file; returns empty dict if the file is missing or not a mapping."""
        import yaml

        path = self._dir / filename
        if not path.exists():
            return {}
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}


class Settings(BaseSettings):
    """Root settings container: access all config from one object."""

    credentials: ProviderCredentials = Field(default_factory=ProviderCredentials)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # YAML-loaded config (populated in get_settings)
    model_routing: dict[str, Any] = Field(default_factory=dict)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton settings instance. Cached after first call."""
    settings = Settings()
    settings.model_routing = YAMLConfigLoader().load("models.yaml")
    return settings

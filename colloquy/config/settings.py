"""
Settings - Environment-driven configuration

All runtime knobs are read from environment variables once, at startup,
and carried around as a validated pydantic model.
"""

import os
from typing import Optional, List
from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class Settings(BaseModel):
    """Process-wide settings"""
    log_level: str = "INFO"

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    transcript_ttl_seconds: Optional[int] = None  # None = keep until closed externally

    # Model invocation
    default_model: str = "gpt-4o-mini"
    fallback_models: List[str] = Field(default_factory=list)
    max_retries: int = Field(3, ge=0)
    retry_base_delay: float = Field(0.5, ge=0)
    retry_max_delay: float = Field(8.0, ge=0)
    model_timeout_seconds: float = Field(30.0, gt=0)

    # Tools
    tool_timeout_seconds: float = Field(10.0, gt=0)
    tool_max_attempts: int = Field(3, ge=1)

    # Conversation engine
    max_tool_iterations: int = Field(5, ge=1)
    context_window_tokens: int = Field(8192, gt=0)
    min_retained_turns: int = Field(1, ge=1)
    retrieval_k: int = Field(5, ge=1)
    retrieval_token_budget: int = Field(1024, ge=0)

    # Guardrails
    guardrail_policy_path: Optional[str] = None  # JSON GuardrailPolicy file

    # Gateway
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables"""
        ttl = os.getenv("TRANSCRIPT_TTL_SECONDS")
        fallback = os.getenv("FALLBACK_MODELS", "")
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=_env_int("REDIS_PORT", 6379),
            redis_password=os.getenv("REDIS_PASSWORD"),
            redis_db=_env_int("REDIS_DB", 0),
            transcript_ttl_seconds=int(ttl) if ttl else None,
            default_model=os.getenv("DEFAULT_MODEL", "gpt-4o-mini"),
            fallback_models=[m.strip() for m in fallback.split(",") if m.strip()],
            max_retries=_env_int("MAX_RETRIES", 3),
            retry_base_delay=_env_float("RETRY_BASE_DELAY", 0.5),
            retry_max_delay=_env_float("RETRY_MAX_DELAY", 8.0),
            model_timeout_seconds=_env_float("MODEL_TIMEOUT_SECONDS", 30.0),
            tool_timeout_seconds=_env_float("TOOL_TIMEOUT_SECONDS", 10.0),
            tool_max_attempts=_env_int("TOOL_MAX_ATTEMPTS", 3),
            max_tool_iterations=_env_int("MAX_TOOL_ITERATIONS", 5),
            context_window_tokens=_env_int("CONTEXT_WINDOW_TOKENS", 8192),
            min_retained_turns=_env_int("MIN_RETAINED_TURNS", 1),
            retrieval_k=_env_int("RETRIEVAL_K", 5),
            retrieval_token_budget=_env_int("RETRIEVAL_TOKEN_BUDGET", 1024),
            guardrail_policy_path=os.getenv("GUARDRAIL_POLICY_PATH"),
            gateway_host=os.getenv("GATEWAY_HOST", "0.0.0.0"),
            gateway_port=_env_int("GATEWAY_PORT", 8000),
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


settings = Settings.from_env()

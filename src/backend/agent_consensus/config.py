"""
Application configuration via environment variables.
"""
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


DEFAULT_SYSTEM_PROMPT = (
    "You are one of several independent agents answering the same question. "
    "Answer directly and factually in a few sentences."
)


class BackendSettings(BaseModel):
    """One entry of the backend roster, as read from CONSENSUS_BACKENDS."""

    backend_id: str
    model: str = "gpt-3.5-turbo"
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"  # name of the env var holding the key
    timeout_seconds: Optional[float] = None  # falls back to default_timeout_seconds
    max_retries: Optional[int] = None  # falls back to max_retries


def _default_backends() -> List[BackendSettings]:
    return [BackendSettings(backend_id=f"agent-{i}") for i in range(1, 4)]


class Settings(BaseSettings):
    """Application settings loaded from environment / .env file."""

    # App
    app_name: str = "Agent Consensus"
    debug: bool = False
    log_level: str = "INFO"

    # CORS
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Roster
    backends: List[BackendSettings] = Field(default_factory=_default_backends)

    # Backend calls
    default_timeout_seconds: float = 30.0
    max_retries: int = 2  # retries on top of the first attempt
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    retry_jitter: float = 0.25
    max_tokens: int = 256
    temperature: float = 0.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Rounds
    round_deadline_seconds: float = 60.0

    # API session store
    session_ttl_seconds: float = 3600.0  # evict sessions idle this long
    closed_session_ttl_seconds: float = 300.0  # keep closed sessions readable this long

    # Scoring
    comparator: str = "token_jaccard"
    participation_penalty: float = Field(0.25, gt=0.0)
    reward_scale: float = Field(1.0, ge=0.0)
    divergence_scale: float = Field(1.0, gt=0.0)
    agreement_threshold: float = 0.5

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "CONSENSUS_",
        "extra": "ignore",
    }


settings = Settings()

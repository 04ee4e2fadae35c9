from functools import lru_cache
from typing import Dict, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Security: Read from .env, never hardcode defaults here
    OPENAI_API_KEY: Optional[str] = None

    # Model Configuration
    OPENAI_MODEL: str = "gpt-4o"
    LLM_TEMPERATURE: float = 0.0

    # Metered cost, in cents per million tokens, keyed by model name.
    # Unknown models are billed at the DEFAULT_* rates.
    MODEL_INPUT_PRICE_CENTS: Dict[str, float] = {"gpt-4o": 250.0, "gpt-4o-mini": 15.0}
    MODEL_OUTPUT_PRICE_CENTS: Dict[str, float] = {"gpt-4o": 1000.0, "gpt-4o-mini": 60.0}
    DEFAULT_INPUT_PRICE_CENTS: float = 250.0
    DEFAULT_OUTPUT_PRICE_CENTS: float = 1000.0

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./outreach_agents.db"

    LOG_LEVEL: str = "INFO"

    # Agent sessions
    DEFAULT_AUTONOMY_MODE: Literal["manual", "semi_auto", "full_auto"] = "semi_auto"
    SESSION_MAX_TURNS: int = 20
    SESSION_BUDGET_CENTS: int = 100
    SESSION_LEASE_SECONDS: int = 300

    # Workflow runs
    RUN_LEASE_SECONDS: int = 120
    DEFAULT_TIMEOUT_DAYS: int = 30

    # Outbound owner notifications
    NOTIFICATIONS_PER_MINUTE: int = 30

    # Replies to outbound messages land on reply+<token>@<domain>
    REPLY_ADDRESS_DOMAIN: str = "replies.example.com"

    # Loads from a .env file in the root directory
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()

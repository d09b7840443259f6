"""Runtime settings.

everything can be overridden from the environment (QF_ prefix) or a .env file.
tests build Settings() directly instead of going through get_settings().
"""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="QF_", extra="ignore")

    api_url: str = "http://localhost:4000/cubejs-api/v1"
    api_token: str | None = None
    timeout_seconds: float = 30.0

    # coalescing window for the batch coordinator, 0 still groups same-tick calls
    batch_delay_ms: int = Field(default=100, ge=0)
    debounce_ms: int = Field(default=300, ge=0)
    meta_ttl_seconds: int = Field(default=300, ge=0)

    environment: str = "development"
    # None means "decide from environment"
    strict_invariants: bool | None = None

    @model_validator(mode="after")
    def default_strictness(self) -> "Settings":
        if self.strict_invariants is None:
            self.strict_invariants = self.environment == "development"
        return self

    @property
    def batch_delay(self) -> float:
        return self.batch_delay_ms / 1000

    @property
    def debounce(self) -> float:
        return self.debounce_ms / 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()

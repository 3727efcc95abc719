"""Configuration, read from CHATOUTBOX_* environment variables or .env."""

import json
from datetime import timedelta
from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from chatoutbox.retry import RetryPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHATOUTBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Store (server side)
    store_path: str = "data/telegram.outbox.json"
    database_url: str | None = None  # use PostgresOutboxStore when set
    lease_seconds: float = 30.0
    max_attempts: int = 20
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 300.0
    keep_delivered: int = 1000

    # Worker side
    backend_url: str = "http://127.0.0.1:8080"
    telegram_bot_token: str = ""
    principals: Annotated[list[str], NoDecode] = []
    poll_interval_seconds: float = 1.0
    pull_limit: int = 10
    transport_timeout_seconds: float = 20.0
    progress_ttl_seconds: float = 30 * 60

    @field_validator("principals", mode="before")
    @classmethod
    def _split_principals(cls, value):
        # "1,2,3" in the environment; JSON lists work too.
        if isinstance(value, str):
            if value.strip().startswith("["):
                return [str(p) for p in json.loads(value)]
            return [p.strip() for p in value.split(",") if p.strip()]
        return value

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(seconds=self.lease_seconds)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_seconds=self.backoff_base_seconds,
            cap_seconds=self.backoff_cap_seconds,
            max_attempts=self.max_attempts,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()

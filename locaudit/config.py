from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _resolve_data_dir() -> Path:
    override = _env("LOCAUDIT_HOME")
    if override:
        return Path(override).expanduser().resolve() / "data"
    return Path.cwd().resolve() / "data"


DEFAULT_RUBRIC = {"accuracy": 40, "fluency": 20, "completeness": 30, "tone": 10}
DEFAULT_USER_AGENT = "LocAuditBot/1.0 (+https://locaudit.local)"
DEFAULT_FETCH_TIMEOUT = 30.0


class Settings(BaseModel):
    database_path: Path = Field(
        default_factory=lambda: Path(_env("LOCAUDIT_DB")) if _env("LOCAUDIT_DB")
        else _resolve_data_dir() / "locaudit.db"
    )

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))
    llm_api_key: str = Field(default_factory=lambda: _env("LLM_API_KEY"))
    llm_base_url: str = Field(default_factory=lambda: _env("OPENAI_BASE_URL"))

    poll_interval_seconds: int = Field(
        default_factory=lambda: int(_env("LOCAUDIT_POLL_SECONDS", "60")), ge=1,
    )
    timezone: str = Field(default_factory=lambda: _env("LOCAUDIT_TZ"))
    default_rubric: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_RUBRIC))

    user_agent: str = DEFAULT_USER_AGENT
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT
    max_text_chars: int = 30_000

    notify_webhook_url: str = Field(default_factory=lambda: _env("LOCAUDIT_WEBHOOK_URL"))
    log_level: str = Field(default_factory=lambda: _env("LOCAUDIT_LOG_LEVEL", "INFO").upper())

    def ensure_directories(self) -> None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings

# src/contest_explainer/config.py
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_repo_root(start: Path) -> Path:
    """
    Walk up from `start` to the nearest directory holding `pyproject.toml`.
    Falls back to `start` itself.
    """
    cur = start.resolve()
    for candidate in (cur, *cur.parents):
        if (candidate / "pyproject.toml").exists():
            return candidate
    return cur


PACKAGE_ROOT = Path(__file__).resolve().parent
REPO_ROOT = _find_repo_root(PACKAGE_ROOT)

# OpenAI SDK reads its key from the process environment.
load_dotenv(str(REPO_ROOT / ".env"), override=False)


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    PROJECT_ROOT: str = str(REPO_ROOT)

    # storage
    CONTEST_EXPLAINER_DATABASE_URL: str | None = None

    # chat engine
    OPENAI_API_KEY: str | None = None
    OPENAI_API_BASE: str | None = None
    CHAT_PROVIDER: str = "openai"
    CHAT_MODEL: str = "gpt-4o-mini"
    CHAT_TEMPERATURE: float | None = None
    CHAT_MAX_CONTEXT_TOKENS: int = 12000
    CHAT_MAX_MESSAGE_CHARS: int = 20000

    # orchestrator
    GENERATION_STALE_AFTER_S: int = 300  # IN_PROGRESS rows older than this are failed on the next read
    GENERATION_POLL_INTERVAL_S: float = 3.0
    GENERATION_LOCK_SCOPE: str = "global"
    GENERATION_MAX_DIALOG_DEPTH: int = 50
    GENERATION_TOP_LIMIT: int = 5

    model_config = SettingsConfigDict(
        env_file=str(REPO_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("GENERATION_LOCK_SCOPE", "CHAT_PROVIDER")
    @classmethod
    def _lower(cls, v: str) -> str:
        return str(v or "").strip().lower()

    @field_validator("GENERATION_STALE_AFTER_S", "GENERATION_MAX_DIALOG_DEPTH", "GENERATION_TOP_LIMIT")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @property
    def project_root(self) -> Path:
        return Path(self.PROJECT_ROOT).resolve()


settings = Settings()


def _export_openai_env(s: Settings) -> None:
    """
    Mirror .env-provided OpenAI settings into os.environ for the SDK.
    Explicit environment variables win.
    """
    for key, value in (("OPENAI_API_KEY", s.OPENAI_API_KEY), ("OPENAI_API_BASE", s.OPENAI_API_BASE)):
        raw = str(value or "").strip()
        if raw and not os.getenv(key):
            os.environ[key] = raw


_export_openai_env(settings)

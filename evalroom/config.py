from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_DB_PATH = Path(__file__).parent / "data" / "evalroom.db"


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.environ.get(name)
    if not val:
        return default
    return val.strip().lower() in {"1", "true", "yes", "y"}


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        return default


class Settings(BaseModel):
    database_path: Path = DEFAULT_DB_PATH

    llm_provider: str = "anthropic"
    llm_model: str = ""

    resend_api_key: str | None = None
    resend_from_email: str = "Evaluation Team <onboarding@resend.dev>"
    email_test_mode: bool = False
    sandbox_email: str = "delivered@resend.dev"

    enhance_debounce_seconds: float = Field(default=2.0, ge=0)
    ai_candidate_limit: int = Field(default=50, ge=1)

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            database_path=Path(os.environ.get("EVALROOM_DB_PATH") or DEFAULT_DB_PATH),
            llm_provider=os.environ.get("LLM_PROVIDER", "anthropic"),
            llm_model=os.environ.get("LLM_MODEL", ""),
            resend_api_key=os.environ.get("RESEND_API_KEY") or None,
            resend_from_email=os.environ.get(
                "RESEND_FROM_EMAIL", "Evaluation Team <onboarding@resend.dev>",
            ),
            email_test_mode=_env_bool("EVALROOM_EMAIL_TEST_MODE"),
            sandbox_email=os.environ.get("EVALROOM_SANDBOX_EMAIL", "delivered@resend.dev"),
            enhance_debounce_seconds=max(0.0, _env_float("EVALROOM_ENHANCE_DEBOUNCE_SECONDS", 2.0)),
            ai_candidate_limit=max(1, _env_int("EVALROOM_AI_CANDIDATE_LIMIT", 50)),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()

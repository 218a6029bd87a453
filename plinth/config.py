from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

PACKAGE_DIR = Path(__file__).parent


def _env_path(name: str, default: Path) -> Path:
    override = os.getenv(name, "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


class Settings(BaseModel):
    database_path: Path = Field(
        default_factory=lambda: _env_path("PLINTH_DB_PATH", PACKAGE_DIR / "data" / "plinth.db")
    )

    # Evidence older than this starts decaying below 0.5
    evidence_cache_ttl_hours: float = Field(
        default_factory=lambda: _env_float("PLINTH_EVIDENCE_TTL_HOURS", 24 * 7)
    )
    pipeline_version: str = Field(
        default_factory=lambda: os.getenv("PLINTH_PIPELINE_VERSION", "results_v2")
    )

    min_competitors: int = 3
    max_competitors: int = 7

    llm_temperature: float = 0.2
    llm_repair_temperature: float = 0.1
    llm_max_tokens: int = 2400
    llm_timeout_seconds: float = 30.0
    llm_max_attempts: int = 3
    llm_backoff_ms: tuple[int, ...] = (300, 800, 1600)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

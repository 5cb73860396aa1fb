from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


@dataclass(slots=True, frozen=True)
class Settings:
    """
    Runtime configuration, read once from the environment.

    Values normally come from a `.env` file loaded by `app.main` at startup.
    """

    # Vision model access. An empty key disables the model and every resize
    # goes through the deterministic fallback planner.
    vision_api_key: str | None
    vision_model: str = "gpt-4o-mini"
    vision_base_url: str = "https://api.openai.com/v1"
    # Upper bound for the whole model call, enforced by the orchestrator.
    model_timeout_seconds: float = 8.0
    vision_max_requests_per_minute: int = 30
    session_storage_dir: Path = Path("storage/sessions")
    # Minimum distance between any element and the canvas edge.
    layout_margin: int = 20
    # Sub-scores below this trigger an optimizer pass.
    optimizer_threshold: float = 70.0
    log_level: str = "INFO"
    # Bind address for `canvas-resize-api` / `python -m app.main`.
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        api_key = os.getenv("VISION_API_KEY") or os.getenv("OPENAI_API_KEY") or None
        return cls(
            vision_api_key=api_key,
            vision_model=os.getenv("VISION_MODEL", "gpt-4o-mini"),
            vision_base_url=os.getenv("VISION_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            model_timeout_seconds=_env_float("MODEL_TIMEOUT_SECONDS", 8.0),
            vision_max_requests_per_minute=_env_int("VISION_MAX_REQUESTS_PER_MINUTE", 30),
            session_storage_dir=Path(os.getenv("SESSION_STORAGE_DIR", "storage/sessions")),
            layout_margin=_env_int("LAYOUT_MARGIN", 20),
            optimizer_threshold=_env_float("OPTIMIZER_THRESHOLD", 70.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("API_HOST", "127.0.0.1"),
            port=_env_int("API_PORT", 8000),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (cached after first read)."""
    return Settings.from_env()

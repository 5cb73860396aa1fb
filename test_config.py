"""Quick checks for environment-driven settings."""

import logging
from pathlib import Path

from app.config import Settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ENV_VARS = (
    "VISION_API_KEY",
    "OPENAI_API_KEY",
    "VISION_MODEL",
    "VISION_BASE_URL",
    "MODEL_TIMEOUT_SECONDS",
    "VISION_MAX_REQUESTS_PER_MINUTE",
    "SESSION_STORAGE_DIR",
    "LAYOUT_MARGIN",
    "OPTIMIZER_THRESHOLD",
    "LOG_LEVEL",
    "API_HOST",
    "API_PORT",
)


def _clear_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    """With an empty environment the model is disabled and defaults apply."""
    _clear_env(monkeypatch)
    settings = Settings.from_env()

    assert settings.vision_api_key is None
    assert settings.vision_model == "gpt-4o-mini"
    assert settings.model_timeout_seconds == 8.0
    assert settings.vision_max_requests_per_minute == 30
    assert settings.session_storage_dir == Path("storage/sessions")
    assert settings.layout_margin == 20
    assert settings.optimizer_threshold == 70.0
    assert settings.log_level == "INFO"
    assert settings.host == "127.0.0.1"
    assert settings.port == 8000
    logger.info("✓ Default settings")


def test_overrides(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("VISION_BASE_URL", "http://localhost:9000/v1/")
    monkeypatch.setenv("MODEL_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("LAYOUT_MARGIN", "12")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    settings = Settings.from_env()

    assert settings.vision_api_key == "sk-test"
    assert settings.vision_base_url == "http://localhost:9000/v1"
    assert settings.model_timeout_seconds == 2.5
    assert settings.layout_margin == 12
    assert settings.log_level == "DEBUG"
    logger.info("✓ Environment overrides")


def test_vision_key_takes_precedence(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("VISION_API_KEY", "primary")
    monkeypatch.setenv("OPENAI_API_KEY", "secondary")
    assert Settings.from_env().vision_api_key == "primary"


def test_bad_numbers_fall_back_to_defaults(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("MODEL_TIMEOUT_SECONDS", "soon")
    monkeypatch.setenv("VISION_MAX_REQUESTS_PER_MINUTE", "")
    settings = Settings.from_env()
    assert settings.model_timeout_seconds == 8.0
    assert settings.vision_max_requests_per_minute == 30


def test_run_serves_app_with_uvicorn(monkeypatch):
    """The console entry point hands the app to uvicorn with the configured bind address."""
    import uvicorn

    from app import main

    _clear_env(monkeypatch)
    monkeypatch.setenv("API_HOST", "0.0.0.0")
    monkeypatch.setenv("API_PORT", "9100")
    monkeypatch.setattr(main, "get_settings", Settings.from_env)
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main.run()

    assert calls == [("app.main:app", {"host": "0.0.0.0", "port": 9100, "log_level": "info"})]
    logger.info("✓ run() starts uvicorn on %s:%s", "0.0.0.0", 9100)

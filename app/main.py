import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

# Load environment variables before anything reads settings.
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(dotenv_path=env_path, override=False)

from app.api.v1.routes import router as api_v1_router  # noqa: E402
from app.config import get_settings  # noqa: E402

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _log_startup_configuration() -> None:
    settings = get_settings()
    logger.info("=" * 60)
    logger.info("Canvas Resize API configuration")
    logger.info(".env file: %s", env_path if env_path.exists() else "not found")
    if settings.vision_api_key:
        logger.info("Vision model: %s via %s", settings.vision_model, settings.vision_base_url)
    else:
        logger.warning("Vision API key not set: every resize will use the fallback planner")
    logger.info("Model timeout: %.1fs, layout margin: %spx", settings.model_timeout_seconds, settings.layout_margin)
    logger.info("Session storage: %s", settings.session_storage_dir)
    logger.info("=" * 60)


def create_app() -> FastAPI:
    """
    Application factory for the Canvas Resize API.

    Keeping this as a separate function makes it easier to build isolated
    apps in tests with overridden dependencies.
    """
    _log_startup_configuration()
    app = FastAPI(
        title="Canvas Resize API",
        version="0.1.0",
        description="Adaptive layout resizing for design canvases.",
    )

    # Infrastructure-level health check (non-versioned) primarily for ops.
    @app.get("/health", tags=["health"])
    async def root_health_check() -> dict:
        """Simple root health check endpoint."""
        return {"status": "ok"}

    # Public, versioned API routes.
    app.include_router(api_v1_router)

    return app


app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    settings = get_settings()
    logger.info("Starting uvicorn on %s:%s", settings.host, settings.port)
    uvicorn.run("app.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load .env before settings are read (tests configure settings explicitly)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from streakline import __version__
from streakline.api import badges, health, streaks, tasks
from streakline.container import Container, build_container
from streakline.core.config import Settings, settings as default_settings, validate_config
from streakline.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from streakline.core.logging import configure_logging
from streakline.core.middleware.metrics import MetricsMiddleware
from streakline.core.middleware.request_id import RequestIdMiddleware
from streakline.core.validation import validate_env


def create_app(cfg: Optional[Settings] = None, *, container: Optional[Container] = None) -> FastAPI:
    """Build the API. All collaborators come from one explicitly built container."""
    cfg = cfg or (container.settings if container else default_settings)

    configure_logging(cfg.ENV, cfg.LOG_LEVEL, cfg.LOG_FORMAT)
    validate_env(settings_obj=cfg)
    validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    container = container or build_container(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("streakline")
        logger.info("Starting streakline...", extra={"version": __version__})
        container.create_tables()
        container.cache.connect()
        if cfg.BATCH_ENABLED:
            container.scheduler.schedule(container.cadence)
        try:
            yield
        finally:
            logger.info("Stopping streakline...")
            container.scheduler.stop(timeout=5)
            container.cache.disconnect()

    app = FastAPI(title="streakline", version=__version__, lifespan=lifespan)
    app.state.settings = cfg
    app.state.container = container

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(tasks.router)
    app.include_router(streaks.router)
    app.include_router(badges.router)
    app.include_router(health.router)
    app.include_router(health.root_router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("streakline.main:create_app", factory=True, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

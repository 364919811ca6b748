import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from mentor/.env
mentor_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(mentor_dir, ".env"))

from mentor.api import health, streaks, sync  # noqa: E402
from mentor.core.config import settings, validate_config  # noqa: E402
from mentor.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from mentor.core.logging import configure_logging  # noqa: E402
from mentor.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from mentor.features.streaks.service import StreakService, build_default_service  # noqa: E402


def create_app(service: Optional[StreakService] = None) -> FastAPI:
    """Build the API around a StreakService; tests pass one wired to in-memory stores."""
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("mentor")
        logger.info("Starting mentor streak service...")
        try:
            yield
        finally:
            # Cancelled syncs leave no partial state behind.
            cancelled = await app.state.streak_service.coordinator.shutdown()
            logger.info("Stopping mentor streak service...", extra={"cancelled_syncs": cancelled})

    app = FastAPI(title="Mentor - Streaks", lifespan=lifespan)
    app.state.streak_service = service or build_default_service()

    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(streaks.router, tags=["streaks"])
    app.include_router(sync.router, tags=["sync"])
    app.include_router(health.router, tags=["health"])
    app.include_router(health.root_router, tags=["health"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("mentor.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

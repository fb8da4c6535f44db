"""
FastAPI application factory.

Run with ``stay-booking`` or ``uvicorn stay_booking.app:create_app --factory``.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from . import routes, webhooks
from .config import settings
from .database import dispose_engine
from .errors import register_exception_handlers
from .log import configure_logging
from .redis_client import close_redis

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Booking service starting")
    yield
    await close_redis()
    await dispose_engine()
    logger.info("Booking service stopped")


def create_app() -> FastAPI:
    configure_logging(settings.LOG_LEVEL, json=settings.LOG_JSON)

    app = FastAPI(
        title="Stay Booking API",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    app.include_router(routes.router)
    app.include_router(webhooks.router)
    app.mount("/metrics", make_asgi_app())

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


def main() -> None:
    import uvicorn
    uvicorn.run("stay_booking.app:create_app", factory=True, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()

"""FastAPI application factory for the fhirbots API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..config import BotConfig, get_config
from ..registry import BOT_REGISTRY
from .routers import bots_router, health_router

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    config = get_config()
    logger.info(
        f"Starting fhirbots API with {len(BOT_REGISTRY.names)} bots "
        f"(FHIR backend: {config.fhir_backend})"
    )
    yield
    logger.info("Shutting down...")


def create_app(config: BotConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Optional configuration. If None, loads from environment.

    Returns:
        Configured FastAPI application
    """
    if config is None:
        config = get_config()

    app = FastAPI(
        title="fhirbots API",
        description="Event-triggered FHIR automation bots",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api")
    app.include_router(bots_router, prefix="/api")

    return app


# Default app instance for uvicorn
app = create_app()


def main():
    """Entry point for the fhirbots-serve command."""
    import uvicorn

    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "fhirbots.api.main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
    )


if __name__ == "__main__":
    main()

"""API routers."""

from .bots import router as bots_router
from .health import router as health_router

__all__ = [
    "bots_router",
    "health_router",
]

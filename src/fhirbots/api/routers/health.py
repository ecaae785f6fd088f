"""Health check endpoint."""

from fastapi import APIRouter

from ...config import get_config
from ..models.responses import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check API health status."""
    return HealthResponse(
        status="ok",
        fhir_backend=get_config().fhir_backend,
        version="0.1.0",
    )

"""Bot listing and execution endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ...medplum import get_fhir_client
from ...protocols import FhirClientProtocol
from ...registry import BOT_REGISTRY
from ..models.requests import ExecuteBotRequest
from ..models.responses import BotInfo, BotListResponse, ExecuteBotResponse

router = APIRouter(prefix="/bots", tags=["bots"])


def fhir_client() -> FhirClientProtocol:
    """FHIR client dependency (overridden in tests)."""
    return get_fhir_client()


@router.get("", response_model=BotListResponse)
async def list_bots() -> BotListResponse:
    """List all registered bots."""
    bots = []
    for name in BOT_REGISTRY.names:
        bot_def = BOT_REGISTRY.get(name)
        if bot_def:
            bots.append(
                BotInfo(name=bot_def.name, description=bot_def.description, trigger=bot_def.trigger)
            )
    return BotListResponse(bots=bots)


@router.post("/{bot_name}/execute", response_model=ExecuteBotResponse)
async def execute_bot(
    bot_name: str,
    request: ExecuteBotRequest,
    medplum: FhirClientProtocol = Depends(fhir_client),
) -> ExecuteBotResponse:
    """Run a bot with the given triggering input.

    Handler failures are reported in ``error`` with status 200; only an
    unknown bot name is an HTTP error.
    """
    if not BOT_REGISTRY.get(bot_name):
        raise HTTPException(status_code=404, detail=f"Bot '{bot_name}' not found")

    result = await BOT_REGISTRY.execute(bot_name, medplum, request.to_event())
    if isinstance(result, dict) and result.get("bot") == bot_name and "error" in result:
        return ExecuteBotResponse(bot=bot_name, error=result["error"])
    return ExecuteBotResponse(bot=bot_name, result=result)

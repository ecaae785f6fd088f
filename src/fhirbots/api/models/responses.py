"""API response schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    fhir_backend: str = Field(..., description="Configured FHIR backend: medplum or local")
    version: str = Field(..., description="API version")


class BotInfo(BaseModel):
    """Information about a registered bot."""

    name: str
    description: str
    trigger: str = Field(..., description="Resource type that triggers the bot")


class BotListResponse(BaseModel):
    """Response listing all registered bots."""

    bots: list[BotInfo]


class ExecuteBotResponse(BaseModel):
    """Outcome of one bot run."""

    bot: str
    result: Any = Field(default=None, description="Value returned by the bot handler")
    error: str | None = Field(default=None, description="Error message when the bot failed")

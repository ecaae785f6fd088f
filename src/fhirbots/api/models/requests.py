"""API request schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ...bots.schemas import BotEvent


class ExecuteBotRequest(BaseModel):
    """Request to run a bot against a triggering resource."""

    model_config = ConfigDict(populate_by_name=True)

    input: Any = Field(..., description="Triggering FHIR resource or webhook payload")
    content_type: str = Field(
        default="application/fhir+json",
        alias="contentType",
        description="MIME type of the input",
    )
    secrets: dict[str, Any] = Field(
        default_factory=dict,
        description="Secrets made available to the bot (API keys)",
    )

    def to_event(self) -> BotEvent:
        return BotEvent(input=self.input, content_type=self.content_type, secrets=self.secrets)

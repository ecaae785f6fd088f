"""Pydantic schemas shared by all bots."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BotInputError(ValueError):
    """Raised when a bot's triggering resource is missing required data."""


class BotEvent(BaseModel):
    """The triggering input of a bot invocation."""

    model_config = ConfigDict(populate_by_name=True)

    input: Any = Field(..., description="Triggering resource or webhook payload")
    content_type: str = Field(
        default="application/fhir+json",
        alias="contentType",
        description="MIME type of the input",
    )
    secrets: dict[str, Any] = Field(
        default_factory=dict,
        description="Project secrets, either plain strings or {'valueString': ...} entries",
    )

    def secret(self, name: str, default: str | None = None) -> str | None:
        """Look up a secret value by name."""
        value = self.secrets.get(name)
        if isinstance(value, dict):
            value = value.get("valueString")
        return value if value is not None else default

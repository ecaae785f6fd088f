"""Bot registry for fhirbots.

Maps bot names to their handlers so the CLI and the API can dispatch a
BotEvent by name. Register new bots with ``BOT_REGISTRY.register_bot``:

    BOT_REGISTRY.register_bot(
        name="my_bot",
        description="What this bot does",
        trigger="Patient",
        handler=my_bot.handler,
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .bots import (
    account_setup,
    candid,
    eligibility,
    finalize_report,
    hello_patient,
    lab_risk,
    patient_dedup,
    patient_intake,
    stripe_invoice,
)
from .bots.schemas import BotEvent
from .protocols import FhirClientProtocol

logger = logging.getLogger(__name__)

# Type alias for bot handler functions
BotHandler = Callable[[FhirClientProtocol, BotEvent], Awaitable[Any]]


@dataclass
class BotDefinition:
    """Definition of a single bot."""

    name: str
    description: str
    trigger: str  # resource type (or payload kind) the bot expects
    handler: BotHandler


class BotRegistry:
    """Central registry of all bots."""

    def __init__(self):
        self._bots: dict[str, BotDefinition] = {}

    def register(
        self, name: str, description: str, trigger: str
    ) -> Callable[[BotHandler], BotHandler]:
        """Decorator to register a bot handler."""

        def decorator(func: BotHandler) -> BotHandler:
            self.register_bot(name, description, trigger, func)
            return func

        return decorator

    def register_bot(self, name: str, description: str, trigger: str, handler: BotHandler) -> None:
        """Register a bot directly (non-decorator form)."""
        self._bots[name] = BotDefinition(
            name=name, description=description, trigger=trigger, handler=handler
        )

    def get(self, name: str) -> BotDefinition | None:
        """Get bot definition by name."""
        return self._bots.get(name)

    @property
    def names(self) -> list[str]:
        """List of registered bot names."""
        return list(self._bots.keys())

    async def execute(
        self, name: str, medplum: FhirClientProtocol, event: BotEvent
    ) -> Any:
        """Run a bot by name.

        Returns whatever the handler returns, or ``{"error": ..., "bot": name}``
        when the bot is unknown or its handler raises.
        """
        bot = self._bots.get(name)
        if not bot:
            logger.error(f"[BOT] Unknown bot: {name}")
            return {"error": f"Unknown bot: {name}", "bot": name}

        logger.info(f"[BOT] Executing {name}")
        try:
            result = await bot.handler(medplum, event)
        except Exception as e:
            logger.error(f"[BOT] {name} failed: {type(e).__name__}: {e}")
            return {"error": str(e) or type(e).__name__, "bot": name}

        result_preview = str(result)[:200] + "..." if len(str(result)) > 200 else str(result)
        logger.info(f"[BOT] SUCCESS {name}: {result_preview}")
        return result


# Global registry instance
BOT_REGISTRY = BotRegistry()


# =============================================================================
# BOT REGISTRATIONS
# =============================================================================

BOT_REGISTRY.register_bot(
    name="lab-risk",
    description="Predict abnormal lab values and record a RiskAssessment",
    trigger="DiagnosticReport",
    handler=lab_risk.handler,
)
BOT_REGISTRY.register_bot(
    name="eligibility",
    description="Opkit coverage eligibility check",
    trigger="CoverageEligibilityRequest",
    handler=eligibility.handler,
)
BOT_REGISTRY.register_bot(
    name="candid",
    description="Submit a coded encounter to Candid Health",
    trigger="Encounter",
    handler=candid.handler,
)
BOT_REGISTRY.register_bot(
    name="patient-dedup",
    description="Link patients sharing an identifier and demographics",
    trigger="Patient",
    handler=patient_dedup.handler,
)
BOT_REGISTRY.register_bot(
    name="stripe-invoice",
    description="Record a Stripe invoice as a FHIR Invoice",
    trigger="Stripe event",
    handler=stripe_invoice.handler,
)
BOT_REGISTRY.register_bot(
    name="account-setup",
    description="Populate a new patient's sample account",
    trigger="Patient",
    handler=account_setup.handler,
)
BOT_REGISTRY.register_bot(
    name="patient-intake",
    description="Create a Patient from an intake QuestionnaireResponse",
    trigger="QuestionnaireResponse",
    handler=patient_intake.handler,
)
BOT_REGISTRY.register_bot(
    name="finalize-report",
    description="Mark a DiagnosticReport and its results final",
    trigger="DiagnosticReport",
    handler=finalize_report.handler,
)
BOT_REGISTRY.register_bot(
    name="hello-patient",
    description="Log a greeting for the patient",
    trigger="Patient",
    handler=hello_patient.handler,
)


def list_bots() -> list[BotDefinition]:
    return [BOT_REGISTRY.get(name) for name in BOT_REGISTRY.names]


async def execute_bot(name: str, medplum: FhirClientProtocol, event: BotEvent) -> Any:
    """Run a registered bot (convenience wrapper around BOT_REGISTRY.execute)."""
    return await BOT_REGISTRY.execute(name, medplum, event)
